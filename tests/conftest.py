import sys

import numpy as np
import pytest

from simulation_config import SimulationParameters
from memory_manager import ExecutionPlan, MemoryStrategy, BYTES_PER_VOXEL


@pytest.fixture
def make_params(tmp_path):
    """Parameters for the 10³ homogeneous sample, with overrides"""
    def factory(**overrides):
        values = dict(
            width=10, height=10, depth=10,
            pixel_size=1e-3,
            total_time_steps=500,
            youngs_modulus_mpa=10000.0,
            poisson_ratio=0.25,
            density_kg_m3=2700.0,
            tx_position=(0.55, 0.55, 0.15),  # voxel (5, 5, 1)
            rx_position=(0.55, 0.55, 0.85),  # voxel (5, 5, 8)
            offload_directory=str(tmp_path / "offload"),
        )
        values.update(overrides)
        return SimulationParameters(**values)
    return factory


@pytest.fixture
def homogeneous_volumes():
    """(labels, density) matching a parameter set"""
    def factory(params, density=2700.0):
        labels = np.ones(params.volume_shape, dtype=np.uint8)
        rho = np.full(params.volume_shape, density, dtype=np.float32)
        return labels, rho
    return factory


@pytest.fixture
def slow_plan():
    """Offloading plan over 4x4x8 in 2-slice chunks with a configurable cap"""
    def factory(max_loaded=2, budget=10 ** 9):
        width = height = 4
        depth, chunk_depth = 8, 2
        return ExecutionPlan(
            strategy=MemoryStrategy.SLOW,
            width=width, height=height, depth=depth,
            chunk_depth=chunk_depth,
            chunk_count=depth // chunk_depth,
            max_loaded_chunks=max_loaded,
            enable_offloading=True,
            memory_budget_bytes=budget,
            estimated_bytes=width * height * depth * BYTES_PER_VOXEL,
            system_memory_bytes=budget,
        )
    return factory


@pytest.fixture
def no_cupy(monkeypatch):
    """Make `import cupy` fail"""
    monkeypatch.setitem(sys.modules, "cupy", None)
