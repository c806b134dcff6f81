"""
Simulation Results
Snapshots, live field updates and the immutable result of a run
"""
from dataclasses import dataclass, field
from typing import Optional, List

import numpy as np

from memory_manager import ExecutionPlan
from simulation_config import Axis


@dataclass(frozen=True)
class WaveFieldSnapshot:
    """Field captured at one time step"""
    time_step: int
    simulation_time: float  # seconds
    field: np.ndarray  # velocity magnitude [z, y, x]
    is_max_velocity_field: bool = False
    stride: int = 1  # spatial downsampling applied to field


@dataclass(frozen=True)
class WaveFieldUpdate:
    """Live-visualization payload: the whole field or one chunk's slab"""
    field: np.ndarray
    time_step: int
    simulation_time: float
    start_z: int = 0
    is_chunk_slab: bool = False


@dataclass(frozen=True)
class SimulationResults:
    """Aggregated output of one run"""
    total_time_steps: int
    time_step_seconds: float
    computation_time: float  # wall-clock seconds
    p_wave_velocity: float  # m/s
    s_wave_velocity: float
    vp_vs_ratio: float
    p_wave_step: Optional[int]
    s_wave_step: Optional[int]
    p_wave_travel_time: float  # seconds
    s_wave_travel_time: float
    wave_field_vx: Optional[np.ndarray] = None
    wave_field_vy: Optional[np.ndarray] = None
    wave_field_vz: Optional[np.ndarray] = None
    max_velocity_field: Optional[np.ndarray] = None
    damage_field: Optional[np.ndarray] = None
    time_series_snapshots: List[WaveFieldSnapshot] = field(default_factory=list)
    receiver_trace: Optional[np.ndarray] = None
    labels: Optional[np.ndarray] = None
    plan: Optional[ExecutionPlan] = None
    kernel_name: str = "cpu"
    cancelled: bool = False

    @property
    def has_full_field(self) -> bool:
        return self.wave_field_vx is not None

    def velocity_magnitude(self) -> np.ndarray:
        """Final combined velocity, or the max-velocity stand-in for huge runs"""
        if self.has_full_field:
            return np.sqrt(self.wave_field_vx ** 2 + self.wave_field_vy ** 2 + self.wave_field_vz ** 2)
        if self.max_velocity_field is not None:
            return self.max_velocity_field
        raise ValueError("Results hold no velocity field")


def velocity_slice(results: SimulationResults, axis: Axis, index: int) -> np.ndarray:
    """2-D velocity-magnitude tomography slice perpendicular to axis"""
    magnitude = results.velocity_magnitude()
    # Volumes are [z, y, x]
    array_axis = 2 - axis.value
    if not 0 <= index < magnitude.shape[array_axis]:
        raise IndexError(f"Slice {index} outside 0..{magnitude.shape[array_axis] - 1}")
    return np.take(magnitude, index, axis=array_axis)
