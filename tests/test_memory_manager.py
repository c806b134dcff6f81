import logging
from types import SimpleNamespace

import pytest

import memory_manager
from memory_manager import (
    MemoryStrategy, select_execution_plan, detect_system_memory,
    BYTES_PER_VOXEL, FALLBACK_SYSTEM_MEMORY
)

GB = 1024 ** 3


def test_bytes_per_voxel_counts_nine_float32_components():
    assert BYTES_PER_VOXEL == 36


def test_small_grid_takes_fast_path():
    plan = select_execution_plan(10, 10, 10, system_memory_bytes=16 * GB)
    assert plan.strategy == MemoryStrategy.FAST
    assert plan.chunk_count == 1
    assert plan.chunk_depth == 10
    assert not plan.enable_offloading
    assert not plan.use_chunked_processing
    assert not plan.is_huge_dataset
    assert plan.estimated_bytes == 1000 * 36
    assert plan.memory_budget_bytes == 12 * GB


def test_large_grid_within_budget_takes_medium_path():
    plan = select_execution_plan(1200, 1200, 1200, system_memory_bytes=256 * GB)
    assert plan.strategy == MemoryStrategy.MEDIUM
    assert plan.chunk_depth == 300
    assert plan.chunk_count == 4
    assert plan.use_chunked_processing
    assert not plan.enable_offloading
    assert plan.max_loaded_chunks == plan.chunk_count
    assert plan.is_huge_dataset


def test_grid_over_budget_takes_slow_path():
    plan = select_execution_plan(2000, 2000, 2000, system_memory_bytes=16 * GB)
    assert plan.strategy == MemoryStrategy.SLOW
    assert plan.enable_offloading
    assert plan.chunk_depth <= 32
    assert plan.max_loaded_chunks >= 3


@pytest.mark.parametrize("size, ram", [
    ((64, 64, 512), 4 * 1024 ** 2),
    ((128, 128, 64), 1 * 1024 ** 2),
    ((512, 512, 512), 64 * 1024 ** 2),
    ((16, 16, 4096), 256 * 1024),
])
def test_slow_path_always_keeps_three_chunks(size, ram):
    plan = select_execution_plan(*size, system_memory_bytes=ram)
    assert plan.strategy == MemoryStrategy.SLOW
    assert plan.max_loaded_chunks >= 3
    assert plan.chunk_depth >= 1


def test_slow_path_chunks_cover_the_depth_once():
    plan = select_execution_plan(64, 64, 100, system_memory_bytes=2 * 1024 ** 2)
    ranges = list(plan.chunk_ranges())
    assert len(ranges) == plan.chunk_count
    assert ranges[0][0] == 0
    assert sum(depth for _, depth in ranges) == 100
    for (start, depth), (next_start, _) in zip(ranges, ranges[1:]):
        assert start + depth == next_start


def test_selection_is_pure_for_given_memory():
    first = select_execution_plan(300, 200, 100, system_memory_bytes=1 * GB)
    second = select_execution_plan(300, 200, 100, system_memory_bytes=1 * GB)
    assert first == second


def test_slow_path_respects_disabled_offloading(caplog):
    with caplog.at_level(logging.WARNING):
        plan = select_execution_plan(512, 512, 512, system_memory_bytes=1 * GB,
                                     allow_offloading=False)
    assert plan.strategy == MemoryStrategy.SLOW
    assert not plan.enable_offloading
    assert "offloading is disabled" in caplog.text


def test_huge_threshold_is_configurable():
    plan = select_execution_plan(10, 10, 100, system_memory_bytes=16 * GB,
                                 huge_threshold_bytes=1000)
    assert plan.strategy == MemoryStrategy.MEDIUM
    assert plan.chunk_depth == 32


def test_memory_detection_reads_total_ram(monkeypatch):
    monkeypatch.setattr(memory_manager.psutil, "virtual_memory",
                        lambda: SimpleNamespace(total=8 * GB, available=2 * GB))
    assert detect_system_memory() == 8 * GB


def test_memory_detection_failure_assumes_16_gb(monkeypatch, caplog):
    def broken():
        raise OSError("unsupported")

    monkeypatch.setattr(memory_manager.psutil, "virtual_memory", broken)
    with caplog.at_level(logging.WARNING):
        assert detect_system_memory() == FALLBACK_SYSTEM_MEMORY
    assert "assuming 16 GB" in caplog.text


def test_plan_uses_detected_memory_when_not_given(monkeypatch):
    monkeypatch.setattr(memory_manager, "detect_system_memory", lambda: 4 * GB)
    plan = select_execution_plan(10, 10, 10)
    assert plan.system_memory_bytes == 4 * GB
    assert plan.memory_budget_bytes == 3 * GB
