"""
Memory Management
Execution-plan selection, depth-slab wave-field chunks and the LRU
offload cache that keeps resident chunks within the memory budget
"""
import logging
import math
import os
import shutil
import tempfile
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Iterator, Tuple

import numpy as np
import psutil

logger = logging.getLogger(__name__)

FIELD_COMPONENTS = ('vx', 'vy', 'vz', 'sxx', 'syy', 'szz', 'sxy', 'sxz', 'syz')
FIELD_DTYPE = np.float32
BYTES_PER_VOXEL = len(FIELD_COMPONENTS) * np.dtype(FIELD_DTYPE).itemsize

MEMORY_BUDGET_FRACTION = 0.75
FALLBACK_SYSTEM_MEMORY = 16 * 1024 ** 3
DEFAULT_HUGE_THRESHOLD = 8 * 1024 ** 3
SLOW_PATH_MAX_SLICES = 32
MEDIUM_PATH_MIN_SLICES = 32
MIN_LOADED_CHUNKS = 3


class MemoryStrategy(Enum):
    FAST = 1    # Single resident chunk
    MEDIUM = 2  # Several chunks, all resident
    SLOW = 3    # LRU-bounded residency with disk offload


@dataclass(frozen=True)
class ExecutionPlan:
    """Chunking decision for one run"""
    strategy: MemoryStrategy
    width: int
    height: int
    depth: int
    chunk_depth: int
    chunk_count: int
    max_loaded_chunks: int
    enable_offloading: bool
    memory_budget_bytes: int
    estimated_bytes: int
    system_memory_bytes: int

    @property
    def use_chunked_processing(self) -> bool:
        return self.chunk_count > 1

    @property
    def is_huge_dataset(self) -> bool:
        return self.strategy != MemoryStrategy.FAST

    @property
    def chunk_memory_bytes(self) -> int:
        return self.width * self.height * self.chunk_depth * BYTES_PER_VOXEL

    def chunk_ranges(self) -> Iterator[Tuple[int, int]]:
        """Yield (start_z, depth) for every chunk"""
        for start in range(0, self.depth, self.chunk_depth):
            yield start, min(self.chunk_depth, self.depth - start)


def detect_system_memory() -> int:
    """Total physical RAM in bytes, or 16 GB when it cannot be queried"""
    try:
        total = int(psutil.virtual_memory().total)
    except Exception as e:
        logger.warning("Could not detect system memory (%s); assuming 16 GB", e)
        return FALLBACK_SYSTEM_MEMORY

    if total <= 0:
        logger.warning("System memory query returned %d; assuming 16 GB", total)
        return FALLBACK_SYSTEM_MEMORY
    return total


def select_execution_plan(width: int, height: int, depth: int,
                          system_memory_bytes: Optional[int] = None,
                          huge_threshold_bytes: int = DEFAULT_HUGE_THRESHOLD,
                          allow_offloading: bool = True) -> ExecutionPlan:
    """
    Classify a grid into the fast, medium or slow memory path.

    Pure for a given system_memory_bytes; detection only happens when it is None.
    """
    if system_memory_bytes is None:
        system_memory_bytes = detect_system_memory()

    budget = int(system_memory_bytes * MEMORY_BUDGET_FRACTION)
    slice_bytes = width * height * BYTES_PER_VOXEL
    estimated = slice_bytes * depth

    if estimated <= budget and estimated < huge_threshold_bytes:
        strategy = MemoryStrategy.FAST
        chunk_depth = depth
        offloading = False
    elif estimated <= budget:
        strategy = MemoryStrategy.MEDIUM
        chunk_depth = min(depth, max(MEDIUM_PATH_MIN_SLICES, depth // 4))
        offloading = False
    else:
        strategy = MemoryStrategy.SLOW
        # Three chunks must fit in the budget at once
        fitting = budget // (MIN_LOADED_CHUNKS * slice_bytes)
        chunk_depth = max(1, min(SLOW_PATH_MAX_SLICES, depth, fitting))
        offloading = allow_offloading
        if not allow_offloading:
            logger.warning("Field needs %.1f MB but budget is %.1f MB and offloading is disabled",
                           estimated / 1024 ** 2, budget / 1024 ** 2)

    chunk_count = math.ceil(depth / chunk_depth)
    if strategy == MemoryStrategy.SLOW:
        chunk_memory = slice_bytes * chunk_depth
        max_loaded = max(MIN_LOADED_CHUNKS, budget // chunk_memory)
    else:
        max_loaded = chunk_count

    plan = ExecutionPlan(
        strategy=strategy,
        width=width, height=height, depth=depth,
        chunk_depth=chunk_depth,
        chunk_count=chunk_count,
        max_loaded_chunks=int(max_loaded),
        enable_offloading=offloading,
        memory_budget_bytes=budget,
        estimated_bytes=estimated,
        system_memory_bytes=system_memory_bytes
    )
    logger.info("%s path: %.1f MB field, %.1f MB budget, %d chunk(s) of %d slices, "
                "max %d loaded, offloading %s",
                strategy.name.lower(), estimated / 1024 ** 2, budget / 1024 ** 2,
                chunk_count, chunk_depth, plan.max_loaded_chunks,
                "on" if offloading else "off")
    return plan


class WaveFieldChunk:
    """Depth slab of the wave field: 3 velocity and 6 stress arrays indexed [z, y, x]"""

    def __init__(self, index: int, start_z: int, depth: int, width: int, height: int,
                 track_damage: bool = False):
        self.index = index
        self.start_z = start_z
        self.depth = depth
        self.width = width
        self.height = height
        self.track_damage = track_damage
        self.is_offloaded = False

        self.vx: Optional[np.ndarray] = None
        self.vy: Optional[np.ndarray] = None
        self.vz: Optional[np.ndarray] = None
        self.sxx: Optional[np.ndarray] = None
        self.syy: Optional[np.ndarray] = None
        self.szz: Optional[np.ndarray] = None
        self.sxy: Optional[np.ndarray] = None
        self.sxz: Optional[np.ndarray] = None
        self.syz: Optional[np.ndarray] = None
        self.damage: Optional[np.ndarray] = None

    def __repr__(self):
        state = "resident" if self.is_resident else ("offloaded" if self.is_offloaded else "empty")
        return f"WaveFieldChunk(index={self.index}, z={self.start_z}..{self.end_z}, {state})"

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.depth, self.height, self.width

    @property
    def end_z(self) -> int:
        """Exclusive global end of the slab"""
        return self.start_z + self.depth

    @property
    def is_resident(self) -> bool:
        return self.vx is not None

    @property
    def stored_names(self) -> Tuple[str, ...]:
        return FIELD_COMPONENTS + (('damage',) if self.track_damage else ())

    @property
    def memory_size(self) -> int:
        """Bytes currently held in memory"""
        if not self.is_resident:
            return 0
        return sum(getattr(self, name).nbytes for name in self.stored_names)

    def contains_z(self, z: int) -> bool:
        return self.start_z <= z < self.end_z

    def components(self) -> List[np.ndarray]:
        """The 9 field arrays in kernel argument order"""
        return [getattr(self, name) for name in FIELD_COMPONENTS]

    def velocity(self, axis: int) -> np.ndarray:
        return (self.vx, self.vy, self.vz)[axis]

    def allocate(self, initial_normal_stress: float = 0.0):
        """Zero-initialize all arrays, optionally pre-stressing the normal components"""
        for name in self.stored_names:
            setattr(self, name, np.zeros(self.shape, dtype=FIELD_DTYPE))
        if initial_normal_stress:
            self.sxx.fill(initial_normal_stress)
            self.syy.fill(initial_normal_stress)
            self.szz.fill(initial_normal_stress)

    def release(self):
        for name in self.stored_names:
            setattr(self, name, None)

    def velocity_magnitude(self) -> np.ndarray:
        return np.sqrt(self.vx * self.vx + self.vy * self.vy + self.vz * self.vz)


class ChunkStore:
    """Owns all chunks of a run and keeps residency within the execution plan"""

    def __init__(self, plan: ExecutionPlan, initial_normal_stress: float = 0.0,
                 track_damage: bool = False, offload_directory: Optional[str] = None):
        self.plan = plan
        self.initial_normal_stress = initial_normal_stress
        self.chunks = [
            WaveFieldChunk(i, start, depth, plan.width, plan.height, track_damage)
            for i, (start, depth) in enumerate(plan.chunk_ranges())
        ]
        # Keys in access order, least recently used first
        self._access_order: 'OrderedDict[int, None]' = OrderedDict()
        self.simulation_active = False
        self.offload_path: Optional[str] = None

        if plan.enable_offloading:
            if offload_directory:
                os.makedirs(offload_directory, exist_ok=True)
            self.offload_path = tempfile.mkdtemp(prefix='wavesim_offload_', dir=offload_directory)
            logger.info("Chunk offload directory: %s", self.offload_path)

    def __len__(self) -> int:
        return len(self.chunks)

    def __iter__(self) -> Iterator[WaveFieldChunk]:
        return iter(self.chunks)

    def __getitem__(self, index: int) -> WaveFieldChunk:
        return self.chunks[index]

    @property
    def resident_count(self) -> int:
        return sum(1 for chunk in self.chunks if chunk.is_resident)

    @property
    def resident_memory_bytes(self) -> int:
        return sum(chunk.memory_size for chunk in self.chunks)

    @property
    def access_order(self) -> List[int]:
        """Chunk indices from least to most recently used"""
        return list(self._access_order)

    def chunk_index_for_z(self, z: int) -> int:
        return z // self.plan.chunk_depth

    def _chunk_path(self, chunk: WaveFieldChunk) -> str:
        return os.path.join(self.offload_path, f"chunk_{chunk.start_z}.bin")

    def track_access(self, index: int):
        """Mark a chunk as most recently used"""
        if index in self._access_order:
            self._access_order.move_to_end(index)
        else:
            self._access_order[index] = None

    def ensure_resident(self, index: int) -> WaveFieldChunk:
        """Load (or first-touch allocate) a chunk, evicting LRU chunks to make room"""
        chunk = self.chunks[index]
        if not chunk.is_resident:
            if self.plan.enable_offloading:
                while self.resident_count >= self.plan.max_loaded_chunks:
                    if not self._evict_least_recent(protect=index):
                        break
            self._load(chunk)
        self.track_access(index)
        self.evict_if_needed(protect=index)
        return chunk

    def _load(self, chunk: WaveFieldChunk):
        if not chunk.is_offloaded:
            chunk.allocate(self.initial_normal_stress)
            return

        path = self._chunk_path(chunk)
        if not os.path.exists(path):
            logger.warning("Offload file for chunk at z=%d is missing; re-initializing it empty",
                           chunk.start_z)
            chunk.allocate(self.initial_normal_stress)
            chunk.is_offloaded = False
            return

        count = chunk.depth * chunk.height * chunk.width
        arrays = {}
        with open(path, 'rb') as f:
            for name in chunk.stored_names:
                data = np.fromfile(f, dtype=FIELD_DTYPE, count=count)
                if data.size != count:
                    break
                arrays[name] = data.reshape(chunk.shape)

        if len(arrays) != len(chunk.stored_names):
            logger.warning("Offload file %s is truncated; re-initializing chunk empty", path)
            chunk.allocate(self.initial_normal_stress)
        else:
            for name, data in arrays.items():
                setattr(chunk, name, data)
        chunk.is_offloaded = False

    def evict(self, chunk: WaveFieldChunk) -> bool:
        """Write a chunk to its side file and release its memory"""
        if not self.plan.enable_offloading or not chunk.is_resident:
            return False

        with open(self._chunk_path(chunk), 'wb') as f:
            for name in chunk.stored_names:
                getattr(chunk, name).tofile(f)

        chunk.release()
        chunk.is_offloaded = True
        self._access_order.pop(chunk.index, None)
        logger.debug("Offloaded chunk %d (z=%d)", chunk.index, chunk.start_z)
        return True

    def _evict_least_recent(self, protect: Optional[int] = None) -> bool:
        candidate = None
        for index in self._access_order:
            if index != protect and self.chunks[index].is_resident:
                candidate = self.chunks[index]
                break
        if candidate is None:
            return False
        return self.evict(candidate)

    def evict_if_needed(self, protect: Optional[int] = None):
        """Evict LRU chunks while over the chunk cap or the memory budget"""
        if not self.plan.enable_offloading:
            return
        while (self.resident_count > self.plan.max_loaded_chunks
               or self.resident_memory_bytes > self.plan.memory_budget_bytes):
            if not self._evict_least_recent(protect=protect):
                break

    def clear_cache(self) -> bool:
        """Drop all chunk state and side files; refused during a run"""
        if self.simulation_active:
            logger.warning("Cannot clear the chunk cache while a simulation is running")
            return False

        for chunk in self.chunks:
            chunk.release()
            chunk.is_offloaded = False
        self._access_order.clear()

        if self.offload_path and os.path.isdir(self.offload_path):
            for name in os.listdir(self.offload_path):
                os.remove(os.path.join(self.offload_path, name))
        return True

    def dispose(self):
        """Release every chunk and delete the offload directory"""
        for chunk in self.chunks:
            chunk.release()
        self._access_order.clear()

        if self.offload_path and os.path.isdir(self.offload_path):
            try:
                shutil.rmtree(self.offload_path)
                logger.debug("Removed offload directory %s", self.offload_path)
            except OSError as e:
                logger.warning("Failed to remove offload directory %s: %s", self.offload_path, e)
