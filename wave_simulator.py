"""
Chunked Elastic Wave Simulator
Drives the time-step loop over depth chunks: kernel update, plasticity,
damage, boundaries, source excitation, arrival picking and snapshots,
with LRU offloading when the field does not fit in memory
"""
import logging
import math
import time
from typing import Optional, Callable, Dict, Tuple, List

import numpy as np

from simulation_config import SimulationParameters, ConfigurationError
from memory_manager import (
    ExecutionPlan, MemoryStrategy, ChunkStore, WaveFieldChunk, select_execution_plan, FIELD_DTYPE
)
from compute_kernels import WaveKernel, create_kernel
from wave_physics import (
    MaterialModel, SourceModel, compute_time_step, apply_absorbing_boundary,
    apply_material_mask, track_max_velocity, sample_receiver, CONTINUOUS_SOURCE_STEPS
)
from constitutive_models import apply_mohr_coulomb, accumulate_tensile_damage, degraded_modulus
from arrival_detector import ArrivalDetector, ArrivalState
from simulation_results import SimulationResults, WaveFieldSnapshot, WaveFieldUpdate

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 10  # steps
HUGE_UPDATE_STRIDE = 8  # 1 in 8 chunks per live update
SNAPSHOT_MAX_DIM = 128

ProgressCallback = Callable[[float, int, str], None]
WaveFieldCallback = Callable[[WaveFieldUpdate], None]


class ChunkedWaveSimulator:
    """Elastic FDTD over depth chunks with adaptive memory management"""

    def __init__(self, params: SimulationParameters):
        if params is None:
            raise ConfigurationError("Simulation parameters are required")
        if not isinstance(params, SimulationParameters):
            raise ConfigurationError(f"Expected SimulationParameters, got {type(params).__name__}")
        self.params = params

        self.plan: Optional[ExecutionPlan] = None
        self.kernel: Optional[WaveKernel] = None
        self.time_step: Optional[float] = None
        self.offload_path: Optional[str] = None

        self._store: Optional[ChunkStore] = None
        self._running = False
        self._current_step = 0

        # Per-run state
        self._materials: Optional[MaterialModel] = None
        self._source: Optional[SourceModel] = None
        self._material_cache: Dict[int, Tuple[np.ndarray, ...]] = {}
        self._max_velocity: Optional[np.ndarray] = None
        self._snapshots: List[WaveFieldSnapshot] = []
        self._receiver_trace: List[float] = []
        self._receiver_sample = (0.0, 0.0)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_step(self) -> int:
        return self._current_step

    @property
    def progress(self) -> float:
        return self._current_step / self.params.total_time_steps

    @property
    def current_memory_usage_mb(self) -> float:
        """Resident chunk memory"""
        if self._store is None:
            return 0.0
        return self._store.resident_memory_bytes / 1024 ** 2

    def plan_execution(self) -> ExecutionPlan:
        """Choose the memory strategy for the configured grid"""
        p = self.params
        memory = int(p.max_memory_mb * 1024 ** 2) if p.max_memory_mb else None
        return select_execution_plan(
            p.width, p.height, p.depth,
            system_memory_bytes=memory,
            huge_threshold_bytes=int(p.huge_dataset_threshold_gb * 1024 ** 3),
            allow_offloading=p.enable_offloading
        )

    def clear_cache(self) -> bool:
        """Drop cached chunks and offload files; refused while running"""
        if self._running:
            logger.warning("clear_cache called during a simulation; ignoring")
            return False
        self._material_cache.clear()
        if self._store is not None:
            return self._store.clear_cache()
        return True

    def run(self, labels: Optional[np.ndarray] = None, density: Optional[np.ndarray] = None,
            youngs_modulus: Optional[np.ndarray] = None, poisson_ratio: Optional[np.ndarray] = None,
            progress_callback: Optional[ProgressCallback] = None,
            wavefield_callback: Optional[WaveFieldCallback] = None,
            cancel_event=None) -> SimulationResults:
        """
        Run the simulation to completion or cancellation.

        Volumes are indexed [z, y, x]; density in kg/m³, Young's modulus in MPa.
        cancel_event is anything with is_set(), checked before each chunk.
        """
        if self._running:
            raise RuntimeError("A simulation is already running")

        p = self.params
        self._materials = MaterialModel(p, density, youngs_modulus, poisson_ratio, labels)
        started = time.perf_counter()

        self.plan = self.plan_execution()
        vp_max = self._materials.max_p_wave_velocity()
        self.time_step = compute_time_step(vp_max, p.pixel_size)
        logger.info("Grid %dx%dx%d, h=%.3g m, Vp max %.1f m/s, dt=%.3e s, %d steps",
                    p.width, p.height, p.depth, p.pixel_size, vp_max, self.time_step,
                    p.total_time_steps)

        self._material_cache = {}
        self._snapshots = []
        self._receiver_trace = []
        self._current_step = 0
        self._max_velocity = (np.zeros(p.volume_shape, dtype=FIELD_DTYPE)
                              if self.plan.is_huge_dataset else None)

        self.kernel = None
        self._store = None
        self._running = True
        try:
            self.kernel = create_kernel(p.use_gpu)
            self._store = ChunkStore(
                self.plan,
                initial_normal_stress=-p.confining_pressure_mpa * 1e6,
                track_damage=p.use_brittle_model,
                offload_directory=p.offload_directory
            )
            self.offload_path = self._store.offload_path
            self._store.simulation_active = True

            self.kernel.initialize(p.width, p.height, self.plan.chunk_depth)
            self._source = SourceModel(p, self._materials, self.time_step)
            self._apply_initial_source()

            baseline, _ = self._read_receiver()
            detector = ArrivalDetector(baseline=baseline, threshold=p.arrival_threshold)

            cancelled = False
            for step in range(1, p.total_time_steps + 1):
                if not self._advance(step, cancel_event, wavefield_callback):
                    cancelled = True
                    logger.info("Simulation cancelled after %d steps", self._current_step)
                    break
                self._current_step = step

                magnitude, transverse = self._receiver_sample
                self._receiver_trace.append(magnitude)
                state = detector.update(step, magnitude, transverse)

                if p.save_time_series and step % p.snapshot_interval == 0:
                    self._take_snapshot(step)

                if step % PROGRESS_INTERVAL == 0 or step == p.total_time_steps:
                    if progress_callback is not None:
                        progress_callback(step / p.total_time_steps, step,
                                          self._progress_message(step, state))
                    if wavefield_callback is not None and not self.plan.is_huge_dataset:
                        wavefield_callback(WaveFieldUpdate(
                            field=self._combined_magnitude(),
                            time_step=step,
                            simulation_time=step * self.time_step
                        ))

                if (p.stop_after_arrivals and detector.s_wave_step is not None
                        and step > detector.s_wave_step + p.total_time_steps // 10):
                    logger.info("Both arrivals picked; stopping at step %d", step)
                    break

            results = self._assemble_results(labels, detector, cancelled, started)
            logger.info("Simulation finished: %d steps in %.2f s, Vp=%.1f m/s, Vs=%.1f m/s",
                        results.total_time_steps, results.computation_time,
                        results.p_wave_velocity, results.s_wave_velocity)
            return results
        finally:
            self._running = False
            if self.kernel is not None:
                self.kernel.dispose()
            if self._store is not None:
                self._store.simulation_active = False
                self._store.dispose()
            self._material_cache = {}

    def _progress_message(self, step: int, state: ArrivalState) -> str:
        message = f"Step {step}/{self.params.total_time_steps}"
        if state == ArrivalState.P_ARRIVED:
            message += " (P-wave detected)"
        elif state == ArrivalState.P_AND_S_ARRIVED:
            message += " (P and S waves detected)"
        return message

    def _chunk_materials(self, chunk: WaveFieldChunk) -> Tuple[np.ndarray, ...]:
        """(E, nu, rho, tensile strength, mask) for a chunk, cached on the single-chunk path"""
        cached = self._material_cache.get(chunk.index)
        if cached is not None:
            return cached

        E, nu, rho = self._materials.slab(chunk.start_z, chunk.end_z)
        strength = self._materials.tensile_strength(E) if self.params.use_brittle_model else None
        mask = self._materials.material_mask(chunk.start_z, chunk.end_z)
        entry = (E, nu, rho, strength, mask)
        # Other paths budget only the field arrays, so their slabs are rebuilt per step
        if self.plan.strategy == MemoryStrategy.FAST:
            self._material_cache[chunk.index] = entry
        return entry

    def _apply_initial_source(self):
        for index, chunk in enumerate(self._store):
            if self._source.touches(chunk):
                chunk = self._store.ensure_resident(index)
                self._source.apply(chunk, 0)

    def _read_receiver(self) -> Tuple[float, float]:
        p = self.params
        rx = p.rx_voxel
        chunk = self._store.ensure_resident(self._store.chunk_index_for_z(rx[2]))
        self._receiver_sample = sample_receiver(chunk, rx, p.axis)
        return self._receiver_sample

    def _advance(self, step: int, cancel_event, wavefield_callback) -> bool:
        """Process every chunk for one step; False when cancelled"""
        emit_slabs = (wavefield_callback is not None and self.plan.is_huge_dataset
                      and step % PROGRESS_INTERVAL == 0)
        rotation = (step // PROGRESS_INTERVAL) % HUGE_UPDATE_STRIDE

        for index in range(len(self._store)):
            if cancel_event is not None and cancel_event.is_set():
                return False

            chunk = self._store.ensure_resident(index)
            self._process_chunk(chunk, step)

            if emit_slabs and index % HUGE_UPDATE_STRIDE == rotation:
                wavefield_callback(WaveFieldUpdate(
                    field=chunk.velocity_magnitude(),
                    time_step=step,
                    simulation_time=step * self.time_step,
                    start_z=chunk.start_z,
                    is_chunk_slab=True
                ))
            self._store.evict_if_needed(protect=index)
        return True

    def _process_chunk(self, chunk: WaveFieldChunk, step: int):
        p = self.params
        E, nu, rho, strength, mask = self._chunk_materials(chunk)
        if chunk.damage is not None:
            E = degraded_modulus(E, chunk.damage)

        self.kernel.update_wave_field(*chunk.components(), E, nu, rho,
                                      self.time_step, p.pixel_size, p.artificial_damping)

        if p.use_plastic_model:
            apply_mohr_coulomb(chunk.sxx, chunk.syy, chunk.szz, chunk.sxy, chunk.sxz, chunk.syz,
                               p.cohesion_mpa * 1e6, math.sin(math.radians(p.failure_angle_deg)))
        if p.use_brittle_model:
            accumulate_tensile_damage(chunk.sxx, chunk.syy, chunk.szz,
                                      chunk.sxy, chunk.sxz, chunk.syz,
                                      chunk.damage, strength, p.damage_rate_per_sec * self.time_step)
        if mask is not None:
            apply_material_mask(chunk, mask)

        apply_absorbing_boundary(chunk, p.depth, p.boundary_damping)

        if step < CONTINUOUS_SOURCE_STEPS:
            self._source.apply(chunk, step)

        if self._max_velocity is not None:
            track_max_velocity(chunk.vx, chunk.vy, chunk.vz,
                               self._max_velocity[chunk.start_z:chunk.end_z])

        rx = p.rx_voxel
        if chunk.contains_z(rx[2]):
            self._receiver_sample = sample_receiver(chunk, rx, p.axis)

    def _combined_magnitude(self) -> np.ndarray:
        """Velocity magnitude of the whole grid, reloading chunks as needed"""
        out = np.empty(self.params.volume_shape, dtype=FIELD_DTYPE)
        for index in range(len(self._store)):
            chunk = self._store.ensure_resident(index)
            out[chunk.start_z:chunk.end_z] = chunk.velocity_magnitude()
        return out

    def _take_snapshot(self, step: int):
        try:
            if self.plan.is_huge_dataset:
                stride = max(1, max(self.params.dimensions) // SNAPSHOT_MAX_DIM)
                field = self._max_velocity[::stride, ::stride, ::stride].copy()
                snapshot = WaveFieldSnapshot(step, step * self.time_step, field,
                                             is_max_velocity_field=True, stride=stride)
            else:
                snapshot = WaveFieldSnapshot(step, step * self.time_step, self._combined_magnitude())
            self._snapshots.append(snapshot)
        except Exception:
            logger.exception("Snapshot at step %d failed", step)

    def _assemble_results(self, labels, detector: ArrivalDetector, cancelled: bool,
                          started: float) -> SimulationResults:
        p, plan = self.params, self.plan
        vx = vy = vz = damage = None

        if plan.is_huge_dataset and plan.estimated_bytes > 0.5 * plan.memory_budget_bytes:
            logger.info("Reporting max-velocity field instead of reloading %d chunks",
                        len(self._store))
        else:
            shape = p.volume_shape
            vx = np.empty(shape, dtype=FIELD_DTYPE)
            vy = np.empty(shape, dtype=FIELD_DTYPE)
            vz = np.empty(shape, dtype=FIELD_DTYPE)
            damage = np.zeros(shape, dtype=FIELD_DTYPE)
            for index in range(len(self._store)):
                chunk = self._store.ensure_resident(index)
                z = slice(chunk.start_z, chunk.end_z)
                vx[z] = chunk.vx
                vy[z] = chunk.vy
                vz[z] = chunk.vz
                if chunk.damage is not None:
                    damage[z] = chunk.damage

        dt = self.time_step
        vp, vs, ratio = detector.velocities(p.tx_rx_distance, dt)
        return SimulationResults(
            total_time_steps=self._current_step,
            time_step_seconds=dt,
            computation_time=time.perf_counter() - started,
            p_wave_velocity=vp,
            s_wave_velocity=vs,
            vp_vs_ratio=ratio,
            p_wave_step=detector.p_wave_step,
            s_wave_step=detector.s_wave_step,
            p_wave_travel_time=(detector.p_wave_step or 0) * dt,
            s_wave_travel_time=(detector.s_wave_step or 0) * dt,
            wave_field_vx=vx,
            wave_field_vy=vy,
            wave_field_vz=vz,
            max_velocity_field=self._max_velocity,
            damage_field=damage,
            time_series_snapshots=list(self._snapshots),
            receiver_trace=np.asarray(self._receiver_trace, dtype=np.float64),
            labels=labels,
            plan=plan,
            kernel_name=self.kernel.name,
            cancelled=cancelled
        )
