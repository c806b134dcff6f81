"""
Wave Physics
Material lookup, CFL time stepping, source time functions and injection,
absorbing boundaries and receiver sampling
"""
import logging
import math
from typing import Optional, Tuple

import numpy as np
from numba import jit, prange

from simulation_config import SimulationParameters, Axis, Wavelet, ConfigurationError
from memory_manager import WaveFieldChunk, FIELD_DTYPE

logger = logging.getLogger(__name__)

COURANT_LIMIT = 0.5  # dt <= 0.5 h / (sqrt(3) Vp)
CFL_SAFETY = 0.9
MIN_DENSITY = 100.0  # kg/m³
CONTINUOUS_SOURCE_STEPS = 100
BOUNDARY_WIDTH = 3  # voxels
MATERIAL_SCAN_SLICES = 64


def lame_parameters(E, nu):
    """(lambda, mu) from Young's modulus and Poisson ratio"""
    mu = E / (2.0 * (1.0 + nu))
    lam = E * nu / ((1.0 + nu) * (1.0 - 2.0 * nu))
    return lam, mu


def p_wave_velocity(E, nu, rho):
    """Vp = sqrt((lambda + 2 mu) / rho), density floored"""
    lam, mu = lame_parameters(E, nu)
    return np.sqrt((lam + 2.0 * mu) / np.maximum(rho, MIN_DENSITY))


def s_wave_velocity(E, nu, rho):
    _, mu = lame_parameters(E, nu)
    return np.sqrt(mu / np.maximum(rho, MIN_DENSITY))


def max_stable_time_step(vp_max: float, h: float) -> float:
    """Upper CFL bound for the 3-D staggered update"""
    return COURANT_LIMIT * h / (math.sqrt(3.0) * vp_max)


def compute_time_step(vp_max: float, h: float, safety: float = CFL_SAFETY) -> float:
    if vp_max <= 0 or not math.isfinite(vp_max):
        raise ConfigurationError(f"Maximum P-wave velocity must be positive, got {vp_max}")
    return safety * max_stable_time_step(vp_max, h)


def ricker_wavelet(t: float, frequency: float, t_peak: Optional[float] = None) -> float:
    """Ricker wavelet (1 - 2a²) exp(-a²), a = pi f (t - t_peak)"""
    if t_peak is None:
        t_peak = 1.0 / frequency
    a = math.pi * frequency * (t - t_peak)
    return (1.0 - 2.0 * a * a) * math.exp(-a * a)


def source_time_function(t: float, frequency: float, wavelet: Wavelet) -> float:
    """Source time function models"""
    if wavelet == Wavelet.RICKER:
        return ricker_wavelet(t, frequency)
    elif wavelet == Wavelet.SINUSOID:
        return math.sin(2.0 * math.pi * frequency * t)
    return 1.0


class MaterialModel:
    """Per-voxel elastic properties with scalar fallbacks from the parameters"""

    def __init__(self, params: SimulationParameters, density: Optional[np.ndarray] = None,
                 youngs_modulus: Optional[np.ndarray] = None,
                 poisson_ratio: Optional[np.ndarray] = None,
                 labels: Optional[np.ndarray] = None):
        self.params = params
        self.density = self._checked(density, 'density')
        self.youngs_modulus = self._checked(youngs_modulus, 'youngs_modulus')  # MPa
        self.poisson_ratio = self._checked(poisson_ratio, 'poisson_ratio')
        self.labels = self._checked(labels, 'labels')

        if params.selected_material_id is not None and self.labels is None:
            raise ConfigurationError("selected_material_id requires a label volume")

    def _checked(self, volume, name):
        if volume is None:
            return None
        volume = np.asarray(volume)
        if volume.shape != self.params.volume_shape:
            raise ConfigurationError(
                f"{name} volume has shape {volume.shape}, expected {self.params.volume_shape} (z, y, x)")
        return volume

    def slab(self, start: int, end: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """(E in Pa, nu, rho) float32 arrays for global z in [start, end)"""
        p = self.params
        shape = (end - start, p.height, p.width)

        if self.youngs_modulus is not None:
            E = self.youngs_modulus[start:end].astype(FIELD_DTYPE)
            E = np.where(np.isfinite(E) & (E > 0), E, FIELD_DTYPE(p.youngs_modulus_mpa))
        else:
            E = np.full(shape, p.youngs_modulus_mpa, dtype=FIELD_DTYPE)
        E *= FIELD_DTYPE(1e6)

        if self.poisson_ratio is not None:
            nu = self.poisson_ratio[start:end].astype(FIELD_DTYPE)
            valid = np.isfinite(nu) & (nu > -1.0) & (nu < 0.5)
            nu = np.where(valid, nu, FIELD_DTYPE(p.poisson_ratio))
        else:
            nu = np.full(shape, p.poisson_ratio, dtype=FIELD_DTYPE)

        if self.density is not None:
            rho = self.density[start:end].astype(FIELD_DTYPE)
            rho = np.where(np.isfinite(rho) & (rho > 0), rho, FIELD_DTYPE(p.density_kg_m3))
            rho = np.maximum(rho, FIELD_DTYPE(MIN_DENSITY))
        else:
            rho = np.full(shape, max(p.density_kg_m3, MIN_DENSITY), dtype=FIELD_DTYPE)

        return E, nu, rho

    def tensile_strength(self, E: np.ndarray) -> np.ndarray:
        """Tensile limit in Pa; 5% of E when not configured"""
        if self.params.tensile_strength_mpa > 0:
            return np.full(E.shape, self.params.tensile_strength_mpa * 1e6, dtype=FIELD_DTYPE)
        return (E * FIELD_DTYPE(0.05)).astype(FIELD_DTYPE)

    def material_mask(self, start: int, end: int) -> Optional[np.ndarray]:
        """Voxels belonging to the selected material, or None when all take part"""
        if self.params.selected_material_id is None:
            return None
        return self.labels[start:end] == self.params.selected_material_id

    def density_at(self, voxel: Tuple[int, int, int]) -> float:
        x, y, z = voxel
        if self.density is not None:
            value = float(self.density[z, y, x])
            if math.isfinite(value) and value > 0:
                return max(value, MIN_DENSITY)
        return max(self.params.density_kg_m3, MIN_DENSITY)

    def max_p_wave_velocity(self) -> float:
        """Scan the volume in slabs for the fastest P-wave speed"""
        vp_max = 0.0
        for start in range(0, self.params.depth, MATERIAL_SCAN_SLICES):
            end = min(start + MATERIAL_SCAN_SLICES, self.params.depth)
            E, nu, rho = self.slab(start, end)
            vp_max = max(vp_max, float(p_wave_velocity(E.astype(np.float64), nu, rho).max()))
        return vp_max


class SourceModel:
    """Transmitter: point or full-face velocity injection along the propagation axis"""

    def __init__(self, params: SimulationParameters, materials: MaterialModel, time_step: float):
        self.axis = params.axis
        self.tx = params.tx_voxel  # (x, y, z)
        self.full_face = params.use_full_face_transducers
        self.frequency = params.source_frequency_khz * 1000.0  # Hz
        self.wavelet = params.wavelet
        self.time_step = time_step

        energy = params.source_energy_j
        if self.full_face:
            dims = params.dimensions
            face_voxels = 1
            for i, n in enumerate(dims):
                if i != self.axis.value:
                    face_voxels *= n
            energy /= face_voxels

        voxel_volume = params.pixel_size ** 3
        rho = materials.density_at(self.tx)
        # Kinetic energy density inversion
        self.amplitude = math.sqrt(2.0 * energy / (rho * voxel_volume)) * params.source_amplitude / 100.0
        logger.info("Source amplitude %.3e m/s (%s, %s wavelet at %.1f kHz)",
                    self.amplitude, "full face" if self.full_face else "point",
                    self.wavelet.name.lower(), params.source_frequency_khz)

    def value(self, step: int) -> float:
        return self.amplitude * source_time_function(step * self.time_step, self.frequency, self.wavelet)

    def touches(self, chunk: WaveFieldChunk) -> bool:
        if self.full_face and self.axis != Axis.Z:
            return True
        return chunk.contains_z(self.tx[2])

    def apply(self, chunk: WaveFieldChunk, step: int) -> bool:
        """Add this step's excitation to a resident chunk; False if it is not touched"""
        if not self.touches(chunk):
            return False

        value = self.value(step)
        x, y, z = self.tx
        component = chunk.velocity(self.axis.value)
        if not self.full_face:
            component[z - chunk.start_z, y, x] += value
        elif self.axis == Axis.Z:
            component[z - chunk.start_z, :, :] += value
        elif self.axis == Axis.Y:
            component[:, y, :] += value
        else:
            component[:, :, x] += value
        return True


def apply_absorbing_boundary(chunk: WaveFieldChunk, global_depth: int, factor: float,
                             band: int = BOUNDARY_WIDTH):
    """Damp velocities inside the band at the six faces of the global domain"""
    top = band - chunk.start_z  # local planes inside the top band
    bottom = global_depth - band - chunk.start_z  # first local plane of the bottom band
    for v in (chunk.vx, chunk.vy, chunk.vz):
        v[:, :, :band] *= factor
        v[:, :, -band:] *= factor
        v[:, :band, :] *= factor
        v[:, -band:, :] *= factor
        # Only chunks touching the global top/bottom get z bands
        if top > 0:
            v[:top] *= factor
        if bottom < chunk.depth:
            v[max(bottom, 0):] *= factor


def apply_material_mask(chunk: WaveFieldChunk, mask: np.ndarray):
    """Hold velocity and stress at zero outside the selected material"""
    outside = ~mask
    for array in chunk.components():
        array[outside] = 0.0


@jit(nopython=True, parallel=True)
def track_max_velocity(vx, vy, vz, max_field):
    """Running per-voxel maximum of the velocity magnitude"""
    nz, ny, nx = vx.shape
    for k in prange(nz):
        for j in range(ny):
            for i in range(nx):
                m = math.sqrt(vx[k, j, i] ** 2 + vy[k, j, i] ** 2 + vz[k, j, i] ** 2)
                if m > max_field[k, j, i]:
                    max_field[k, j, i] = m


def sample_receiver(chunk: WaveFieldChunk, voxel: Tuple[int, int, int],
                    axis: Axis) -> Tuple[float, float]:
    """(velocity magnitude, transverse magnitude) at a voxel of a resident chunk"""
    x, y, z = voxel
    lz = z - chunk.start_z
    components = (float(chunk.vx[lz, y, x]), float(chunk.vy[lz, y, x]), float(chunk.vz[lz, y, x]))
    magnitude = math.sqrt(sum(c * c for c in components))
    transverse = math.sqrt(sum(c * c for i, c in enumerate(components) if i != axis.value))
    return magnitude, transverse
