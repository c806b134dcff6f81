"""
Compute Kernels
Velocity-stress staggered-grid elastic update behind one stepping contract,
with a numba CPU backend and a cupy GPU backend
"""
import logging
from abc import ABC, abstractmethod

import numpy as np
from numba import jit, prange

logger = logging.getLogger(__name__)

MIN_DENSITY = 100.0  # kg/m³


class WaveKernel(ABC):
    """Advances one chunk's 9 field arrays by one explicit time step"""

    name = "abstract"

    @abstractmethod
    def initialize(self, width: int, height: int, depth: int):
        """Prepare backend state for chunks up to the given size"""

    @abstractmethod
    def update_wave_field(self, vx, vy, vz, sxx, syy, szz, sxy, sxz, syz,
                          E, nu, rho, dt: float, h: float, damping_factor: float):
        """
        Update stresses from velocity gradients, then velocities from the
        stress divergence. All arrays are [z, y, x]; E in Pa, rho in kg/m³.
        Outer planes are left untouched.
        """

    def dispose(self):
        """Release backend resources"""


def _check_dimensions(width: int, height: int, depth: int):
    if width < 3 or height < 3 or depth < 1:
        raise ValueError(f"Grid {width}x{height}x{depth} is too small for the stencil")


class CPUWaveKernel(WaveKernel):
    """numba-parallel kernel, fanned out over z"""

    name = "cpu"

    def __init__(self):
        self.shape = None

    def initialize(self, width: int, height: int, depth: int):
        _check_dimensions(width, height, depth)
        self.shape = (depth, height, width)

    @staticmethod
    @jit(nopython=True, parallel=True)
    def _update_stress(vx, vy, vz, sxx, syy, szz, sxy, sxz, syz, E, nu, dt, inv_h):
        """Normal stresses at cell centers, shear stresses on cell edges"""
        nz, ny, nx = vx.shape
        for k in prange(1, nz - 1):
            for j in range(1, ny - 1):
                for i in range(1, nx - 1):
                    e = E[k, j, i]
                    v = nu[k, j, i]
                    mu = e / (2.0 * (1.0 + v))
                    lam = e * v / ((1.0 + v) * (1.0 - 2.0 * v))

                    dvx_dx = (vx[k, j, i] - vx[k, j, i - 1]) * inv_h
                    dvy_dy = (vy[k, j, i] - vy[k, j - 1, i]) * inv_h
                    dvz_dz = (vz[k, j, i] - vz[k - 1, j, i]) * inv_h
                    div = dvx_dx + dvy_dy + dvz_dz

                    sxx[k, j, i] += dt * (lam * div + 2.0 * mu * dvx_dx)
                    syy[k, j, i] += dt * (lam * div + 2.0 * mu * dvy_dy)
                    szz[k, j, i] += dt * (lam * div + 2.0 * mu * dvz_dz)

                    dvx_dy = (vx[k, j + 1, i] - vx[k, j, i]) * inv_h
                    dvy_dx = (vy[k, j, i + 1] - vy[k, j, i]) * inv_h
                    sxy[k, j, i] += dt * mu * (dvx_dy + dvy_dx)

                    dvx_dz = (vx[k + 1, j, i] - vx[k, j, i]) * inv_h
                    dvz_dx = (vz[k, j, i + 1] - vz[k, j, i]) * inv_h
                    sxz[k, j, i] += dt * mu * (dvx_dz + dvz_dx)

                    dvy_dz = (vy[k + 1, j, i] - vy[k, j, i]) * inv_h
                    dvz_dy = (vz[k, j + 1, i] - vz[k, j, i]) * inv_h
                    syz[k, j, i] += dt * mu * (dvy_dz + dvz_dy)

    @staticmethod
    @jit(nopython=True, parallel=True)
    def _update_velocity(vx, vy, vz, sxx, syy, szz, sxy, sxz, syz, rho, dt, inv_h,
                         keep, min_density):
        """Velocities at cell faces from the per-axis stress divergence"""
        nz, ny, nx = vx.shape
        for k in prange(1, nz - 1):
            for j in range(1, ny - 1):
                for i in range(1, nx - 1):
                    r = rho[k, j, i]
                    if r < min_density:
                        r = min_density
                    scale = dt * inv_h / r

                    fx = ((sxx[k, j, i + 1] - sxx[k, j, i]) +
                          (sxy[k, j, i] - sxy[k, j - 1, i]) +
                          (sxz[k, j, i] - sxz[k - 1, j, i]))
                    fy = ((sxy[k, j, i] - sxy[k, j, i - 1]) +
                          (syy[k, j + 1, i] - syy[k, j, i]) +
                          (syz[k, j, i] - syz[k - 1, j, i]))
                    fz = ((sxz[k, j, i] - sxz[k, j, i - 1]) +
                          (syz[k, j, i] - syz[k, j - 1, i]) +
                          (szz[k + 1, j, i] - szz[k, j, i]))

                    vx[k, j, i] = vx[k, j, i] * keep + scale * fx
                    vy[k, j, i] = vy[k, j, i] * keep + scale * fy
                    vz[k, j, i] = vz[k, j, i] * keep + scale * fz

    def update_wave_field(self, vx, vy, vz, sxx, syy, szz, sxy, sxz, syz,
                          E, nu, rho, dt, h, damping_factor):
        inv_h = 1.0 / h
        self._update_stress(vx, vy, vz, sxx, syy, szz, sxy, sxz, syz, E, nu, dt, inv_h)
        self._update_velocity(vx, vy, vz, sxx, syy, szz, sxy, sxz, syz, rho, dt, inv_h,
                              1.0 - damping_factor, MIN_DENSITY)


def _window(shape, dz=0, dy=0, dx=0):
    """Interior slices shifted by (dz, dy, dx)"""
    nz, ny, nx = shape
    return (slice(1 + dz, nz - 1 + dz),
            slice(1 + dy, ny - 1 + dy),
            slice(1 + dx, nx - 1 + dx))


def staggered_step(xp, vx, vy, vz, sxx, syy, szz, sxy, sxz, syz,
                   E, nu, rho, dt, h, damping_factor):
    """Whole-array form of the staggered update for numpy-compatible modules"""
    shape = vx.shape
    c = _window(shape)
    inv_h = 1.0 / h

    e = E[c]
    v = nu[c]
    mu = e / (2.0 * (1.0 + v))
    lam = e * v / ((1.0 + v) * (1.0 - 2.0 * v))

    dvx_dx = (vx[c] - vx[_window(shape, dx=-1)]) * inv_h
    dvy_dy = (vy[c] - vy[_window(shape, dy=-1)]) * inv_h
    dvz_dz = (vz[c] - vz[_window(shape, dz=-1)]) * inv_h
    div = dvx_dx + dvy_dy + dvz_dz

    sxx[c] += dt * (lam * div + 2.0 * mu * dvx_dx)
    syy[c] += dt * (lam * div + 2.0 * mu * dvy_dy)
    szz[c] += dt * (lam * div + 2.0 * mu * dvz_dz)
    sxy[c] += dt * mu * ((vx[_window(shape, dy=1)] - vx[c]) +
                         (vy[_window(shape, dx=1)] - vy[c])) * inv_h
    sxz[c] += dt * mu * ((vx[_window(shape, dz=1)] - vx[c]) +
                         (vz[_window(shape, dx=1)] - vz[c])) * inv_h
    syz[c] += dt * mu * ((vy[_window(shape, dz=1)] - vy[c]) +
                         (vz[_window(shape, dy=1)] - vz[c])) * inv_h

    scale = dt * inv_h / xp.maximum(rho[c], MIN_DENSITY)
    keep = 1.0 - damping_factor

    fx = ((sxx[_window(shape, dx=1)] - sxx[c]) +
          (sxy[c] - sxy[_window(shape, dy=-1)]) +
          (sxz[c] - sxz[_window(shape, dz=-1)]))
    fy = ((sxy[c] - sxy[_window(shape, dx=-1)]) +
          (syy[_window(shape, dy=1)] - syy[c]) +
          (syz[c] - syz[_window(shape, dz=-1)]))
    fz = ((sxz[c] - sxz[_window(shape, dx=-1)]) +
          (syz[c] - syz[_window(shape, dy=-1)]) +
          (szz[_window(shape, dz=1)] - szz[c]))

    vx[c] = vx[c] * keep + scale * fx
    vy[c] = vy[c] * keep + scale * fy
    vz[c] = vz[c] * keep + scale * fz


class GPUWaveKernel(WaveKernel):
    """cupy kernel; chunks are copied to the device for each step"""

    name = "gpu"

    def __init__(self, array_module=None):
        if array_module is None:
            import cupy
            if cupy.cuda.runtime.getDeviceCount() == 0:
                raise RuntimeError("No CUDA device available")
            array_module = cupy
        self.xp = array_module
        self.shape = None

    def initialize(self, width: int, height: int, depth: int):
        _check_dimensions(width, height, depth)
        self.shape = (depth, height, width)

    def update_wave_field(self, vx, vy, vz, sxx, syy, szz, sxy, sxz, syz,
                          E, nu, rho, dt, h, damping_factor):
        xp = self.xp
        host_fields = (vx, vy, vz, sxx, syy, szz, sxy, sxz, syz)
        device_fields = [xp.asarray(a) for a in host_fields]
        staggered_step(xp, *device_fields, xp.asarray(E), xp.asarray(nu), xp.asarray(rho),
                       dt, h, damping_factor)

        if xp is not np:
            for host, device in zip(host_fields, device_fields):
                host[...] = xp.asnumpy(device)

    def dispose(self):
        if self.xp is not np:
            self.xp.get_default_memory_pool().free_all_blocks()


def create_kernel(use_gpu: bool) -> WaveKernel:
    """Pick the backend once per run; GPU problems fall back to CPU"""
    if use_gpu:
        try:
            kernel = GPUWaveKernel()
            logger.info("Using GPU wave kernel")
            return kernel
        except Exception as e:
            logger.warning("GPU kernel unavailable (%s); falling back to CPU", e)
    return CPUWaveKernel()
