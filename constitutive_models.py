"""
Constitutive Models
Per-step stress corrections applied after the elastic update:
Mohr-Coulomb plastic return mapping and tensile brittle damage
"""
import math

import numpy as np
from numba import jit, prange

DAMAGE_STIFFNESS_LOSS = 0.9  # fully damaged voxels keep 10% of E


@jit(nopython=True, parallel=True)
def apply_mohr_coulomb(sxx, syy, szz, sxy, sxz, syz, cohesion, sin_phi):
    """
    Return stresses that violate F = q - (c + p sin(phi)) > 0 to the yield surface.

    p is the pressure (compression positive), q = sqrt(3 J2). The mean stress is
    preserved and the deviatoric part is scaled. Returns the number of yielded voxels.
    """
    nz, ny, nx = sxx.shape
    yielded = 0
    for k in prange(nz):
        for j in range(ny):
            for i in range(nx):
                mean = (sxx[k, j, i] + syy[k, j, i] + szz[k, j, i]) / 3.0
                dxx = sxx[k, j, i] - mean
                dyy = syy[k, j, i] - mean
                dzz = szz[k, j, i] - mean
                txy = sxy[k, j, i]
                txz = sxz[k, j, i]
                tyz = syz[k, j, i]

                j2 = 0.5 * (dxx * dxx + dyy * dyy + dzz * dzz) + txy * txy + txz * txz + tyz * tyz
                q = math.sqrt(3.0 * j2)
                strength = cohesion - mean * sin_phi

                if q > 0.0 and q - strength > 0.0:
                    scale = max(strength, 0.0) / q
                    sxx[k, j, i] = mean + dxx * scale
                    syy[k, j, i] = mean + dyy * scale
                    szz[k, j, i] = mean + dzz * scale
                    sxy[k, j, i] = txy * scale
                    sxz[k, j, i] = txz * scale
                    syz[k, j, i] = tyz * scale
                    yielded += 1
    return yielded


@jit(nopython=True)
def max_principal_stress(sxx, syy, szz, sxy, sxz, syz):
    """Largest eigenvalue of the symmetric stress tensor (closed form)"""
    off = sxy * sxy + sxz * sxz + syz * syz
    if off == 0.0:
        return max(sxx, max(syy, szz))

    mean = (sxx + syy + szz) / 3.0
    p2 = (sxx - mean) ** 2 + (syy - mean) ** 2 + (szz - mean) ** 2 + 2.0 * off
    p = math.sqrt(p2 / 6.0)

    b11 = (sxx - mean) / p
    b22 = (syy - mean) / p
    b33 = (szz - mean) / p
    b12 = sxy / p
    b13 = sxz / p
    b23 = syz / p
    det = (b11 * (b22 * b33 - b23 * b23)
           - b12 * (b12 * b33 - b23 * b13)
           + b13 * (b12 * b23 - b22 * b13))

    r = det / 2.0
    if r < -1.0:
        r = -1.0
    elif r > 1.0:
        r = 1.0
    phi = math.acos(r) / 3.0
    return mean + 2.0 * p * math.cos(phi)


@jit(nopython=True, parallel=True)
def accumulate_tensile_damage(sxx, syy, szz, sxy, sxz, syz, damage, tensile_strength, rate_dt):
    """Grow damage where sigma_1 exceeds the tensile strength; never heals, capped at 1"""
    nz, ny, nx = sxx.shape
    for k in prange(nz):
        for j in range(ny):
            for i in range(nx):
                limit = tensile_strength[k, j, i]
                if limit <= 0.0:
                    continue
                s1 = max_principal_stress(sxx[k, j, i], syy[k, j, i], szz[k, j, i],
                                          sxy[k, j, i], sxz[k, j, i], syz[k, j, i])
                if s1 > limit:
                    d = damage[k, j, i] + rate_dt * (s1 / limit - 1.0)
                    if d > 1.0:
                        d = 1.0
                    damage[k, j, i] = d


def degraded_modulus(E: np.ndarray, damage: np.ndarray) -> np.ndarray:
    """Young's modulus reduced in proportion to local damage"""
    return (E * (1.0 - DAMAGE_STIFFNESS_LOSS * damage)).astype(E.dtype)
