import math

import numpy as np
import pytest

from simulation_config import Axis, Wavelet, ConfigurationError
from memory_manager import WaveFieldChunk
from wave_physics import (
    MaterialModel, SourceModel, compute_time_step, max_stable_time_step,
    p_wave_velocity, s_wave_velocity, ricker_wavelet, source_time_function,
    apply_absorbing_boundary, apply_material_mask, track_max_velocity,
    sample_receiver
)


def allocated_chunk(start_z=0, depth=10, width=10, height=10):
    chunk = WaveFieldChunk(0, start_z, depth, width, height)
    chunk.allocate()
    return chunk


@pytest.mark.parametrize("E, nu, rho, h", [
    (10000e6, 0.25, 2700.0, 1e-3),
    (70000e6, 0.33, 2600.0, 5e-4),
    (500e6, 0.45, 1800.0, 1e-2),
    (30000e6, 0.0, 100.0, 1e-3),
])
def test_time_step_respects_cfl_bound(E, nu, rho, h):
    vp = float(p_wave_velocity(E, nu, rho))
    dt = compute_time_step(vp, h)
    assert 0 < dt <= 0.5 * h / (math.sqrt(3.0) * vp)
    assert dt == pytest.approx(0.9 * max_stable_time_step(vp, h))


@pytest.mark.parametrize("vp", [0.0, -10.0, float("nan")])
def test_time_step_requires_positive_velocity(vp):
    with pytest.raises(ConfigurationError):
        compute_time_step(vp, 1e-3)


def test_wave_velocities():
    E, nu, rho = 10000e6, 0.25, 2700.0
    vp = float(p_wave_velocity(E, nu, rho))
    vs = float(s_wave_velocity(E, nu, rho))
    assert vp == pytest.approx(2108.2, rel=1e-4)
    assert vp / vs == pytest.approx(math.sqrt(3.0))
    # Density below the floor behaves like the floor
    assert float(p_wave_velocity(E, nu, 1.0)) == float(p_wave_velocity(E, nu, 100.0))


def test_ricker_wavelet_shape():
    f = 500e3
    t_peak = 1.0 / f
    assert ricker_wavelet(t_peak, f) == pytest.approx(1.0)
    zero_crossing = 1.0 / (math.sqrt(2.0) * math.pi * f)
    assert ricker_wavelet(t_peak + zero_crossing, f) == pytest.approx(0.0, abs=1e-12)
    assert ricker_wavelet(t_peak - 0.3e-6, f) == pytest.approx(ricker_wavelet(t_peak + 0.3e-6, f))
    assert ricker_wavelet(0.0, f) < 1e-3


def test_source_time_functions():
    f = 1000.0
    assert source_time_function(0.25e-3, f, Wavelet.SINUSOID) == pytest.approx(1.0)
    assert source_time_function(123.0, f, Wavelet.CONSTANT) == 1.0


def test_point_source_amplitude(make_params):
    params = make_params(source_energy_j=2.0, source_amplitude=50.0)
    source = SourceModel(params, MaterialModel(params), 1e-7)
    expected = math.sqrt(2.0 * 2.0 / (2700.0 * 1e-9)) * 0.5
    assert source.amplitude == pytest.approx(expected)


def test_full_face_divides_energy_across_face(make_params):
    point = make_params()
    face = make_params(use_full_face_transducers=True)
    a_point = SourceModel(point, MaterialModel(point), 1e-7).amplitude
    a_face = SourceModel(face, MaterialModel(face), 1e-7).amplitude
    assert a_face == pytest.approx(a_point / math.sqrt(100))


def test_source_uses_density_at_transmitter(make_params):
    params = make_params()
    density = np.full(params.volume_shape, 2700.0, dtype=np.float32)
    density[1, 5, 5] = 675.0
    light = SourceModel(params, MaterialModel(params, density=density), 1e-7)
    uniform = SourceModel(params, MaterialModel(params), 1e-7)
    assert light.amplitude == pytest.approx(2.0 * uniform.amplitude)


def test_ricker_source_peaks_at_one_period(make_params):
    params = make_params(source_frequency_khz=500.0)
    source = SourceModel(params, MaterialModel(params), 1e-7)
    assert source.value(20) == pytest.approx(source.amplitude)


def test_point_source_adds_to_velocity(make_params):
    params = make_params(wavelet=Wavelet.CONSTANT)
    source = SourceModel(params, MaterialModel(params), 1e-7)
    chunk = allocated_chunk()

    assert source.apply(chunk, 0)
    assert source.apply(chunk, 1)

    assert chunk.vz[1, 5, 5] == pytest.approx(2.0 * source.amplitude, rel=1e-6)
    assert np.count_nonzero(chunk.vz) == 1
    assert not chunk.vx.any()


def test_point_source_skips_other_chunks(make_params):
    params = make_params(wavelet=Wavelet.CONSTANT)
    source = SourceModel(params, MaterialModel(params), 1e-7)
    chunk = allocated_chunk(start_z=4, depth=3)
    assert not source.touches(chunk)
    assert source.apply(chunk, 0) is False
    assert not chunk.vz.any()


def test_full_face_source_on_x_axis(make_params):
    params = make_params(wavelet=Wavelet.CONSTANT, axis=Axis.X,
                         use_full_face_transducers=True, tx_position=(0.15, 0.55, 0.55))
    source = SourceModel(params, MaterialModel(params), 1e-7)
    chunk = allocated_chunk(start_z=4, depth=3)

    assert source.apply(chunk, 0)
    assert np.allclose(chunk.vx[:, :, 1], source.amplitude)
    assert np.count_nonzero(chunk.vx) == 3 * 10


def test_full_face_source_on_z_axis(make_params):
    params = make_params(wavelet=Wavelet.CONSTANT, use_full_face_transducers=True)
    source = SourceModel(params, MaterialModel(params), 1e-7)
    chunk = allocated_chunk()

    source.apply(chunk, 0)
    assert np.allclose(chunk.vz[1], source.amplitude)
    assert not chunk.vz[2].any()


def test_absorbing_boundary_on_single_chunk():
    chunk = allocated_chunk()
    chunk.vx.fill(1.0)

    apply_absorbing_boundary(chunk, global_depth=10, factor=0.5)

    assert np.all(chunk.vx[3:7, 3:7, 3:7] == 1.0)
    assert chunk.vx[5, 5, 0] == 0.5
    assert chunk.vx[0, 5, 5] == 0.5
    assert chunk.vx[9, 5, 5] == 0.5
    assert chunk.vx[0, 0, 0] == 0.125  # corner lies in three bands


def test_absorbing_boundary_only_damps_global_z_faces():
    middle = allocated_chunk(start_z=10)
    bottom = allocated_chunk(start_z=20)
    for chunk in (middle, bottom):
        chunk.vy.fill(1.0)
        apply_absorbing_boundary(chunk, global_depth=30, factor=0.5)

    assert np.all(middle.vy[:, 5, 5] == 1.0)
    assert np.all(bottom.vy[:7, 5, 5] == 1.0)
    assert np.all(bottom.vy[7:, 5, 5] == 0.5)


def test_material_defaults_and_fallbacks(make_params):
    params = make_params()
    shape = params.volume_shape
    youngs = np.full(shape, 20000.0, dtype=np.float32)
    youngs[0, 0, 0] = 0.0
    density = np.full(shape, 3000.0, dtype=np.float32)
    density[0, 0, 1] = 50.0
    density[0, 0, 2] = np.nan

    E, nu, rho = MaterialModel(params, density=density, youngs_modulus=youngs).slab(0, 2)

    assert E.shape == (2, 10, 10)
    assert E.dtype == nu.dtype == rho.dtype == np.float32
    assert E[1, 1, 1] == pytest.approx(20000e6)
    assert E[0, 0, 0] == pytest.approx(10000e6)  # invalid, scalar default
    assert np.all(nu == np.float32(0.25))
    assert rho[0, 0, 1] == 100.0
    assert rho[0, 0, 2] == 2700.0


def test_material_volume_shape_mismatch(make_params):
    params = make_params()
    with pytest.raises(ConfigurationError):
        MaterialModel(params, density=np.ones((10, 10, 9), dtype=np.float32))


def test_selected_material_needs_labels(make_params):
    params = make_params(selected_material_id=2)
    with pytest.raises(ConfigurationError):
        MaterialModel(params)

    labels = np.ones(params.volume_shape, dtype=np.uint8)
    labels[5:] = 2
    mask = MaterialModel(params, labels=labels).material_mask(4, 6)
    assert not mask[0].any()
    assert mask[1].all()


def test_tensile_strength_defaults_to_fraction_of_modulus(make_params):
    E = np.full((2, 2, 2), 10000e6, dtype=np.float32)
    derived = MaterialModel(make_params()).tensile_strength(E)
    assert derived[0, 0, 0] == pytest.approx(500e6)

    configured = MaterialModel(make_params(tensile_strength_mpa=2.0)).tensile_strength(E)
    assert np.all(configured == 2e6)


def test_max_p_wave_velocity_of_homogeneous_volume(make_params):
    params = make_params()
    expected = float(p_wave_velocity(10000e6, 0.25, 2700.0))
    assert MaterialModel(params).max_p_wave_velocity() == pytest.approx(expected, rel=1e-5)


def test_material_mask_zeroes_outside():
    chunk = allocated_chunk(depth=2, width=3, height=3)
    for array in chunk.components():
        array.fill(1.0)
    mask = np.zeros(chunk.shape, dtype=bool)
    mask[1] = True

    apply_material_mask(chunk, mask)

    for array in chunk.components():
        assert not array[0].any()
        assert np.all(array[1] == 1.0)


def test_track_max_velocity_keeps_running_max():
    shape = (2, 3, 3)
    vx, vy, vz = (np.zeros(shape, dtype=np.float32) for _ in range(3))
    max_field = np.zeros(shape, dtype=np.float32)

    vx[0, 1, 1], vz[0, 1, 1] = 3.0, 4.0
    track_max_velocity(vx, vy, vz, max_field)
    vx[0, 1, 1], vz[0, 1, 1] = 1.0, 0.0
    vy[1, 2, 2] = -2.0
    track_max_velocity(vx, vy, vz, max_field)

    assert max_field[0, 1, 1] == pytest.approx(5.0)
    assert max_field[1, 2, 2] == pytest.approx(2.0)
    assert max_field[0, 0, 0] == 0.0


def test_sample_receiver_splits_transverse_motion():
    chunk = allocated_chunk(start_z=4, depth=4)
    chunk.vx[2, 5, 5] = 3.0
    chunk.vz[2, 5, 5] = 4.0

    magnitude, transverse = sample_receiver(chunk, (5, 5, 6), Axis.Z)
    assert magnitude == pytest.approx(5.0)
    assert transverse == pytest.approx(3.0)

    _, transverse_x = sample_receiver(chunk, (5, 5, 6), Axis.X)
    assert transverse_x == pytest.approx(4.0)
