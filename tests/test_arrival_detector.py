import pytest

from arrival_detector import ArrivalDetector, ArrivalState


def feed(detector, amplitude, transverse, steps):
    for step in range(1, steps + 1):
        detector.update(step, amplitude(step), transverse(step))


def test_picks_p_then_s():
    detector = ArrivalDetector(baseline=0.0, threshold=0.05)
    feed(detector,
         amplitude=lambda s: 0.06 if s >= 120 else 0.0,
         transverse=lambda s: 0.03 if s >= 200 or s == 150 else 0.0,
         steps=300)

    assert detector.p_wave_step == 120
    assert detector.s_wave_step == 200
    assert detector.state == ArrivalState.P_AND_S_ARRIVED


def test_s_is_not_picked_inside_the_p_coda():
    detector = ArrivalDetector(threshold=0.05)
    feed(detector,
         amplitude=lambda s: 0.1 if s >= 10 else 0.0,
         transverse=lambda s: 0.1 if s >= 10 else 0.0,
         steps=100)

    assert detector.p_wave_step == 10
    assert detector.s_wave_step == 60


def test_threshold_is_relative_to_baseline():
    detector = ArrivalDetector(baseline=0.5, threshold=0.05)
    assert detector.update(1, 0.54, 0.0) == ArrivalState.NO_ARRIVAL
    assert detector.update(2, 0.56, 0.0) == ArrivalState.P_ARRIVED


def test_picks_are_never_revised():
    detector = ArrivalDetector()
    detector.update(5, 1.0, 0.0)
    detector.update(6, 0.0, 0.0)
    detector.update(7, 2.0, 0.0)
    assert detector.p_wave_step == 5
    assert detector.state == ArrivalState.P_ARRIVED


def test_velocities_from_picks():
    detector = ArrivalDetector()
    detector.p_wave_step, detector.s_wave_step = 120, 200

    vp, vs, ratio = detector.velocities(0.007, 1e-7)
    assert vp == pytest.approx(0.007 / 120e-7)
    assert vs == pytest.approx(0.007 / 200e-7)
    assert ratio == pytest.approx(200 / 120)


def test_velocities_without_arrivals_are_zero():
    assert ArrivalDetector().velocities(0.01, 1e-7) == (0.0, 0.0, 0.0)

    detector = ArrivalDetector()
    detector.update(3, 1.0, 0.0)
    vp, vs, ratio = detector.velocities(0.01, 1e-7)
    assert vp > 0
    assert vs == 0.0
    assert ratio == 0.0
