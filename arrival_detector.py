"""
Arrival Detection
Online P/S first-arrival picking from the receiver signal
"""
import logging
from enum import Enum
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.05  # m/s above baseline
MIN_S_DELAY_STEPS = 50


class ArrivalState(Enum):
    NO_ARRIVAL = 0
    P_ARRIVED = 1
    P_AND_S_ARRIVED = 2


class ArrivalDetector:
    """
    One-way state machine over receiver samples.

    P is picked when the velocity magnitude first exceeds baseline + threshold.
    S is picked no earlier than MIN_S_DELAY_STEPS after P, when the transverse
    magnitude exceeds half the threshold. Picks are never revised.
    """

    def __init__(self, baseline: float = 0.0, threshold: float = DEFAULT_THRESHOLD,
                 min_s_delay: int = MIN_S_DELAY_STEPS):
        self.baseline = baseline
        self.threshold = threshold
        self.min_s_delay = min_s_delay
        self.p_wave_step: Optional[int] = None
        self.s_wave_step: Optional[int] = None

    @property
    def state(self) -> ArrivalState:
        if self.p_wave_step is None:
            return ArrivalState.NO_ARRIVAL
        if self.s_wave_step is None:
            return ArrivalState.P_ARRIVED
        return ArrivalState.P_AND_S_ARRIVED

    def update(self, step: int, amplitude: float, transverse_amplitude: float) -> ArrivalState:
        """Feed one receiver sample"""
        if self.p_wave_step is None:
            if amplitude > self.baseline + self.threshold:
                self.p_wave_step = step
                logger.info("P-wave arrival at step %d (amplitude %.4g)", step, amplitude)
        elif self.s_wave_step is None:
            if (step - self.p_wave_step >= self.min_s_delay
                    and transverse_amplitude > self.threshold * 0.5):
                self.s_wave_step = step
                logger.info("S-wave arrival at step %d (transverse %.4g)", step, transverse_amplitude)
        return self.state

    def velocities(self, distance: float, dt: float) -> Tuple[float, float, float]:
        """(Vp, Vs, Vp/Vs) from the picks; 0 for phases not detected"""
        vp = distance / (self.p_wave_step * dt) if self.p_wave_step else 0.0
        vs = distance / (self.s_wave_step * dt) if self.s_wave_step else 0.0
        ratio = vp / vs if vs > 0 else 0.0
        return vp, vs, ratio
