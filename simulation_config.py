"""
Simulation Configuration
Immutable run parameters for the chunked elastic wave simulator
"""
import json
import math
from dataclasses import dataclass, asdict, fields
from enum import Enum
from typing import Optional, Tuple, Dict, Any


class ConfigurationError(ValueError):
    """Invalid simulation parameters or input volumes"""


class Axis(Enum):
    X = 0
    Y = 1
    Z = 2


class Wavelet(Enum):
    RICKER = 1    # Mexican hat pulse
    SINUSOID = 2  # Continuous tone
    CONSTANT = 3  # Unshaped amplitude


@dataclass(frozen=True)
class SimulationParameters:
    """Complete, immutable description of one simulation run"""
    # Grid
    width: int = 100
    height: int = 100
    depth: int = 100
    pixel_size: float = 1e-3  # meters per voxel
    total_time_steps: int = 1000

    # Material defaults (used where no per-voxel volume is given)
    youngs_modulus_mpa: float = 30000.0
    poisson_ratio: float = 0.25
    density_kg_m3: float = 2700.0
    confining_pressure_mpa: float = 0.0
    cohesion_mpa: float = 5.0
    failure_angle_deg: float = 30.0
    tensile_strength_mpa: float = 0.0  # 0 = derive from 5% of E
    selected_material_id: Optional[int] = None

    # Source / receiver
    tx_position: Tuple[float, float, float] = (0.5, 0.5, 0.0)  # normalized [0, 1]
    rx_position: Tuple[float, float, float] = (0.5, 0.5, 1.0)
    axis: Axis = Axis.Z
    source_energy_j: float = 1.0
    source_frequency_khz: float = 500.0
    source_amplitude: float = 100.0  # percent
    wavelet: Wavelet = Wavelet.RICKER
    use_full_face_transducers: bool = False

    # Physics toggles
    use_elastic_model: bool = True
    use_plastic_model: bool = False
    use_brittle_model: bool = False
    artificial_damping: float = 0.005  # velocity loss per step
    boundary_damping: float = 0.9  # multiplier inside the absorbing band
    damage_rate_per_sec: float = 0.2
    arrival_threshold: float = 0.05  # m/s above baseline
    stop_after_arrivals: bool = False

    # Execution
    use_gpu: bool = False
    enable_offloading: bool = True
    save_time_series: bool = False
    snapshot_interval: int = 10

    # Memory policy overrides
    offload_directory: Optional[str] = None
    max_memory_mb: Optional[float] = None  # assumed RAM instead of detection
    huge_dataset_threshold_gb: float = 8.0

    def __post_init__(self):
        for name in ('width', 'height', 'depth'):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        if not self.pixel_size > 0:
            raise ConfigurationError(f"pixel_size must be > 0, got {self.pixel_size}")
        if self.total_time_steps <= 0:
            raise ConfigurationError("total_time_steps must be positive")
        if self.youngs_modulus_mpa <= 0:
            raise ConfigurationError("youngs_modulus_mpa must be positive")
        if not -1.0 < self.poisson_ratio < 0.5:
            raise ConfigurationError(f"poisson_ratio must lie in (-1, 0.5), got {self.poisson_ratio}")
        if self.density_kg_m3 <= 0:
            raise ConfigurationError("density_kg_m3 must be positive")
        if not self.use_elastic_model:
            raise ConfigurationError("only the elastic wave model is supported")
        for name in ('tx_position', 'rx_position'):
            position = getattr(self, name)
            if len(position) != 3 or any(not 0.0 <= p <= 1.0 for p in position):
                raise ConfigurationError(f"{name} must be three values in [0, 1], got {position!r}")
        if not isinstance(self.axis, Axis):
            raise ConfigurationError(f"axis must be an Axis, got {self.axis!r}")
        if not isinstance(self.wavelet, Wavelet):
            raise ConfigurationError(f"wavelet must be a Wavelet, got {self.wavelet!r}")
        if self.source_energy_j < 0 or self.source_amplitude < 0:
            raise ConfigurationError("source energy and amplitude must be non-negative")
        if self.source_frequency_khz <= 0:
            raise ConfigurationError("source_frequency_khz must be positive")
        if not 0.0 <= self.artificial_damping < 1.0:
            raise ConfigurationError("artificial_damping must lie in [0, 1)")
        if not 0.0 < self.boundary_damping < 1.0:
            raise ConfigurationError("boundary_damping must lie in (0, 1)")
        if self.snapshot_interval <= 0:
            raise ConfigurationError("snapshot_interval must be positive")
        if self.max_memory_mb is not None and self.max_memory_mb <= 0:
            raise ConfigurationError("max_memory_mb must be positive")

    @property
    def dimensions(self) -> Tuple[int, int, int]:
        """(width, height, depth)"""
        return self.width, self.height, self.depth

    @property
    def volume_shape(self) -> Tuple[int, int, int]:
        """Array shape of every volume, indexed [z, y, x]"""
        return self.depth, self.height, self.width

    @property
    def tx_voxel(self) -> Tuple[int, int, int]:
        return voxel_index(self.tx_position, self.dimensions)

    @property
    def rx_voxel(self) -> Tuple[int, int, int]:
        return voxel_index(self.rx_position, self.dimensions)

    @property
    def tx_rx_distance(self) -> float:
        """Transmitter-receiver distance in meters"""
        tx, rx = self.tx_voxel, self.rx_voxel
        return math.sqrt(sum((a - b) ** 2 for a, b in zip(tx, rx))) * self.pixel_size

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-friendly dictionary"""
        data = asdict(self)
        data['axis'] = self.axis.name
        data['wavelet'] = self.wavelet.name
        data['tx_position'] = list(self.tx_position)
        data['rx_position'] = list(self.rx_position)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SimulationParameters':
        """Create from dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if isinstance(values.get('axis'), str):
            values['axis'] = Axis[values['axis'].upper()]
        if isinstance(values.get('wavelet'), str):
            values['wavelet'] = Wavelet[values['wavelet'].upper()]
        for name in ('tx_position', 'rx_position'):
            if name in values:
                values[name] = tuple(values[name])
        return cls(**values)

    @classmethod
    def from_json(cls, path: str) -> 'SimulationParameters':
        """Load from JSON file"""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_json(self, path: str):
        """Save to JSON file"""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def voxel_index(position: Tuple[float, float, float],
                dimensions: Tuple[int, int, int]) -> Tuple[int, int, int]:
    """Map a normalized [0, 1] position to an (x, y, z) voxel index"""
    return tuple(min(int(p * n), n - 1) for p, n in zip(position, dimensions))
