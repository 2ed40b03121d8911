from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class PhaseData:
    """Electrical measurements for a single line phase."""

    voltage: float = 0.0
    current: float = 0.0  # Derived: power / voltage
    power: float = 0.0  # Active power (W), positive=import, negative=export
    energy_forward: float = 0.0  # Cumulative import energy (kWh)
    energy_reverse: float = 0.0  # Cumulative export energy (kWh)


@dataclass
class MeterData:
    """Normalized meter data produced by backends, consumed by frontends.

    Totals are taken from the source as-is; they are not the sum of the phases.
    """

    phases: list[PhaseData] = field(default_factory=lambda: [PhaseData() for _ in range(3)])
    total_power: float = 0.0
    total_energy_forward: float = 0.0
    total_energy_reverse: float = 0.0
    serial: int = 0
    uid: int = 0

    @property
    def total_current(self) -> float:
        return sum(p.current for p in self.phases)

    @property
    def mean_voltage(self) -> float:
        if not self.phases:
            return 0.0
        return sum(p.voltage for p in self.phases) / len(self.phases)


MeterDataCallback = Callable[[MeterData], None]


class Backend(ABC):
    """Abstract base class for meter data backends."""

    def __init__(self) -> None:
        self._subscribers: list[MeterDataCallback] = []

    def subscribe(self, callback: MeterDataCallback) -> None:
        """Register a callback invoked with every accepted MeterData."""
        self._subscribers.append(callback)

    @abstractmethod
    async def start(self) -> None:
        """Start the backend (e.g., begin listening)."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the backend and clean up resources."""

    @abstractmethod
    def get_meter_data(self) -> MeterData | None:
        """Return the latest meter data snapshot, or None before the first one."""
