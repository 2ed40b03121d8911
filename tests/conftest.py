"""Shared test fixtures."""

import struct

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from speedwire_bridge.backends.base import Backend, MeterData, PhaseData
from speedwire_bridge.frontends.victron import VictronFrontend

TEST_SERIAL = 1900123456
FRAME_LENGTH = 608


def build_phase(
    import_power: int = 0,
    export_power: int = 0,
    import_energy: int = 0,
    export_energy: int = 0,
    voltage_mv: int = 230000,
) -> dict:
    return {
        "import_power": import_power,
        "export_power": export_power,
        "import_energy": import_energy,
        "export_energy": export_energy,
        "voltage_mv": voltage_mv,
    }


def build_frame(
    serial: int = TEST_SERIAL,
    protocol_id: int = 0x6069,
    import_power: int = 0,
    export_power: int = 0,
    import_energy: int = 0,
    export_energy: int = 0,
    phases: list[dict] | None = None,
    length: int = FRAME_LENGTH,
) -> bytes:
    """Build a Speedwire meter datagram with raw field values at their offsets."""
    buf = bytearray(max(length, FRAME_LENGTH))
    buf[0:4] = b"SMA\x00"
    struct.pack_into(">I", buf, 4, 0x00010001)
    struct.pack_into(">H", buf, 16, protocol_id)
    struct.pack_into(">I", buf, 20, serial)
    struct.pack_into(">I", buf, 32, import_power)
    struct.pack_into(">Q", buf, 40, import_energy)
    struct.pack_into(">I", buf, 52, export_power)
    struct.pack_into(">Q", buf, 60, export_energy)

    phases = phases or [build_phase() for _ in range(3)]
    for offset, phase in zip((164, 308, 452), phases):
        struct.pack_into(">I", buf, offset + 4, phase["import_power"])
        struct.pack_into(">Q", buf, offset + 12, phase["import_energy"])
        struct.pack_into(">I", buf, offset + 24, phase["export_power"])
        struct.pack_into(">Q", buf, offset + 32, phase["export_energy"])
        struct.pack_into(">I", buf, offset + 132, phase["voltage_mv"])
    return bytes(buf[:length])


class MockBackend(Backend):
    """A backend that returns configurable test data."""

    def __init__(self, data: MeterData | None = None) -> None:
        super().__init__()
        self._data = data or self._default_data()

    @staticmethod
    def _default_data() -> MeterData:
        return MeterData(
            phases=[
                PhaseData(voltage=230.0, current=3.0, power=690.0,
                          energy_forward=3.6, energy_reverse=1.2),
                PhaseData(voltage=231.0, current=2.0, power=462.0,
                          energy_forward=2.0, energy_reverse=0.5),
                PhaseData(voltage=229.0, current=1.0, power=229.0,
                          energy_forward=1.0, energy_reverse=0.0),
            ],
            total_power=1381.0,
            total_energy_forward=6.6,
            total_energy_reverse=1.7,
        )

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    def get_meter_data(self) -> MeterData:
        return self._data

    def set_data(self, data: MeterData) -> None:
        self._data = data

    def emit(self, data: MeterData | None = None) -> None:
        """Push data to subscribers like a receive loop would."""
        if data is not None:
            self._data = data
        for callback in self._subscribers:
            callback(self._data)


class RecordingNotifier:
    """Stands in for the D-Bus ItemsChanged emitter."""

    def __init__(self) -> None:
        self.events: list[dict] = []

    def notify(self, changed) -> bool:
        if not changed:
            return False
        self.events.append(dict(changed))
        return True


@pytest.fixture
def mock_backend():
    return MockBackend()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def frontend(mock_backend, notifier):
    """Victron frontend with a seeded store and no bus connection."""
    fe = VictronFrontend(mock_backend, {})
    fe.initialize_store()
    fe._notifier = notifier
    return fe


@pytest.fixture
def client(frontend):
    """FastAPI test client with the Victron diagnostics router (no lifespan)."""
    test_app = FastAPI()
    test_app.include_router(frontend.get_router())
    with TestClient(test_app) as c:
        yield c
