import asyncio
import enum
import logging
import socket
import struct

from speedwire_bridge.backends.base import Backend, MeterData, PhaseData

logger = logging.getLogger(__name__)

# ── Speedwire frame layout ───────────────────────────────────────────

MIN_FRAME_LENGTH = 500
PROTOCOL_ID = 0x6069  # 24681, energy meter protocol
SERIAL_UNSET = 0xFFFFFFFF

_UID_OFFSET = 4
_PROTOCOL_OFFSET = 16
_SERIAL_OFFSET = 20

_TOTAL_IMPORT_POWER = 32
_TOTAL_IMPORT_ENERGY = 40
_TOTAL_EXPORT_POWER = 52
_TOTAL_EXPORT_ENERGY = 60

_PHASE_OFFSETS = (164, 308, 452)
_PHASE_SIZE = 144
_FRAME_END = _PHASE_OFFSETS[-1] + _PHASE_SIZE

# Relative to the start of a phase block
_PHASE_IMPORT_POWER = 4
_PHASE_IMPORT_ENERGY = 12
_PHASE_EXPORT_POWER = 24
_PHASE_EXPORT_ENERGY = 32
_PHASE_VOLTAGE = 132

_U16 = struct.Struct(">H")
_U32 = struct.Struct(">I")
_U64 = struct.Struct(">Q")

DEFAULT_GROUP = "239.12.255.254"
DEFAULT_PORT = 9522


class RejectReason(enum.Enum):
    TOO_SHORT = "too short"
    WRONG_PROTOCOL = "wrong protocol/broadcast packet"
    IMPLAUSIBLE_SERIAL = "implausible serial"
    FOREIGN_METER = "foreign meter"
    TRUNCATED = "truncated phase data"


class FrameRejected(Exception):
    """Raised when a datagram is not a usable meter frame."""

    def __init__(self, reason: RejectReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


# ── Decoder ──────────────────────────────────────────────────────────


def _power(import_raw: int, export_raw: int) -> float:
    """Net power in W from import/export readings in 0.1 W."""
    return (import_raw - export_raw) / 10.0


def _kwh(watt_seconds: int) -> float:
    return watt_seconds / 3600.0 / 1000.0


def decode_phase(datagram: bytes, offset: int) -> PhaseData:
    """Decode the phase block starting at ``offset``."""
    power = _power(
        _U32.unpack_from(datagram, offset + _PHASE_IMPORT_POWER)[0],
        _U32.unpack_from(datagram, offset + _PHASE_EXPORT_POWER)[0],
    )
    voltage = _U32.unpack_from(datagram, offset + _PHASE_VOLTAGE)[0] / 1000.0  # millivolts
    # A disconnected phase reports 0 V
    current = power / voltage if voltage else 0.0
    return PhaseData(
        voltage=voltage,
        current=current,
        power=power,
        energy_forward=_kwh(_U64.unpack_from(datagram, offset + _PHASE_IMPORT_ENERGY)[0]),
        energy_reverse=_kwh(_U64.unpack_from(datagram, offset + _PHASE_EXPORT_ENERGY)[0]),
    )


def decode_frame(datagram: bytes, serial_filter: int | None = None) -> MeterData:
    """Decode a Speedwire energy meter datagram.

    Args:
        datagram: Raw UDP payload.
        serial_filter: Only accept frames from this meter serial (SUSy ID).

    Raises:
        FrameRejected: The datagram is short, not a meter update, or from
            another meter.
    """
    if len(datagram) < MIN_FRAME_LENGTH:
        raise FrameRejected(RejectReason.TOO_SHORT, f"{len(datagram)} bytes")

    protocol_id = _U16.unpack_from(datagram, _PROTOCOL_OFFSET)[0]
    if protocol_id != PROTOCOL_ID:
        raise FrameRejected(RejectReason.WRONG_PROTOCOL, f"protocol id {protocol_id:#06x}")

    serial = _U32.unpack_from(datagram, _SERIAL_OFFSET)[0]
    if serial == SERIAL_UNSET:
        raise FrameRejected(RejectReason.IMPLAUSIBLE_SERIAL)

    if serial_filter and serial != serial_filter:
        raise FrameRejected(
            RejectReason.FOREIGN_METER, f"expected {serial_filter}, got {serial}"
        )

    if len(datagram) < _FRAME_END:
        raise FrameRejected(RejectReason.TRUNCATED, f"{len(datagram)} bytes")

    return MeterData(
        phases=[decode_phase(datagram, offset) for offset in _PHASE_OFFSETS],
        total_power=_power(
            _U32.unpack_from(datagram, _TOTAL_IMPORT_POWER)[0],
            _U32.unpack_from(datagram, _TOTAL_EXPORT_POWER)[0],
        ),
        total_energy_forward=_kwh(_U64.unpack_from(datagram, _TOTAL_IMPORT_ENERGY)[0]),
        total_energy_reverse=_kwh(_U64.unpack_from(datagram, _TOTAL_EXPORT_ENERGY)[0]),
        serial=serial,
        uid=_U32.unpack_from(datagram, _UID_OFFSET)[0],
    )


def _log_phase_table(data: MeterData) -> None:
    l1, l2, l3 = data.phases
    rows = (
        ("V", "voltage"),
        ("A", "current"),
        ("W", "power"),
        ("kWh", "energy_forward"),
        ("kWh", "energy_reverse"),
    )
    logger.debug("+-----+----------+----------+----------+")
    logger.debug("|value|    L1    |    L2    |    L3    |")
    logger.debug("+-----+----------+----------+----------+")
    for unit, attr in rows:
        logger.debug(
            "| %3s | %8.2f | %8.2f | %8.2f |",
            unit,
            getattr(l1, attr),
            getattr(l2, attr),
            getattr(l3, attr),
        )
    logger.debug("+-----+----------+----------+----------+")


# ── Multicast listener ───────────────────────────────────────────────


class _SpeedwireProtocol(asyncio.DatagramProtocol):
    def __init__(self, backend: "SpeedwireBackend") -> None:
        self._backend = backend

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self._backend.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning("Multicast socket error: %s", exc)


def _open_multicast_socket(group: str, port: int, interface: str) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.bind(("", port))
        mreq = struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton(interface))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class SpeedwireBackend(Backend):
    """Backend that listens for SMA energy meter multicast frames."""

    def __init__(self, config: dict) -> None:
        super().__init__()
        self._group: str = config.get("group", DEFAULT_GROUP)
        self._port: int = config.get("port", DEFAULT_PORT)
        self._interface: str = config.get("interface", "0.0.0.0")
        self._serial_filter: int | None = config.get("serial_filter")
        self._data: MeterData | None = None
        self._transport: asyncio.DatagramTransport | None = None

    async def start(self) -> None:
        sock = _open_multicast_socket(self._group, self._port, self._interface)
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _SpeedwireProtocol(self), sock=sock
        )
        logger.info(
            "Speedwire backend started, listening on %s:%d (serial filter=%s)",
            self._group,
            self._port,
            self._serial_filter or "any",
        )

    async def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        logger.info("Speedwire backend stopped")

    def get_meter_data(self) -> MeterData | None:
        return self._data

    def handle_datagram(self, datagram: bytes, addr: tuple | None = None) -> MeterData | None:
        """Decode one datagram and pass it on to subscribers.

        Returns the decoded data, or None if the datagram was rejected.
        """
        try:
            data = decode_frame(datagram, self._serial_filter)
        except FrameRejected as exc:
            logger.debug("Dropping datagram from %s: %s", addr, exc)
            return None

        logger.debug("Uid: %d, serial: %d", data.uid, data.serial)
        logger.info(
            "Meter update received: %.2f kWh bought and %.2f kWh sold, %.1f W currently flowing",
            data.total_energy_forward,
            data.total_energy_reverse,
            data.total_power,
        )
        if logger.isEnabledFor(logging.DEBUG):
            _log_phase_table(data)

        self._data = data
        for callback in self._subscribers:
            try:
                callback(data)
            except Exception:
                logger.exception("Meter data subscriber failed")
        return data
