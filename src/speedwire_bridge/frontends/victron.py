"""Victron grid meter frontend: D-Bus service, bus item objects and change signals."""

import logging
from collections.abc import Mapping
from dataclasses import asdict
from typing import Any

from dbus_fast import BusType, DBusError, NameFlag, RequestNameReply, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.service import ServiceInterface, method, signal
from fastapi import APIRouter, HTTPException

from speedwire_bridge.backends.base import Backend, MeterData
from speedwire_bridge.frontends.base import Frontend
from speedwire_bridge.store import (
    AttributeEntry,
    AttributeStore,
    Measurement,
    PathNotFound,
    StoreNotInitialized,
    Value,
    format_text,
)

logger = logging.getLogger(__name__)

# ── Victron device constants ─────────────────────────────────────────

BUS_ITEM_INTERFACE = "com.victronenergy.BusItem"
BUS_ITEM_ERROR = "com.victronenergy.BusItem.Error"

# Venus OS only picks up grid meters named com.victronenergy.grid.cgwacs_*
DEFAULT_SERVICE_NAME = "com.victronenergy.grid.cgwacs_ttyUSB0_di30_mb1"

PRODUCT_ID = 45058  # ET340
DEVICE_TYPE = 71

_PRECISION = 2
_PHASE_QUANTITIES = (
    ("Power", "W", "power"),
    ("Voltage", "V", "voltage"),
    ("Current", "A", "current"),
    ("Energy/Forward", "kWh", "energy_forward"),
    ("Energy/Reverse", "kWh", "energy_reverse"),
)

# Placeholders must be numeric, Venus OS sums them before the first frame arrives
_PLACEHOLDERS = {"Voltage": 230.0}


# ── Path builders ────────────────────────────────────────────────────


def identity_entries(config: Mapping[str, Any]) -> dict[str, AttributeEntry]:
    """Build the static device identity paths."""
    values: dict[str, Value] = {
        "/Connected": 1,
        "/CustomName": config.get("custom_name", "Grid meter"),
        "/DeviceInstance": config.get("device_instance", 30),
        "/DeviceType": DEVICE_TYPE,
        "/ErrorCode": 0,
        "/FirmwareVersion": config.get("firmware_version", 2),
        "/Mgmt/Connection": config.get("connection", "/dev/ttyUSB0"),
        "/Mgmt/ProcessName": config.get(
            "process_name", "/opt/color-control/dbus-cgwacs/dbus-cgwacs"
        ),
        "/Mgmt/ProcessVersion": config.get("process_version", "1.8.0"),
        "/Position": config.get("position", 0),
        "/ProductId": PRODUCT_ID,
        "/ProductName": config.get("product_name", "Grid meter"),
        "/Serial": config.get("serial", "BP98305081235"),
    }
    return {path: AttributeEntry(value=v, text=str(v)) for path, v in values.items()}


def measurement_units() -> dict[str, str]:
    """Return every published measurement path with its unit."""
    units: dict[str, str] = {}
    for prefix in ("/Ac", "/Ac/L1", "/Ac/L2", "/Ac/L3"):
        for name, unit, _ in _PHASE_QUANTITIES:
            units[f"{prefix}/{name}"] = unit
    return units


def placeholder_entries() -> dict[str, AttributeEntry]:
    entries = {}
    for path, unit in measurement_units().items():
        value = _PLACEHOLDERS.get(path.rsplit("/", 1)[-1], 0.0)
        entries[path] = AttributeEntry(value=value, text=format_text(value, unit, _PRECISION))
    return entries


def measurements_for(data: MeterData) -> list[Measurement]:
    """Map one frame onto all measurement paths, aggregates included."""
    result = [
        Measurement("/Ac/Power", data.total_power, "W", _PRECISION),
        Measurement("/Ac/Voltage", data.mean_voltage, "V", _PRECISION),
        Measurement("/Ac/Current", data.total_current, "A", _PRECISION),
        Measurement("/Ac/Energy/Forward", data.total_energy_forward, "kWh", _PRECISION),
        Measurement("/Ac/Energy/Reverse", data.total_energy_reverse, "kWh", _PRECISION),
    ]
    for n, phase in enumerate(data.phases, start=1):
        for name, unit, attr in _PHASE_QUANTITIES:
            result.append(Measurement(f"/Ac/L{n}/{name}", getattr(phase, attr), unit, _PRECISION))
    return result


def to_variant(value: Value) -> Variant:
    if isinstance(value, str):
        return Variant("s", value)
    if isinstance(value, float):
        return Variant("d", value)
    if -(2**31) <= value < 2**31:
        return Variant("i", value)
    return Variant("x", value)


def items_payload(entries: Mapping[str, AttributeEntry]) -> dict[str, dict[str, Variant]]:
    """Shape entries as the a{sa{sv}} GetItems/ItemsChanged payload."""
    return {
        path: {"Value": to_variant(entry.value), "Text": Variant("s", entry.text)}
        for path, entry in entries.items()
    }


# ── Bus peer ─────────────────────────────────────────────────────────


class BusPeer:
    """Request/response surface that external bus callers invoke.

    The path is an explicit argument; the D-Bus objects below forward to it.
    """

    def __init__(self, store: AttributeStore) -> None:
        self._store = store

    def get_item(self, path: str) -> AttributeEntry:
        return self._store.get(path)

    def get_value(self, path: str) -> Value:
        return self._store.get(path).value

    def get_text(self, path: str) -> str:
        return self._store.get(path).text.strip('"')

    def set_value(self, path: str, value: Any) -> int:
        """Overwrite a value locally. Returns 0 on success, -1 otherwise."""
        if isinstance(value, bool):
            value = int(value)
        if not isinstance(value, (int, float, str)):
            logger.warning("SetValue(%s): unsupported value %r", path, value)
            return -1
        try:
            self._store.set_raw(path, value)
        except PathNotFound:
            logger.warning("SetValue(%s): unknown path", path)
            return -1
        return 0

    def set_values(self, values: Mapping[str, Any]) -> int:
        """Overwrite several paths, keyed relative to '/'. Returns 0 only if all succeed."""
        result = 0
        for rel_path, value in values.items():
            if self.set_value("/" + rel_path.lstrip("/"), value) != 0:
                result = -1
        return result

    def get_items(self) -> dict[str, AttributeEntry]:
        return self._store.snapshot_all()

    def get_texts(self) -> dict[str, str]:
        """All texts keyed relative to '/', stripped like get_text."""
        return {
            path.lstrip("/"): entry.text.strip('"')
            for path, entry in self._store.snapshot_all().items()
        }


def _bus_call(fn, *args):
    try:
        return fn(*args)
    except StoreNotInitialized as exc:
        raise DBusError(BUS_ITEM_ERROR, str(exc)) from exc
    except PathNotFound as exc:
        raise DBusError(BUS_ITEM_ERROR, f"Unknown path {exc.args[0]}") from exc


# ── D-Bus objects ────────────────────────────────────────────────────


class BusItemInterface(ServiceInterface):
    """com.victronenergy.BusItem for a single path."""

    def __init__(self, peer: BusPeer, path: str) -> None:
        super().__init__(BUS_ITEM_INTERFACE)
        self._peer = peer
        self._path = path

    @method()
    def GetValue(self) -> "v":  # noqa: F821
        logger.debug("GetValue() called for %s", self._path)
        return to_variant(_bus_call(self._peer.get_value, self._path))

    @method()
    def GetText(self) -> "s":  # noqa: F821
        logger.debug("GetText() called for %s", self._path)
        return _bus_call(self._peer.get_text, self._path)

    @method()
    def SetValue(self, value: "v") -> "i":  # noqa: F821
        logger.debug("SetValue() called for %s with %r", self._path, value.value)
        return _bus_call(self._peer.set_value, self._path, value.value)


class RootInterface(ServiceInterface):
    """com.victronenergy.BusItem on '/': bulk queries and batched change signals."""

    def __init__(self, peer: BusPeer) -> None:
        super().__init__(BUS_ITEM_INTERFACE)
        self._peer = peer

    @method()
    def GetItems(self) -> "a{sa{sv}}":  # noqa: F821
        return items_payload(_bus_call(self._peer.get_items))

    @method()
    def GetValue(self) -> "v":  # noqa: F821
        items = _bus_call(self._peer.get_items)
        return Variant(
            "a{sv}", {path.lstrip("/"): to_variant(e.value) for path, e in items.items()}
        )

    @method()
    def GetText(self) -> "v":  # noqa: F821
        return Variant("a{ss}", _bus_call(self._peer.get_texts))

    @method()
    def SetValue(self, values: "v") -> "i":  # noqa: F821
        if not isinstance(values.value, dict):
            logger.warning("SetValue() on / expects a{sv}, got %s", values.signature)
            return -1
        unwrapped = {
            path: v.value if isinstance(v, Variant) else v for path, v in values.value.items()
        }
        logger.debug("SetValue() called for / with %d paths", len(unwrapped))
        return _bus_call(self._peer.set_values, unwrapped)

    @signal()
    def ItemsChanged(self, items) -> "a{sa{sv}}":  # noqa: F821
        return items


class ChangeNotifier:
    """Emits one ItemsChanged signal per batch of changed paths."""

    def __init__(self, root: RootInterface) -> None:
        self._root = root

    def notify(self, changed: Mapping[str, AttributeEntry]) -> bool:
        if not changed:
            return False
        self._root.ItemsChanged(items_payload(changed))
        logger.debug("ItemsChanged emitted for %d paths", len(changed))
        return True


# ── Frontend ─────────────────────────────────────────────────────────


class BusRegistrationError(RuntimeError):
    """Connecting to the bus or claiming the service name failed."""


class VictronFrontend(Frontend):
    """Publishes meter data on D-Bus as a Victron grid meter."""

    def __init__(self, backend: Backend, config: dict) -> None:
        super().__init__(backend, config)
        self._config = config
        self._service_name: str = config.get("service_name", DEFAULT_SERVICE_NAME)
        self._store = AttributeStore()
        self._peer = BusPeer(self._store)
        self._root = RootInterface(self._peer)
        self._notifier = ChangeNotifier(self._root)
        self._items: dict[str, BusItemInterface] = {}
        self._bus: MessageBus | None = None
        self._router = self._build_router()

    @property
    def store(self) -> AttributeStore:
        return self._store

    @property
    def peer(self) -> BusPeer:
        return self._peer

    def get_router(self) -> APIRouter:
        return self._router

    def initialize_store(self) -> None:
        self._store.initialize({**identity_entries(self._config), **placeholder_entries()})

    async def start(self) -> None:
        self.initialize_store()
        try:
            bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        except Exception as exc:
            raise BusRegistrationError(f"Failed to connect to system bus: {exc}") from exc

        try:
            reply = await bus.request_name(self._service_name, NameFlag.DO_NOT_QUEUE)
        except Exception as exc:
            bus.disconnect()
            raise BusRegistrationError(
                f"Failed to request name {self._service_name}: {exc}"
            ) from exc
        if reply != RequestNameReply.PRIMARY_OWNER:
            bus.disconnect()
            raise BusRegistrationError(f"Name {self._service_name} already taken on dbus")
        self._bus = bus

        bus.export("/", self._root)
        for path in self._store.paths():
            logger.debug("Registering dbus path: %s", path)
            item = BusItemInterface(self._peer, path)
            bus.export(path, item)
            self._items[path] = item

        self._backend.subscribe(self.publish)
        logger.info("Registered on dbus as %s with %d paths", self._service_name, len(self._items))

    async def stop(self) -> None:
        if self._bus is None:
            return
        for path, item in self._items.items():
            self._bus.unexport(path, item)
        self._bus.unexport("/", self._root)
        self._items.clear()
        try:
            await self._bus.release_name(self._service_name)
        except Exception:
            logger.exception("Failed to release %s", self._service_name)
        self._bus.disconnect()
        self._bus = None
        logger.info("Released dbus name %s", self._service_name)

    def publish(self, data: MeterData) -> dict[str, AttributeEntry]:
        """Apply a frame to the store and signal the paths that changed."""
        changed = self._store.apply_batch(measurements_for(data))
        self._notifier.notify(changed)
        return changed

    def _build_router(self) -> APIRouter:
        router = APIRouter()
        peer = self._peer
        backend = self._backend

        def _entry_json(entry: AttributeEntry) -> dict[str, Any]:
            return {"value": entry.value, "text": entry.text}

        @router.get("/items")
        async def get_items():
            """All published paths."""
            try:
                items = peer.get_items()
            except StoreNotInitialized as exc:
                raise HTTPException(status_code=503, detail=str(exc)) from exc
            return {path: _entry_json(entry) for path, entry in items.items()}

        @router.get("/items/{path:path}")
        async def get_item(path: str):
            """A single published path, e.g. /items/Ac/L1/Voltage."""
            try:
                entry = peer.get_item(f"/{path}")
            except StoreNotInitialized as exc:
                raise HTTPException(status_code=503, detail=str(exc)) from exc
            except PathNotFound as exc:
                raise HTTPException(status_code=404, detail=f"Unknown path /{path}") from exc
            return _entry_json(entry)

        @router.get("/meter")
        async def get_meter():
            """The last accepted frame as decoded by the backend."""
            data = backend.get_meter_data()
            if data is None:
                raise HTTPException(status_code=503, detail="No meter data received yet")
            return asdict(data)

        return router
