"""Published device state: path -> value + text, guarded by a reader/writer lock."""

import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Value = float | int | str


class StoreNotInitialized(RuntimeError):
    """The store was queried before its paths were seeded."""


class PathNotFound(KeyError):
    """The requested path is not published."""


@dataclass(frozen=True)
class AttributeEntry:
    value: Value
    text: str


@dataclass(frozen=True)
class Measurement:
    path: str
    value: float
    unit: str
    precision: int = 2


def format_text(value: float, unit: str, precision: int = 2) -> str:
    return f"{value:.{precision}f}{unit}"


class ReadWriteLock:
    """Many concurrent readers or a single writer.

    Writers are preferred: once a writer waits, new readers queue behind it so
    a steady stream of bus queries cannot starve the receive loop.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class AttributeStore:
    """The only externally visible view of device state.

    One writer (the receive loop) and any number of bus readers may use the
    store at the same time; every public method takes the lock for its own
    duration only.
    """

    def __init__(self) -> None:
        self._entries: dict[str, AttributeEntry] = {}
        self._initialized = False
        self._lock = ReadWriteLock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, entries: Mapping[str, AttributeEntry]) -> None:
        """Seed the store with its fixed set of paths."""
        with self._lock.write():
            self._entries.update(entries)
            self._initialized = True
        logger.debug("Attribute store initialized with %d paths", len(entries))

    def _check_initialized(self) -> None:
        if not self._initialized:
            raise StoreNotInitialized("Application not initialized")

    def get(self, path: str) -> AttributeEntry:
        with self._lock.read():
            self._check_initialized()
            try:
                return self._entries[path]
            except KeyError:
                raise PathNotFound(path) from None

    def __contains__(self, path: object) -> bool:
        with self._lock.read():
            return path in self._entries

    def paths(self) -> list[str]:
        with self._lock.read():
            return list(self._entries)

    def _apply(self, measurement: Measurement) -> AttributeEntry | None:
        current = self._entries.get(measurement.path)
        if current is not None and current.value == measurement.value:
            return None
        entry = AttributeEntry(
            value=measurement.value,
            text=format_text(measurement.value, measurement.unit, measurement.precision),
        )
        self._entries[measurement.path] = entry
        return entry

    def apply_measurement(self, path: str, value: float, unit: str, precision: int = 2) -> bool:
        """Store a measurement if it differs from the current value.

        Returns True when the value (and its text) changed.
        """
        with self._lock.write():
            self._check_initialized()
            return self._apply(Measurement(path, value, unit, precision)) is not None

    def apply_batch(self, measurements: Iterable[Measurement]) -> dict[str, AttributeEntry]:
        """Apply many measurements under one write lock; return the changed entries."""
        changed: dict[str, AttributeEntry] = {}
        with self._lock.write():
            self._check_initialized()
            for measurement in measurements:
                entry = self._apply(measurement)
                if entry is not None:
                    changed[measurement.path] = entry
        return changed

    def set_raw(self, path: str, value: Value) -> None:
        """Overwrite a value from a bus caller, bypassing change detection."""
        with self._lock.write():
            self._check_initialized()
            if path not in self._entries:
                raise PathNotFound(path)
            self._entries[path] = AttributeEntry(value=value, text=str(value))

    def snapshot_all(self) -> dict[str, AttributeEntry]:
        with self._lock.read():
            self._check_initialized()
            return dict(self._entries)
