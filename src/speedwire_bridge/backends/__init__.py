from speedwire_bridge.backends.base import Backend
from speedwire_bridge.backends.speedwire import SpeedwireBackend

_BACKENDS: dict[str, type[Backend]] = {
    "speedwire": SpeedwireBackend,
}


def create_backend(backend_type: str, config: dict) -> Backend:
    """Create a backend instance by type name."""
    cls = _BACKENDS.get(backend_type)
    if cls is None:
        raise ValueError(
            f"Unknown backend type: {backend_type!r}. Available: {', '.join(_BACKENDS)}"
        )
    return cls(config)
