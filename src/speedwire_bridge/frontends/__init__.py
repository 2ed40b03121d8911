"""Frontend registry and factory."""

from speedwire_bridge.backends.base import Backend
from speedwire_bridge.frontends.base import Frontend
from speedwire_bridge.frontends.victron import VictronFrontend

_FRONTENDS: dict[str, type[Frontend]] = {
    "victron": VictronFrontend,
}


def create_frontend(frontend_type: str, backend: Backend, config: dict) -> Frontend:
    """Create a frontend instance by type name."""
    cls = _FRONTENDS.get(frontend_type)
    if cls is None:
        raise ValueError(
            f"Unknown frontend type: {frontend_type!r}. Available: {', '.join(_FRONTENDS)}"
        )
    return cls(backend, config)
