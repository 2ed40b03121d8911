"""Abstract base class for bridge frontends."""

from abc import ABC, abstractmethod

from fastapi import APIRouter

from speedwire_bridge.backends.base import Backend


class Frontend(ABC):
    """A frontend publishes meter data over a specific bus/protocol."""

    def __init__(self, backend: Backend, config: dict) -> None:
        self._backend = backend

    @abstractmethod
    def get_router(self) -> APIRouter:
        """Return the APIRouter with this frontend's diagnostic HTTP endpoints."""

    @abstractmethod
    async def start(self) -> None:
        """Register with the bus and start receiving backend data."""

    @abstractmethod
    async def stop(self) -> None:
        """Release the bus registration."""
