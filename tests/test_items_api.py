"""Tests for the diagnostics HTTP endpoints and the application lifespan."""

from unittest.mock import AsyncMock

import pytest
from dbus_fast import RequestNameReply
from fastapi import FastAPI
from fastapi.testclient import TestClient

from speedwire_bridge import main
from speedwire_bridge.backends.speedwire import SpeedwireBackend
from speedwire_bridge.frontends import victron
from speedwire_bridge.frontends.victron import BusRegistrationError, VictronFrontend
from tests.conftest import MockBackend
from tests.test_victron_frontend import FakeBus, _patch_bus


def test_get_items(client):
    resp = client.get("/items")
    assert resp.status_code == 200
    data = resp.json()
    assert data["/ProductId"] == {"value": 45058, "text": "45058"}
    assert data["/Ac/L1/Voltage"] == {"value": 230.0, "text": "230.00V"}
    assert len(data) == 33


def test_get_single_item(client):
    resp = client.get("/items/Ac/L1/Voltage")
    assert resp.status_code == 200
    assert resp.json() == {"value": 230.0, "text": "230.00V"}


def test_get_item_reflects_published_data(client, frontend, mock_backend):
    frontend.publish(mock_backend.get_meter_data())
    resp = client.get("/items/Ac/Power")
    assert resp.json() == {"value": 1381.0, "text": "1381.00W"}


def test_get_unknown_item(client):
    resp = client.get("/items/Does/Not/Exist")
    assert resp.status_code == 404
    assert "/Does/Not/Exist" in resp.json()["detail"]


def test_get_meter(client):
    resp = client.get("/meter")
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_power"] == 1381.0
    assert data["phases"][1]["voltage"] == 231.0
    assert len(data["phases"]) == 3


def test_get_meter_before_first_frame():
    fe = VictronFrontend(SpeedwireBackend({}), {})
    test_app = FastAPI()
    test_app.include_router(fe.get_router())
    with TestClient(test_app) as c:
        assert c.get("/meter").status_code == 503


def test_items_before_initialization():
    fe = VictronFrontend(MockBackend(), {})
    test_app = FastAPI()
    test_app.include_router(fe.get_router())
    with TestClient(test_app) as c:
        assert c.get("/items").status_code == 503
        assert c.get("/items/Serial").status_code == 503


# --- Lifespan ---


@pytest.fixture
def no_multicast(monkeypatch):
    monkeypatch.setattr(SpeedwireBackend, "start", AsyncMock())
    monkeypatch.setattr(SpeedwireBackend, "stop", AsyncMock())


@pytest.fixture
def defaults_only(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "_config_path", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("SMASUSYID", raising=False)


def test_lifespan_starts_and_stops(monkeypatch, no_multicast, defaults_only):
    bus = FakeBus(RequestNameReply.PRIMARY_OWNER)
    _patch_bus(monkeypatch, bus)

    with TestClient(main.app) as c:
        assert c.get("/items/Connected").json() == {"value": 1, "text": "1"}
        SpeedwireBackend.start.assert_awaited_once()

    SpeedwireBackend.stop.assert_awaited_once()
    assert bus.released == [victron.DEFAULT_SERVICE_NAME]


def test_lifespan_aborts_when_name_taken(monkeypatch, no_multicast, defaults_only):
    _patch_bus(monkeypatch, FakeBus(RequestNameReply.IN_QUEUE))

    with pytest.raises(BusRegistrationError):
        with TestClient(main.app):
            pass

    # The listener is never opened when registration fails
    SpeedwireBackend.start.assert_not_awaited()
