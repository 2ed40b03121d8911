import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


def _substitute_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with environment variable values."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        env_val = os.environ.get(var_name)
        if env_val is None:
            raise ValueError(f"Environment variable {var_name!r} is not set")
        return env_val

    return re.sub(r"\$\{([^}]+)}", replacer, value)


def _walk_and_substitute(obj: object) -> object:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_substitute(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_substitute(item) for item in obj]
    return obj


def _apply_env_overrides(raw: dict) -> dict:
    """Apply the LOG_LEVEL and SMASUSYID environment variables on top of the file."""
    level = os.environ.get("LOG_LEVEL")
    if level is not None:
        raw.setdefault("logging", {})["level"] = level

    susy_id = os.environ.get("SMASUSYID")
    if susy_id is not None:
        backend = raw.setdefault("backend", {})
        backend.setdefault("speedwire", {})["serial_filter"] = susy_id

    return raw


_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL", "PANIC": "CRITICAL"}


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8088


class LoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = _LEVEL_ALIASES.get(v.strip().upper(), v.strip().upper())
        # Unknown names turn on everything rather than failing startup
        if v not in _LEVELS:
            return "DEBUG"
        return v


class VictronFrontendConfig(BaseModel):
    service_name: str = "com.victronenergy.grid.cgwacs_ttyUSB0_di30_mb1"
    device_instance: int = 30
    custom_name: str = "Grid meter"
    product_name: str = "Grid meter"
    firmware_version: int = 2
    serial: str = "BP98305081235"
    connection: str = "/dev/ttyUSB0"
    process_name: str = "/opt/color-control/dbus-cgwacs/dbus-cgwacs"
    process_version: str = "1.8.0"
    position: int = 0

    @field_validator("service_name")
    @classmethod
    def validate_service_name(cls, v: str) -> str:
        if not v.startswith("com.victronenergy.grid."):
            raise ValueError("service_name must start with com.victronenergy.grid.")
        return v


class FrontendConfig(BaseModel):
    type: str = "victron"
    victron: VictronFrontendConfig = Field(default_factory=VictronFrontendConfig)


class SpeedwireConfig(BaseModel):
    group: str = "239.12.255.254"
    port: int = 9522
    interface: str = "0.0.0.0"
    serial_filter: int | None = None

    @field_validator("serial_filter", mode="before")
    @classmethod
    def validate_serial_filter(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
            if not v.isdigit():
                raise ValueError("serial_filter must be an unsigned 32-bit integer")
            v = int(v)
        if isinstance(v, int):
            if v == 0:
                return None
            if not 0 < v < 0xFFFFFFFF:
                raise ValueError("serial_filter must be an unsigned 32-bit integer")
        return v


class BackendConfig(BaseModel):
    type: str = "speedwire"
    speedwire: SpeedwireConfig = Field(default_factory=SpeedwireConfig)


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    frontend: FrontendConfig = Field(default_factory=FrontendConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load and validate configuration from an optional YAML file and the environment."""
    raw = None
    if path is not None:
        path = Path(path)
        if path.exists():
            with path.open() as f:
                raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    raw = _walk_and_substitute(raw)
    raw = _apply_env_overrides(raw)
    return AppConfig.model_validate(raw)
