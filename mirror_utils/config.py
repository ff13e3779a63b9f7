"""
Relay configuration.

A RelayConfig is built once (from the Lambda environment on the remote side,
from flags and a JSON config file on the developer machine) and handed to the
Gateway and Dispatcher constructors.
"""
import json
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional

BACKEND_DYNAMODB = "dynamodb"
BACKEND_POSTGRES = "postgres"
SUPPORTED_BACKENDS = (BACKEND_DYNAMODB, BACKEND_POSTGRES)


class ConfigurationError(ValueError):
    """Raised when the relay cannot start with the given settings."""


@dataclass(frozen=True)
class FunctionMapping:
    """Where a relayed function's local handler lives."""
    name: str
    path: str
    handler: str = "handler"
    environment: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RelayConfig:
    channel: Optional[str] = None
    table_name: Optional[str] = None
    backend: str = BACKEND_DYNAMODB
    region: Optional[str] = None
    profile: Optional[str] = None
    database_url: Optional[str] = None
    poll_interval: float = 0.5
    tick_interval: float = 1.0
    freshness_window: float = 5.0
    record_ttl: int = 3600
    max_workers: int = 10
    deadline_margin: float = 1.0
    # Only API callers wait for results; other events are dropped once completed
    release_non_api: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """
        Build a configuration from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            RelayConfig with unset variables left at their defaults
        """
        env = os.environ if environ is None else environ

        def _number(key: str, default, cast):
            value = env.get(key)
            if value in (None, ""):
                return default
            try:
                return cast(value)
            except ValueError:
                raise ConfigurationError(f"{key} must be a number, got {value!r}")

        def _flag(key: str) -> bool:
            return (env.get(key) or "").strip().lower() in ("1", "true", "yes", "on")

        return cls(
            channel=env.get("MIRROR_CHANNEL") or None,
            table_name=env.get("MIRROR_TABLE_NAME") or None,
            backend=(env.get("MIRROR_BACKEND") or BACKEND_DYNAMODB).lower(),
            region=env.get("AWS_REGION") or None,
            profile=env.get("AWS_PROFILE") or None,
            database_url=env.get("DATABASE_URL") or None,
            poll_interval=_number("MIRROR_POLL_INTERVAL", cls.poll_interval, float),
            tick_interval=_number("MIRROR_TICK_INTERVAL", cls.tick_interval, float),
            freshness_window=_number("MIRROR_FRESHNESS_WINDOW", cls.freshness_window, float),
            record_ttl=_number("MIRROR_RECORD_TTL", cls.record_ttl, int),
            max_workers=_number("MIRROR_MAX_WORKERS", cls.max_workers, int),
            release_non_api=_flag("MIRROR_RELEASE_NON_API"),
        )

    def merged(self, **overrides: Any) -> "RelayConfig":
        """Return a copy with every non-blank override applied."""
        known = {f.name for f in fields(self)}
        changes = {
            key: value for key, value in overrides.items()
            if key in known and value not in (None, "")
        }
        return replace(self, **changes)

    def validate(self) -> "RelayConfig":
        if not self.channel:
            raise ConfigurationError("A channel (stack name) is required")
        if self.backend not in SUPPORTED_BACKENDS:
            raise ConfigurationError(
                f"Unsupported backend: {self.backend}. "
                f"Supported backends: {', '.join(SUPPORTED_BACKENDS)}"
            )
        if self.backend == BACKEND_DYNAMODB and not self.table_name:
            raise ConfigurationError("The dynamodb backend requires a table name")
        if self.backend == BACKEND_POSTGRES and not self.database_url:
            raise ConfigurationError("The postgres backend requires DATABASE_URL")
        if self.freshness_window <= 0:
            raise ConfigurationError("freshness_window must be positive")
        return self


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Read a local client config file.

    Example:
        {
            "channel": "orders-service",
            "table_name": "lambda-mirror",
            "region": "eu-west-1",
            "functions": {
                "GetOrderFunction": {
                    "path": "./src/orders/get_order.py",
                    "handler": "handler",
                    "environment": {"ORDERS_TABLE": "orders-dev"}
                }
            }
        }

    Returns:
        Dict with the relay settings and a "functions" dict of FunctionMapping

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    try:
        with open(path, "r") as f:
            raw = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}")

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")

    functions = {}
    for name, entry in (raw.pop("functions", None) or {}).items():
        if not isinstance(entry, dict) or not entry.get("path"):
            raise ConfigurationError(f"Function {name} needs at least a 'path'")
        functions[name] = FunctionMapping(
            name=name,
            path=entry["path"],
            handler=entry.get("handler") or "handler",
            environment={k: str(v) for k, v in (entry.get("environment") or {}).items()},
        )

    raw["functions"] = functions
    return raw
