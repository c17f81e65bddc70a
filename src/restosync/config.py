"""Synchronization engine configuration."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from restosync.exceptions import ConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Engine configuration.

    Parameters
    ----------
    base_url : str
        Backend REST base URL (including the ``/api`` prefix).
    api_token : str or None
        Bearer token sent with every backend request.
    poll_interval : float
        Seconds between periodic refetch cycles. Defaults to 30 seconds,
        the refresh interval used by the kitchen and floor dashboards.
    poll_jitter : float
        Random extra delay added to each poll sleep, as a fraction of
        ``poll_interval``. Spreads viewers sharing an interval.
    stale_after_failures : int
        Consecutive refetch failures after which a kind is reported as
        stale ("data may be stale").
    request_timeout : float
        Total timeout in seconds for a single backend request.
    push_enabled : bool
        Connect the push channel on start.
    push_host : str
        MQTT broker host for the push channel.
    push_port : int
        MQTT broker port.
    push_topic_prefix : str
        Topic prefix; entity topics are ``{prefix}/orders`` and
        ``{prefix}/bookings``.
    push_keepalive : int
        MQTT keepalive in seconds.
    push_connect_timeout : float
        Seconds to wait for a broker CONNACK.
    push_reconnect_attempts : int
        Reconnect budget before falling back to polling only.
    push_reconnect_delay : float
        Fixed delay in seconds between reconnect attempts.
    action_retry_delay : float
        Seconds before the single retry of a failed user action.
    ledger_path : str or None
        JSON file backing the override ledger. ``None`` keeps overrides
        in memory only.
    ledger_max_entities : int
        Maximum number of entity ids holding overrides.
    retention_seconds : float
        Entities missing from refetches are dropped once unseen for
        longer than this.
    default_duration_seconds : float
        Occupancy/preparation duration used when a record has none.
    reservation_lead_seconds : float
        Window before a booking slot during which it shows ``RESERVED``.
    derive_arrival_states : bool
        Derive ``RESERVED``/``OCCUPIED`` for bookings from elapsed time.
    """

    base_url: str = "http://localhost:8081/api"
    api_token: str | None = None
    poll_interval: float = 30.0
    poll_jitter: float = 0.1
    stale_after_failures: int = 3
    request_timeout: float = 10.0
    push_enabled: bool = True
    push_host: str = "localhost"
    push_port: int = 1883
    push_topic_prefix: str = "restaurant"
    push_keepalive: int = 60
    push_connect_timeout: float = 10.0
    push_reconnect_attempts: int = 10
    push_reconnect_delay: float = 5.0
    action_retry_delay: float = 2.0
    ledger_path: str | None = None
    ledger_max_entities: int = 500
    retention_seconds: float = 3600.0
    default_duration_seconds: float = 2 * 3600
    reservation_lead_seconds: float = 2 * 3600
    derive_arrival_states: bool = True

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive")
        if not 0 <= self.poll_jitter <= 1:
            raise ConfigError("poll_jitter must be between 0 and 1")
        if self.push_reconnect_attempts < 0:
            raise ConfigError("push_reconnect_attempts must be >= 0")
        if self.ledger_max_entities <= 0:
            raise ConfigError("ledger_max_entities must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from environment variables.

        Reads optional ``RESTOSYNC_*`` variables. Explicit keyword
        arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        SyncConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "RESTOSYNC_BASE_URL": "base_url",
            "RESTOSYNC_API_TOKEN": "api_token",
            "RESTOSYNC_PUSH_HOST": "push_host",
            "RESTOSYNC_PUSH_TOPIC_PREFIX": "push_topic_prefix",
            "RESTOSYNC_LEDGER_PATH": "ledger_path",
        }
        _ENV_FLOAT_MAP = {
            "RESTOSYNC_POLL_INTERVAL": "poll_interval",
            "RESTOSYNC_POLL_JITTER": "poll_jitter",
            "RESTOSYNC_REQUEST_TIMEOUT": "request_timeout",
            "RESTOSYNC_PUSH_CONNECT_TIMEOUT": "push_connect_timeout",
            "RESTOSYNC_PUSH_RECONNECT_DELAY": "push_reconnect_delay",
            "RESTOSYNC_ACTION_RETRY_DELAY": "action_retry_delay",
            "RESTOSYNC_RETENTION_SECONDS": "retention_seconds",
            "RESTOSYNC_DEFAULT_DURATION_SECONDS": "default_duration_seconds",
            "RESTOSYNC_RESERVATION_LEAD_SECONDS": "reservation_lead_seconds",
        }
        _ENV_INT_MAP = {
            "RESTOSYNC_STALE_AFTER_FAILURES": "stale_after_failures",
            "RESTOSYNC_PUSH_PORT": "push_port",
            "RESTOSYNC_PUSH_KEEPALIVE": "push_keepalive",
            "RESTOSYNC_PUSH_RECONNECT_ATTEMPTS": "push_reconnect_attempts",
            "RESTOSYNC_LEDGER_MAX_ENTITIES": "ledger_max_entities",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        try:
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)
        except ValueError as exc:
            raise ConfigError(f"Invalid numeric environment value: {exc}") from exc

        if "push_enabled" not in overrides:
            config_kwargs["push_enabled"] = _env_bool(env.get("RESTOSYNC_PUSH_ENABLED"), True)

        if "derive_arrival_states" not in overrides:
            config_kwargs["derive_arrival_states"] = _env_bool(
                env.get("RESTOSYNC_DERIVE_ARRIVAL_STATES"),
                True,
            )

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
