"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables and/or ``.env``
files.  Nested models use ``__`` as the delimiter in env var names,
e.g. ``MQTT__URL=mqtt://broker.local:1883``.

The schema covers both long-running processes:

* **MQTT**: broker URL, credentials, reconnect behaviour.
* **HTTP**: listen address and bearer secret of the trigger endpoint.
* **Store**: item-store base URL, access token and record layout.
* **Poll**: reconciliation interval, batch size and dedup cooldown.
* **Logging**: level, format, optional file sink, rotation.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal
from urllib.parse import urlsplit

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883}
_TLS_SCHEMES = frozenset({"mqtts", "ssl"})


def _blank_to_none(value: object) -> object:
    """Treat ``FOO=`` in an env file the same as an unset variable."""
    if isinstance(value, str) and not value.strip():
        return None
    return value


# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings: nested via composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection configuration.

    Environment variables (with ``__`` nesting)::

        MQTT__URL=mqtt://broker.local:1883
        MQTT__USERNAME=user
        MQTT__PASSWORD=secret
    """

    url: str = Field(
        default="mqtt://localhost:1883",
        description="Broker URL. Schemes: mqtt, tcp, mqtts, ssl.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, the app generates "
            "'{role}-{hex8}' at startup for debuggability."
        ),
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description=(
            "Fixed delay in seconds between reconnection attempts. "
            "Retries are unbounded."
        ),
    )
    connect_timeout: Annotated[float, Field(gt=0)] = Field(
        default=30.0,
        description="Timeout in seconds for connect and publish operations.",
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="Quality of service for publishes and subscriptions.",
    )

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in _DEFAULT_PORTS:
            msg = f"Unsupported broker URL scheme {parts.scheme!r}"
            raise ValueError(msg)
        if not parts.hostname:
            msg = f"Broker URL {value!r} has no host"
            raise ValueError(msg)
        return value

    @property
    def host(self) -> str:
        """Broker hostname parsed from :attr:`url`."""
        return urlsplit(self.url).hostname or "localhost"

    @property
    def port(self) -> int:
        """Broker port parsed from :attr:`url`, or the scheme default."""
        parts = urlsplit(self.url)
        return parts.port or _DEFAULT_PORTS[parts.scheme]

    @property
    def tls(self) -> bool:
        """Whether the URL scheme asks for a TLS connection."""
        return urlsplit(self.url).scheme in _TLS_SCHEMES


class HttpSettings(BaseModel):
    """Trigger endpoint configuration.

    When ``secret`` is unset, the ``/dispatch`` endpoint accepts any
    caller; the bridge logs a warning at startup.
    """

    host: str = Field(default="0.0.0.0", description="Listen address.")  # noqa: S104
    port: Annotated[int, Field(ge=0, le=65535)] = Field(
        default=3001,
        description="Listen port.",
    )
    secret: SecretStr | None = Field(
        default=None,
        description="Shared bearer secret for POST /dispatch (optional).",
    )

    @field_validator("secret", mode="before")
    @classmethod
    def _blank_secret(cls, value: object) -> object:
        return _blank_to_none(value)


class StoreSettings(BaseModel):
    """Item-store (Directus-style REST API) configuration.

    Without ``token`` the bridge runs in dispatch-only mode and the
    status subscriber refuses to start.
    """

    url: str = Field(
        default="http://localhost:8055",
        description="Item store base URL.",
    )
    token: SecretStr | None = Field(
        default=None,
        description="Static access token sent as a bearer credential.",
    )
    collection: str = Field(
        default="device_commands",
        description="Collection holding command records.",
    )
    param_fields: list[str] = Field(
        default_factory=lambda: ["fingerprint_id", "member_id"],
        description="Record columns forwarded to devices as command params.",
    )
    timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Total timeout in seconds for a single store request.",
    )

    @field_validator("token", mode="before")
    @classmethod
    def _blank_token(cls, value: object) -> object:
        return _blank_to_none(value)


class PollSettings(BaseModel):
    """Reconciliation (fallback polling) configuration."""

    interval: Annotated[float, Field(gt=0)] = Field(
        default=3.0,
        description="Seconds between reconciliation cycles.",
    )
    batch_size: Annotated[int, Field(ge=1, le=1000)] = Field(
        default=10,
        description="Maximum pending commands fetched per cycle.",
    )
    cooldown: Annotated[float, Field(gt=0)] = Field(
        default=30.0,
        description="Seconds before the same command may be re-dispatched.",
    )
    cleanup_interval: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Seconds between purges of expired dedup entries.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    The ``format`` field selects the output format:

    - ``"json"`` (default): structured JSON lines for log
      aggregators.  Each line is a complete JSON object with
      correlation metadata.
    - ``"text"``: human-readable timestamped format for local
      development and direct terminal use.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: 'json' lines or 'text'.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings shared by the bridge and the subscriber.

    Loaded from environment variables with the nested delimiter
    ``__`` and an optional ``.env`` file in the working directory.

    Example ``.env``::

        MQTT__URL=mqtt://broker.local:1883
        MQTT__USERNAME=bridge
        MQTT__PASSWORD=secret
        HTTP__SECRET=change-me
        STORE__URL=https://cms.example.com
        STORE__TOKEN=static-token
        POLL__INTERVAL=3
        LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    http: HttpSettings = Field(
        default_factory=HttpSettings,
        description="Trigger endpoint settings.",
    )
    store: StoreSettings = Field(
        default_factory=StoreSettings,
        description="Item store settings.",
    )
    poll: PollSettings = Field(
        default_factory=PollSettings,
        description="Reconciliation settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )

    @property
    def polling_enabled(self) -> bool:
        """Polling needs a store token; without one the bridge is dispatch-only."""
        return self.store.token is not None
