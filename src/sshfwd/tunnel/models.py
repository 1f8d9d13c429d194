"""Tunnel models.

This module defines the value types passed through the tunnel manager:
the identifying key, the creation request and the read-only listing view.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils import validate_non_empty_string

DEFAULT_REMOTE_HOST = "localhost"


class TunnelKey(BaseModel):
    """Identity of a tunnel: host alias plus local and remote ports."""

    model_config = ConfigDict(frozen=True)

    host_alias: str = Field(min_length=1)
    local_port: int = Field(ge=1, le=65535)
    remote_port: int = Field(ge=1, le=65535)

    def __str__(self) -> str:
        return f"{self.host_alias}:{self.local_port}:{self.remote_port}"

    @classmethod
    def parse(cls, value: str) -> "TunnelKey":
        """Parse the ``alias:localPort:remotePort`` string form.

        Args:
            value: Serialized key

        Returns:
            Parsed key

        Raises:
            ValueError: If the string is not a valid key
        """
        parts = value.rsplit(":", 2)
        if len(parts) != 3:
            raise ValueError(f"Invalid tunnel key '{value}'")

        alias, local_port, remote_port = parts
        try:
            return cls(
                host_alias=alias,
                local_port=int(local_port),
                remote_port=int(remote_port),
            )
        except ValueError as e:
            raise ValueError(f"Invalid tunnel key '{value}'") from e


class TunnelSpec(BaseModel):
    """Immutable request to forward a local port to a remote address."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    host_alias: str = Field(min_length=1, description="SSH host alias")
    local_port: int = Field(ge=1, le=65535, description="Local port to listen on")
    remote_port: int = Field(ge=1, le=65535, description="Port on the remote side")
    remote_host: str = Field(
        default=DEFAULT_REMOTE_HOST,
        description="Target host as seen from the SSH server",
    )

    @field_validator("host_alias")
    @classmethod
    def validate_host_alias(cls, v: str) -> str:
        return validate_non_empty_string(v, "Host alias")

    @field_validator("remote_host", mode="before")
    @classmethod
    def default_remote_host(cls, v: str | None) -> str:
        """Treat an empty remote host as the default."""
        if v is None or not str(v).strip():
            return DEFAULT_REMOTE_HOST
        return v

    @property
    def key(self) -> TunnelKey:
        return TunnelKey(
            host_alias=self.host_alias,
            local_port=self.local_port,
            remote_port=self.remote_port,
        )

    def describe(self) -> str:
        """Human readable one-line summary of the forward."""
        return (
            f"Port forwarding active: localhost:{self.local_port} -> "
            f"{self.host_alias}:{self.remote_port}"
        )


class TunnelInfo(BaseModel):
    """Point-in-time view of an active tunnel."""

    model_config = ConfigDict(frozen=True)

    key: str
    spec: TunnelSpec
    start_time: datetime
    active_connections: int = Field(default=0, ge=0)


class RelayState(str, Enum):
    """Lifecycle state of a single relayed client connection."""

    ACCEPTED = "accepted"
    CHANNEL_OPENING = "channel_opening"
    RELAYING = "relaying"
    CLOSED = "closed"


class StopError(BaseModel):
    """Teardown failure for one tunnel during ``stop_all``."""

    connection_key: str
    error: str


class StopAllResult(BaseModel):
    """Outcome of a best-effort ``stop_all``."""

    stopped: list[str] = Field(default_factory=list)
    errors: list[StopError] = Field(default_factory=list)


class RestoreFailure(BaseModel):
    connection_key: str
    error: str


class RestoreResult(BaseModel):
    """Outcome of replaying the saved snapshot at startup."""

    restored: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    failures: list[RestoreFailure] = Field(default_factory=list)


class HostCheckResult(BaseModel):
    """Result of a one-off SSH connectivity check."""

    host: str
    hostname: str
    port: int
    user: str
    connect_time_ms: int = Field(ge=0)
    output: str
