"""Protocol interfaces for the collaborators of the tunnel manager."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..hosts import HostConfig
    from ..store import SnapshotEntry


class ChannelProtocol(Protocol):
    """Byte stream to the remote endpoint (a paramiko Channel or a socket)."""

    def recv(self, nbytes: int) -> bytes:
        ...

    def sendall(self, data: bytes) -> Any:
        ...

    def close(self) -> None:
        ...


class SessionProtocol(Protocol):
    """Authenticated SSH session owned by a single tunnel."""

    def open_channel(
        self, remote_host: str, remote_port: int, origin: tuple[str, int]
    ) -> ChannelProtocol:
        """Open a forwarded channel, raising ChannelOpenError on refusal."""
        ...

    def exec_command(self, command: str, timeout: float | None = None) -> str:
        ...

    def close(self) -> None:
        ...


class SessionProviderProtocol(Protocol):
    """Factory for SSH sessions."""

    def connect(self, host: HostConfig) -> SessionProtocol:
        """Connect and authenticate, raising SshConnectError on failure."""
        ...


class HostResolverProtocol(Protocol):
    """Alias to connection parameter lookup."""

    def resolve(self, alias: str) -> HostConfig | None:
        ...

    def list_hosts(self) -> list[HostConfig]:
        ...


class SnapshotStoreProtocol(Protocol):
    """Durable list of tunnels to restore."""

    def save(self, entries: list[SnapshotEntry]) -> None:
        ...

    def load(self) -> list[dict[str, Any]]:
        ...
