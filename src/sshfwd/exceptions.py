"""Custom exceptions for sshfwd."""

from enum import Enum


class SSHForwardError(Exception):
    """Base exception for all sshfwd errors."""
    pass


class TunnelError(SSHForwardError):
    """Base exception for tunnel lifecycle failures."""
    pass


class ConfigNotFoundError(TunnelError):
    """Raised when a host alias cannot be resolved."""

    def __init__(self, alias: str):
        self.alias = alias
        super().__init__("SSH config not found")


class AlreadyActiveError(TunnelError):
    """Raised when a tunnel with the same key is already registered."""

    def __init__(self, key: str):
        self.key = key
        super().__init__("Port forwarding already active")


class PortInUseError(TunnelError):
    """Raised when the local port is occupied before binding."""

    def __init__(self, port: int):
        self.port = port
        super().__init__(f"Local port {port} is already in use")


class BindError(TunnelError):
    """Raised when binding the local listener fails."""

    def __init__(self, port: int, reason: str):
        self.port = port
        self.reason = reason
        super().__init__(f"Unable to bind local port {port}: {reason}")


class SshFailureReason(str, Enum):
    """Interpreted cause of an SSH session failure."""

    CONNECTION_REFUSED = "connection_refused"
    AUTH_FAILED = "auth_failed"
    KEY_NOT_FOUND = "key_not_found"
    TIMEOUT = "timeout"
    HOST_UNREACHABLE = "host_unreachable"
    UNKNOWN = "unknown"


_REASON_MESSAGES = {
    SshFailureReason.CONNECTION_REFUSED: "Cannot connect to SSH server",
    SshFailureReason.AUTH_FAILED: "SSH authentication failed. Check your SSH key.",
    SshFailureReason.KEY_NOT_FOUND: "SSH private key file not found",
    SshFailureReason.TIMEOUT: "Timed out connecting to SSH server",
    SshFailureReason.HOST_UNREACHABLE: "SSH server host is unreachable",
}


class SshConnectError(TunnelError):
    """Raised when an SSH session cannot be established."""

    def __init__(self, reason: SshFailureReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{self.user_message}: {detail}" if detail else self.user_message)

    @property
    def user_message(self) -> str:
        """Human readable explanation suitable for API responses."""
        return _REASON_MESSAGES.get(self.reason, self.detail or "SSH connection failed")


class ChannelOpenError(TunnelError):
    """Raised when a forwarded channel to the remote endpoint cannot be opened."""

    def __init__(self, remote_host: str, remote_port: int, reason: str):
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.reason = reason
        super().__init__(
            f"Cannot connect to remote port {remote_port} on {remote_host}: {reason}"
        )


class TunnelNotFoundError(TunnelError):
    """Raised when stopping a tunnel that is not registered."""

    def __init__(self, key: str):
        self.key = key
        super().__init__("Connection not found")


class InvalidPortError(SSHForwardError, ValueError):
    """Raised when a port number is outside 1-65535."""
    pass


class SnapshotStoreError(SSHForwardError):
    """Raised when the snapshot file cannot be read or written."""
    pass
