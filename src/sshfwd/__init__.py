"""sshfwd - SSH local port forwarding manager with restore on restart."""

from .common.logging import get_logger, setup_logging
from .config import ForwarderSettings
from .exceptions import (
    AlreadyActiveError,
    BindError,
    ChannelOpenError,
    ConfigNotFoundError,
    InvalidPortError,
    PortInUseError,
    SnapshotStoreError,
    SshConnectError,
    SshFailureReason,
    SSHForwardError,
    TunnelError,
    TunnelNotFoundError,
)
from .hosts import HostConfig, SSHConfigResolver
from .ssh import ParamikoSessionProvider, SSHSession
from .store import JSONSnapshotStore, SnapshotEntry
from .tunnel import (
    RestoreResult,
    StopAllResult,
    TunnelInfo,
    TunnelKey,
    TunnelManager,
    TunnelSpec,
    is_port_free,
)

# Setup logging on package initialization
setup_logging(level="INFO")

__version__ = "0.1.0"


def build_manager(settings: ForwarderSettings | None = None) -> TunnelManager:
    """Wire a TunnelManager with the default file and paramiko backends."""
    settings = settings or ForwarderSettings()
    return TunnelManager(
        resolver=SSHConfigResolver(settings.ssh_config_path),
        session_provider=ParamikoSessionProvider(settings),
        store=JSONSnapshotStore(settings.snapshot_path),
        settings=settings,
    )


__all__ = [
    "build_manager",
    # Tunnel management
    "TunnelManager",
    "TunnelKey",
    "TunnelSpec",
    "TunnelInfo",
    "StopAllResult",
    "RestoreResult",
    "is_port_free",
    # Backends
    "ForwarderSettings",
    "HostConfig",
    "SSHConfigResolver",
    "ParamikoSessionProvider",
    "SSHSession",
    "JSONSnapshotStore",
    "SnapshotEntry",
    # Exceptions
    "SSHForwardError",
    "TunnelError",
    "ConfigNotFoundError",
    "AlreadyActiveError",
    "PortInUseError",
    "BindError",
    "SshConnectError",
    "SshFailureReason",
    "ChannelOpenError",
    "TunnelNotFoundError",
    "InvalidPortError",
    "SnapshotStoreError",
    # Logging
    "get_logger",
    "setup_logging",
]
