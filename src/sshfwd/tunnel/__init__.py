"""Tunnel management: registry, per-tunnel forwarders and relays."""

from .forwarder import PortForwarder
from .manager import TunnelManager
from .models import (
    HostCheckResult,
    RelayState,
    RestoreFailure,
    RestoreResult,
    StopAllResult,
    StopError,
    TunnelInfo,
    TunnelKey,
    TunnelSpec,
)
from .probe import bind_listener, is_port_free
from .registry import TunnelRecord, TunnelRegistry
from .relay import Relay

__all__ = [
    # Models
    "TunnelKey",
    "TunnelSpec",
    "TunnelInfo",
    "RelayState",
    "StopAllResult",
    "StopError",
    "RestoreResult",
    "RestoreFailure",
    "HostCheckResult",
    # Manager
    "TunnelManager",
    "TunnelRegistry",
    "TunnelRecord",
    "PortForwarder",
    "Relay",
    # Port probe
    "is_port_free",
    "bind_listener",
]
