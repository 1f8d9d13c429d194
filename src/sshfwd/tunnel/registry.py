"""Thread-safe registry of active tunnels."""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..common.logging import get_logger
from ..exceptions import AlreadyActiveError, PortInUseError, TunnelNotFoundError
from .forwarder import PortForwarder
from .interfaces import SessionProtocol
from .models import TunnelInfo, TunnelKey, TunnelSpec

logger = get_logger(__name__)


@dataclass
class TunnelRecord:
    """A live tunnel: one SSH session plus one local listener."""

    spec: TunnelSpec
    session: SessionProtocol
    forwarder: PortForwarder
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> TunnelKey:
        return self.spec.key

    def to_info(self) -> TunnelInfo:
        return TunnelInfo(
            key=str(self.key),
            spec=self.spec,
            start_time=self.start_time,
            active_connections=self.forwarder.active_relay_count,
        )


class TunnelRegistry:
    """Map of TunnelKey to TunnelRecord guarded by a single lock.

    Keys move through three sets: *pending* while a tunnel is being created,
    *records* once it is live and *stopping* while it is being torn down.
    Only committed, not-stopping records are listed, so readers never see a
    half-built or half-removed tunnel.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[TunnelKey, TunnelRecord] = {}
        self._pending: dict[TunnelKey, TunnelSpec] = {}
        self._stopping: set[TunnelKey] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records) - len(self._stopping)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._records and key not in self._stopping

    def _claimed_ports(self) -> set[int]:
        ports = {record.spec.local_port for record in self._records.values()}
        ports.update(spec.local_port for spec in self._pending.values())
        return ports

    def reserve(self, spec: TunnelSpec) -> TunnelKey:
        """Claim a key and its local port for a tunnel being created.

        Args:
            spec: Tunnel about to be created

        Returns:
            The reserved key

        Raises:
            AlreadyActiveError: If the key is live or being created
            PortInUseError: If another tunnel holds the local port
        """
        key = spec.key
        with self._lock:
            if key in self._records or key in self._pending:
                raise AlreadyActiveError(str(key))
            if spec.local_port in self._claimed_ports():
                raise PortInUseError(spec.local_port)
            self._pending[key] = spec
        return key

    def release(self, key: TunnelKey) -> None:
        """Drop a reservation after a failed creation."""
        with self._lock:
            self._pending.pop(key, None)

    def commit(self, record: TunnelRecord) -> None:
        """Turn a reservation into a live record."""
        with self._lock:
            if record.key not in self._pending:
                raise RuntimeError(f"Tunnel '{record.key}' was not reserved")
            del self._pending[record.key]
            self._records[record.key] = record
        logger.info("Added tunnel to registry", key=str(record.key))

    def begin_removal(self, key: TunnelKey) -> TunnelRecord:
        """Mark a record as stopping and return it.

        Raises:
            TunnelNotFoundError: If the key is absent or already stopping
        """
        with self._lock:
            record = self._records.get(key)
            if record is None or key in self._stopping:
                raise TunnelNotFoundError(str(key))
            self._stopping.add(key)
            return record

    def begin_removal_all(self) -> list[TunnelRecord]:
        """Mark every live record as stopping and return them."""
        with self._lock:
            records = [
                record
                for key, record in self._records.items()
                if key not in self._stopping
            ]
            self._stopping.update(record.key for record in records)
            return records

    def finish_removal(self, key: TunnelKey) -> None:
        with self._lock:
            self._stopping.discard(key)
            self._records.pop(key, None)
        logger.info("Removed tunnel from registry", key=str(key))

    def get(self, key: TunnelKey) -> TunnelRecord | None:
        with self._lock:
            if key in self._stopping:
                return None
            return self._records.get(key)

    def list_records(self) -> list[TunnelRecord]:
        """Live records ordered by start time."""
        with self._lock:
            records = [
                record
                for key, record in self._records.items()
                if key not in self._stopping
            ]
        return sorted(records, key=lambda record: record.start_time)
