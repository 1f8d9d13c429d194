"""Tunnel manager for lifecycle management."""

import threading
import time
from types import TracebackType

from ..common.logging import get_logger
from ..config import ForwarderSettings
from ..exceptions import (
    ConfigNotFoundError,
    PortInUseError,
    SnapshotStoreError,
    TunnelError,
    TunnelNotFoundError,
)
from ..hosts import HostConfig
from ..store import SnapshotEntry, parse_entry
from ..utils import validate_port
from .forwarder import PortForwarder
from .interfaces import (
    HostResolverProtocol,
    SessionProtocol,
    SessionProviderProtocol,
    SnapshotStoreProtocol,
)
from .models import (
    HostCheckResult,
    RestoreFailure,
    RestoreResult,
    StopAllResult,
    StopError,
    TunnelInfo,
    TunnelKey,
    TunnelSpec,
)
from .probe import is_port_free
from .registry import TunnelRecord, TunnelRegistry

logger = get_logger(__name__)

CHECK_COMMAND = 'echo "SSH connection test successful"'


class TunnelManager:
    """Owns every active tunnel and keeps the snapshot in step with them."""

    def __init__(
        self,
        resolver: HostResolverProtocol,
        session_provider: SessionProviderProtocol,
        store: SnapshotStoreProtocol,
        settings: ForwarderSettings | None = None,
    ):
        """Initialize tunnel manager.

        Args:
            resolver: Host alias lookup
            session_provider: Opens one SSH session per tunnel
            store: Snapshot persistence
            settings: Relay and listener tuning (defaults if None)
        """
        self.settings = settings or ForwarderSettings()
        self.registry = TunnelRegistry()
        self._resolver = resolver
        self._session_provider = session_provider
        self._store = store
        self._persist_lock = threading.Lock()

    def __enter__(self) -> "TunnelManager":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def _resolve(self, alias: str) -> HostConfig:
        host = self._resolver.resolve(alias)
        if host is None:
            raise ConfigNotFoundError(alias)
        return host

    def create_tunnel(self, spec: TunnelSpec) -> TunnelKey:
        """Open an SSH session and start forwarding ``127.0.0.1:local_port``.

        Args:
            spec: Tunnel to create

        Returns:
            Key of the new tunnel, once its listener is accepting

        Raises:
            ConfigNotFoundError: If the host alias is unknown
            AlreadyActiveError: If a tunnel with the same key exists
            PortInUseError: If the local port is already taken
            SshConnectError: If the SSH session cannot be established
            BindError: If the local listener cannot be bound
        """
        host = self._resolve(spec.host_alias)
        key = self.registry.reserve(spec)

        session: SessionProtocol | None = None
        forwarder: PortForwarder | None = None
        try:
            if not is_port_free(spec.local_port):
                raise PortInUseError(spec.local_port)

            session = self._session_provider.connect(host)

            forwarder = PortForwarder(
                spec,
                session,
                buffer_size=self.settings.buffer_size,
                accept_poll_interval=self.settings.accept_poll_interval,
            )
            forwarder.bind()

            self.registry.commit(
                TunnelRecord(spec=spec, session=session, forwarder=forwarder)
            )
        except BaseException:
            self.registry.release(key)
            if forwarder is not None:
                forwarder.close()
            if session is not None:
                session.close()
            raise

        self._persist()
        forwarder.start()

        logger.info(
            "Tunnel created",
            key=str(key),
            local_port=spec.local_port,
            remote=f"{spec.remote_host}:{spec.remote_port}",
        )
        return key

    def _teardown(self, record: TunnelRecord) -> None:
        """Close the listener, its relays and then the session.

        Both steps are always attempted; the first failure is re-raised.
        """
        error: Exception | None = None
        try:
            record.forwarder.close()
        except Exception as e:
            error = e

        try:
            record.session.close()
        except Exception as e:
            error = error or e

        if error is not None:
            raise error

    def stop_tunnel(self, key: TunnelKey | str) -> None:
        """Stop a tunnel and forget it.

        Args:
            key: Tunnel key or its ``alias:local:remote`` string form

        Raises:
            TunnelNotFoundError: If no such tunnel is active
        """
        if isinstance(key, str):
            key = self._parse_key(key)

        record = self.registry.begin_removal(key)
        try:
            self._teardown(record)
        except Exception as e:
            logger.warning("Error during tunnel teardown", key=str(key), error=str(e))
        finally:
            self.registry.finish_removal(key)

        self._persist()
        logger.info("Port forwarding stopped", key=str(key))

    def stop_all(self) -> StopAllResult:
        """Stop every tunnel, collecting rather than raising teardown errors."""
        result = StopAllResult()

        for record in self.registry.begin_removal_all():
            connection_key = str(record.key)
            try:
                self._teardown(record)
                result.stopped.append(connection_key)
            except Exception as e:
                logger.error("Error stopping tunnel", key=connection_key, error=str(e))
                result.errors.append(StopError(connection_key=connection_key, error=str(e)))
            finally:
                self.registry.finish_removal(record.key)

        self._persist()
        logger.info(
            "Stopped all tunnels",
            stopped=len(result.stopped),
            errors=len(result.errors),
        )
        return result

    def close(self) -> None:
        """Tear down every tunnel on process shutdown.

        The snapshot is left untouched so the tunnels are restored on the
        next start.
        """
        for record in self.registry.begin_removal_all():
            try:
                self._teardown(record)
            except Exception as e:
                logger.error("Error closing tunnel", key=str(record.key), error=str(e))
            finally:
                self.registry.finish_removal(record.key)

    def list_active(self) -> list[TunnelInfo]:
        return [record.to_info() for record in self.registry.list_records()]

    def list_hosts(self) -> list[HostConfig]:
        return self._resolver.list_hosts()

    def probe_port(self, port: int) -> bool:
        """Check whether a local port is currently free.

        Raises:
            InvalidPortError: If the port is outside 1-65535
        """
        return is_port_free(validate_port(port))

    def check_host(self, alias: str) -> HostCheckResult:
        """Connect to an alias, run a trivial command and disconnect.

        Raises:
            ConfigNotFoundError: If the alias is unknown
            SshConnectError: If the connection or command fails
        """
        host = self._resolve(alias)

        started = time.monotonic()
        session = self._session_provider.connect(host)
        connect_time_ms = int((time.monotonic() - started) * 1000)
        try:
            output = session.exec_command(
                CHECK_COMMAND, timeout=self.settings.connect_timeout
            )
        finally:
            session.close()

        return HostCheckResult(
            host=host.alias,
            hostname=host.hostname,
            port=host.port,
            user=host.user,
            connect_time_ms=connect_time_ms,
            output=output,
        )

    def restore_all(self) -> RestoreResult:
        """Recreate the tunnels recorded in the snapshot.

        Each entry is restored independently; failures are logged and counted.
        """
        result = RestoreResult()
        try:
            records = self._store.load()
        except SnapshotStoreError as e:
            logger.error("Error loading saved forwards", error=str(e))
            return result

        if not records:
            return result

        logger.info("Restoring saved port forwards", count=len(records))

        for raw in records:
            if isinstance(raw, dict):
                connection_key = str(
                    raw.get("connectionKey")
                    or f"{raw.get('host')}:{raw.get('localPort')}:{raw.get('remotePort')}"
                )
            else:
                connection_key = "<invalid>"
            try:
                entry = parse_entry(raw)
                spec = TunnelSpec(
                    host_alias=entry.host,
                    local_port=entry.local_port,
                    remote_port=entry.remote_port,
                    remote_host=entry.remote_host,
                )
                # connectionKey is optional in saved records
                connection_key = str(spec.key)
                self.create_tunnel(spec)
            except (TunnelError, ValueError) as e:
                result.failed += 1
                result.failures.append(
                    RestoreFailure(connection_key=connection_key, error=str(e))
                )
                logger.error("Failed to restore forward", key=connection_key, error=str(e))
                continue

            result.restored += 1
            logger.info("Restored forward", key=connection_key)

        logger.info(
            "Restoration complete", restored=result.restored, failed=result.failed
        )
        return result

    def _persist(self) -> None:
        """Rewrite the snapshot from the registry; failures are only logged."""
        with self._persist_lock:
            entries = [
                SnapshotEntry(
                    connection_key=str(record.key),
                    host=record.spec.host_alias,
                    local_port=record.spec.local_port,
                    remote_port=record.spec.remote_port,
                    remote_host=record.spec.remote_host,
                    start_time=record.start_time,
                )
                for record in self.registry.list_records()
            ]
            try:
                self._store.save(entries)
            except SnapshotStoreError as e:
                logger.error("Error saving forwards to file", error=str(e))

    @staticmethod
    def _parse_key(value: str) -> TunnelKey:
        try:
            return TunnelKey.parse(value)
        except ValueError as e:
            raise TunnelNotFoundError(value) from e
