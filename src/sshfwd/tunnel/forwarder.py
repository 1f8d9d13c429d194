"""Local listener that spawns a relay for every accepted connection."""

import socket
import threading

from ..common.logging import get_logger
from ..exceptions import BindError
from ..utils import LOCAL_BIND_HOST
from .interfaces import SessionProtocol
from .models import TunnelSpec
from .probe import bind_listener
from .relay import Relay

logger = get_logger(__name__)


class PortForwarder:
    """Owns the local listener and the active relays of one tunnel."""

    def __init__(
        self,
        spec: TunnelSpec,
        session: SessionProtocol,
        buffer_size: int = 32768,
        accept_poll_interval: float = 0.5,
    ):
        self.spec = spec
        self._session = session
        self._buffer_size = buffer_size
        self._poll_interval = accept_poll_interval
        self._listener: socket.socket | None = None
        self._relays: set[Relay] = set()
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        return (LOCAL_BIND_HOST, self.spec.local_port)

    @property
    def active_relay_count(self) -> int:
        with self._lock:
            return len(self._relays)

    def bind(self) -> None:
        """Bind the listener on ``127.0.0.1:local_port``.

        Raises:
            BindError: If the port is taken or permission is denied
        """
        try:
            listener = bind_listener(self.spec.local_port)
        except OSError as e:
            raise BindError(self.spec.local_port, e.strerror or str(e)) from e

        listener.settimeout(self._poll_interval)
        self._listener = listener
        logger.info("Local server listening", host=LOCAL_BIND_HOST, port=self.spec.local_port)

    def start(self) -> None:
        """Start accepting connections in a background thread."""
        if self._listener is None:
            raise RuntimeError("Listener must be bound before start()")

        self._thread = threading.Thread(
            target=self._accept_loop, name=f"accept-{self.spec.key}", daemon=True
        )
        self._thread.start()

    def _accept_loop(self) -> None:
        listener = self._listener
        assert listener is not None

        while not self._stopped.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stopped.is_set():
                    break
                # EMFILE, ECONNABORTED and friends only affect this attempt
                logger.error("Local accept failed", key=str(self.spec.key), error=str(e))
                self._stopped.wait(self._poll_interval)
                continue

            conn.settimeout(None)
            logger.debug(
                "New connection to local port",
                port=self.spec.local_port,
                peer=f"{peer[0]}:{peer[1]}",
            )
            self._spawn_relay(conn, peer)

        logger.debug("Accept loop finished", key=str(self.spec.key))

    def _spawn_relay(self, conn: socket.socket, peer: tuple[str, int]) -> None:
        relay = Relay(
            conn,
            peer,
            self._session,
            self.spec,
            buffer_size=self._buffer_size,
            on_closed=self._discard_relay,
        )
        with self._lock:
            if self._stopped.is_set():
                conn.close()
                return
            self._relays.add(relay)
        relay.start()

    def _discard_relay(self, relay: Relay) -> None:
        with self._lock:
            self._relays.discard(relay)

    def close(self) -> None:
        """Stop accepting, then force-close every active relay."""
        self._stopped.set()

        if self._listener is not None:
            self._listener.close()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._poll_interval * 4)

        with self._lock:
            relays = list(self._relays)
            self._relays.clear()

        for relay in relays:
            relay.close()

        logger.info(
            "Local server closed",
            port=self.spec.local_port,
            closed_relays=len(relays),
        )
