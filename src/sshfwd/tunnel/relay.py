"""Bidirectional relay between one local client socket and one SSH channel."""

import socket
import threading
from collections.abc import Callable
from typing import Any

from ..common.logging import get_logger
from ..exceptions import ChannelOpenError
from .interfaces import ChannelProtocol, SessionProtocol
from .models import RelayState, TunnelSpec

logger = get_logger(__name__)


def _shutdown_write(stream: Any) -> None:
    """Signal end-of-stream to the peer while keeping the read side open."""
    if isinstance(stream, socket.socket):
        stream.shutdown(socket.SHUT_WR)
    else:
        stream.shutdown_write()


def _force_close(stream: Any) -> None:
    """Close a stream, waking any thread blocked reading from it."""
    if stream is None:
        return
    if isinstance(stream, socket.socket):
        try:
            stream.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
    try:
        stream.close()
    except OSError as e:
        logger.debug("Error closing relay stream", error=str(e))


class Relay:
    """Relays bytes for a single accepted client connection.

    The relay moves through ``ACCEPTED -> CHANNEL_OPENING -> RELAYING ->
    CLOSED``; any failure jumps straight to ``CLOSED``. Channel opening and
    each copy direction run on their own daemon threads so the listener is
    never blocked.
    """

    def __init__(
        self,
        client: socket.socket,
        peer: tuple[str, int],
        session: SessionProtocol,
        spec: TunnelSpec,
        buffer_size: int = 32768,
        on_closed: Callable[["Relay"], None] | None = None,
    ):
        self.client = client
        self.peer = peer
        self.spec = spec
        self._session = session
        self._buffer_size = buffer_size
        self._on_closed = on_closed
        self._channel: ChannelProtocol | None = None
        self._lock = threading.Lock()
        self._pumps_running = 0
        self._closed = threading.Event()
        self.state = RelayState.ACCEPTED

    @property
    def name(self) -> str:
        return f"{self.spec.key}<-{self.peer[0]}:{self.peer[1]}"

    def start(self) -> None:
        """Open the remote channel and begin relaying in the background."""
        threading.Thread(
            target=self._run, name=f"relay-{self.name}", daemon=True
        ).start()

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._closed.wait(timeout)

    def _run(self) -> None:
        with self._lock:
            if self.state is RelayState.CLOSED:
                return
            self.state = RelayState.CHANNEL_OPENING

        try:
            channel = self._session.open_channel(
                self.spec.remote_host, self.spec.remote_port, self.peer
            )
        except ChannelOpenError as e:
            logger.warning("SSH forward channel failed", relay=self.name, error=str(e))
            self._finish()
            return

        with self._lock:
            if self.state is RelayState.CLOSED:
                # stopped while the channel was opening
                _force_close(channel)
                return
            self._channel = channel
            self.state = RelayState.RELAYING
            self._pumps_running = 2

        logger.debug(
            "Connected to remote",
            relay=self.name,
            remote_host=self.spec.remote_host,
            remote_port=self.spec.remote_port,
        )

        for src, dst, direction in (
            (self.client, channel, "local->remote"),
            (channel, self.client, "remote->local"),
        ):
            threading.Thread(
                target=self._pump,
                args=(src, dst, direction),
                name=f"pump-{direction}-{self.name}",
                daemon=True,
            ).start()

    def _pump(self, src: Any, dst: Any, direction: str) -> None:
        try:
            while True:
                data = src.recv(self._buffer_size)
                if not data:
                    break
                dst.sendall(data)
            _shutdown_write(dst)
        except Exception as e:
            if not self._closed.is_set():
                logger.debug("Relay stream error", relay=self.name, direction=direction, error=str(e))
            self._finish()
        finally:
            with self._lock:
                self._pumps_running -= 1
                finished = self._pumps_running == 0
            if finished:
                self._finish()

    def close(self) -> None:
        """Force-close both ends, unblocking any in-flight reads."""
        self._finish()

    def _finish(self) -> None:
        with self._lock:
            if self.state is RelayState.CLOSED:
                return
            self.state = RelayState.CLOSED
            channel = self._channel

        _force_close(self.client)
        _force_close(channel)
        self._closed.set()
        logger.debug("Relay closed", relay=self.name)

        if self._on_closed is not None:
            self._on_closed(self)
