"""Shared pytest fixtures for sshfwd tests."""

import socket
import socketserver
import threading
import time

import pytest

from sshfwd.config import ForwarderSettings
from sshfwd.exceptions import ChannelOpenError, SnapshotStoreError
from sshfwd.hosts import HostConfig
from sshfwd.tunnel import TunnelManager


class _EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            try:
                data = self.request.recv(65536)
            except OSError:
                return
            if not data:
                return
            self.request.sendall(data)


class _HangupHandler(socketserver.BaseRequestHandler):
    def handle(self):
        self.request.close()


class _Server(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


def _serve(handler):
    server = _Server(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


class FakeSession:
    """Session whose channels are plain TCP connections to a local server."""

    def __init__(self, host, target_port):
        self.host = host
        self.target_port = target_port
        self.refuse = False
        self.closed = False
        self.close_error = None
        self.channels = []
        self.opened = []

    def open_channel(self, remote_host, remote_port, origin):
        self.opened.append((remote_host, remote_port, origin))
        if self.refuse or self.closed:
            raise ChannelOpenError(remote_host, remote_port, "Connection refused")
        channel = socket.create_connection(("127.0.0.1", self.target_port), timeout=5)
        channel.settimeout(None)
        self.channels.append(channel)
        return channel

    def exec_command(self, command, timeout=None):
        return "SSH connection test successful"

    def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeProvider:
    """Session provider that records connects and can be told to fail."""

    def __init__(self, target_port):
        self.target_port = target_port
        self.fail_with = None
        self.sessions = []

    def connect(self, host):
        if self.fail_with is not None:
            raise self.fail_with
        session = FakeSession(host, self.target_port)
        self.sessions.append(session)
        return session


class StaticResolver:
    def __init__(self, hosts):
        self.hosts = {host.alias: host for host in hosts}

    def resolve(self, alias):
        return self.hosts.get(alias)

    def list_hosts(self):
        return list(self.hosts.values())


class MemoryStore:
    """In-memory snapshot store keeping every save."""

    def __init__(self, records=None):
        self.records = list(records or [])
        self.saves = []
        self.fail_save = False

    def save(self, entries):
        if self.fail_save:
            raise SnapshotStoreError("disk full")
        self.saves.append(list(entries))

    def load(self):
        return self.records

    @property
    def last_saved(self):
        return self.saves[-1] if self.saves else None


@pytest.fixture
def echo_server():
    """Threaded TCP echo server on an ephemeral loopback port."""
    server = _serve(_EchoHandler)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def hangup_server():
    """TCP server that closes every connection immediately."""
    server = _serve(_HangupHandler)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def free_port():
    """Return a function that finds a currently unused loopback port."""

    def _free_port():
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return sock.getsockname()[1]

    return _free_port


@pytest.fixture
def wait_for():
    """Poll a condition until it is true or a timeout elapses."""

    def _wait_for(condition, timeout=5.0, interval=0.02):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if condition():
                return True
            time.sleep(interval)
        return condition()

    return _wait_for


@pytest.fixture
def hosts():
    return [
        HostConfig(alias="db1", hostname="10.0.0.5", port=2222, user="deploy"),
        HostConfig(alias="web", hostname="web.example.com"),
    ]


@pytest.fixture
def resolver(hosts):
    return StaticResolver(hosts)


@pytest.fixture
def provider(echo_server):
    return FakeProvider(echo_server.server_address[1])


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings(tmp_path):
    return ForwarderSettings(
        ssh_config_path=tmp_path / "ssh-config",
        snapshot_path=tmp_path / "saved-forwards.json",
        accept_poll_interval=0.05,
    )


@pytest.fixture
def manager(resolver, provider, store, settings):
    """TunnelManager wired to fakes; all tunnels are closed after the test."""
    tunnel_manager = TunnelManager(resolver, provider, store, settings)
    yield tunnel_manager
    tunnel_manager.close()
