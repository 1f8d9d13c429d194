"""Tests for TunnelManager lifecycle, relaying and restore."""

import os
import socket
from unittest.mock import patch

import pytest

from sshfwd.exceptions import (
    AlreadyActiveError,
    BindError,
    ConfigNotFoundError,
    InvalidPortError,
    PortInUseError,
    SnapshotStoreError,
    SshConnectError,
    SshFailureReason,
    TunnelNotFoundError,
)
from sshfwd.tunnel import TunnelKey, TunnelManager, TunnelSpec, is_port_free


def open_client(port):
    client = socket.create_connection(("127.0.0.1", port), timeout=5)
    client.settimeout(5)
    return client


def recv_until_eof(sock):
    chunks = []
    while True:
        data = sock.recv(65536)
        if not data:
            return b"".join(chunks)
        chunks.append(data)


def peer_closed(sock):
    """True once the peer has closed (EOF or reset)."""
    try:
        return sock.recv(1) == b""
    except ConnectionResetError:
        return True


class TestCreateTunnel:
    """Test suite for TunnelManager.create_tunnel."""

    def test_create_then_list_contains_exactly_one_entry(self, manager, free_port):
        port = free_port()
        key = manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=5432))

        active = manager.list_active()

        assert key == TunnelKey(host_alias="db1", local_port=port, remote_port=5432)
        assert [info.key for info in active] == [f"db1:{port}:5432"]
        assert active[0].spec.remote_host == "localhost"
        assert active[0].active_connections == 0

    def test_create_connects_with_resolved_host(self, manager, provider, hosts, free_port):
        manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=free_port(), remote_port=80))

        assert len(provider.sessions) == 1
        assert provider.sessions[0].host == hosts[0]

    def test_create_listens_on_loopback(self, manager, free_port):
        port = free_port()
        manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=80))

        assert not is_port_free(port)

    def test_duplicate_key_raises_already_active(self, manager, provider, free_port):
        spec = TunnelSpec(host_alias="db1", local_port=free_port(), remote_port=5432)
        manager.create_tunnel(spec)

        with pytest.raises(AlreadyActiveError, match="already active"):
            manager.create_tunnel(spec)

        assert len(manager.list_active()) == 1
        assert len(provider.sessions) == 1

    def test_key_ignores_remote_host(self, manager, free_port):
        port = free_port()
        manager.create_tunnel(
            TunnelSpec(host_alias="db1", local_port=port, remote_port=5432, remote_host="db-a")
        )

        with pytest.raises(AlreadyActiveError):
            manager.create_tunnel(
                TunnelSpec(host_alias="db1", local_port=port, remote_port=5432, remote_host="db-b")
            )

    def test_same_local_port_for_other_alias_is_rejected(self, manager, provider, free_port):
        port = free_port()
        manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=5432))

        with pytest.raises(PortInUseError):
            manager.create_tunnel(TunnelSpec(host_alias="web", local_port=port, remote_port=80))

        assert len(provider.sessions) == 1

    def test_unknown_alias_raises_config_not_found(self, manager, provider, store, free_port):
        with pytest.raises(ConfigNotFoundError, match="SSH config not found"):
            manager.create_tunnel(TunnelSpec(host_alias="nope", local_port=free_port(), remote_port=22))

        assert provider.sessions == []
        assert manager.list_active() == []
        assert store.saves == []

    def test_occupied_port_raises_port_in_use(self, manager, provider, free_port):
        port = free_port()
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", port))
        blocker.listen(1)
        spec = TunnelSpec(host_alias="db1", local_port=port, remote_port=5432)
        try:
            with pytest.raises(PortInUseError, match=f"Local port {port} is already in use"):
                manager.create_tunnel(spec)
            assert provider.sessions == []
        finally:
            blocker.close()

        # reservation was released, so the same key works once the port frees up
        manager.create_tunnel(spec)
        assert len(manager.list_active()) == 1

    def test_ssh_failure_leaves_no_partial_state(self, manager, provider, store, free_port):
        port = free_port()
        provider.fail_with = SshConnectError(SshFailureReason.AUTH_FAILED, "bad key")

        with pytest.raises(SshConnectError) as exc_info:
            manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=5432))

        assert exc_info.value.reason is SshFailureReason.AUTH_FAILED
        assert manager.list_active() == []
        assert len(manager.registry) == 0
        assert is_port_free(port)
        assert store.saves == []

    def test_bind_failure_closes_session(self, manager, provider, free_port):
        port = free_port()
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", port))
        blocker.listen(1)
        try:
            with patch("sshfwd.tunnel.manager.is_port_free", return_value=True):
                with pytest.raises(BindError):
                    manager.create_tunnel(
                        TunnelSpec(host_alias="db1", local_port=port, remote_port=5432)
                    )
        finally:
            blocker.close()

        assert provider.sessions[0].closed
        assert manager.list_active() == []

    def test_create_persists_snapshot(self, manager, store, free_port):
        port = free_port()
        manager.create_tunnel(
            TunnelSpec(host_alias="db1", local_port=port, remote_port=5432, remote_host="10.1.1.1")
        )

        [entry] = store.last_saved
        assert entry.connection_key == f"db1:{port}:5432"
        assert entry.host == "db1"
        assert entry.local_port == port
        assert entry.remote_port == 5432
        assert entry.remote_host == "10.1.1.1"
        assert entry.start_time is not None

    def test_snapshot_failure_does_not_roll_back(self, manager, store, free_port):
        store.fail_save = True

        manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=free_port(), remote_port=5432))

        assert len(manager.list_active()) == 1


class TestRelaying:
    """Data path tests through a live tunnel."""

    @pytest.fixture
    def tunnel_port(self, manager, free_port):
        port = free_port()
        manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=7))
        return port

    def test_bytes_round_trip_unmodified(self, tunnel_port):
        payload = os.urandom(64 * 1024)
        client = open_client(tunnel_port)
        try:
            client.sendall(payload)
            client.shutdown(socket.SHUT_WR)
            echoed = recv_until_eof(client)
        finally:
            client.close()

        assert echoed == payload

    def test_channel_opened_to_remote_target(self, manager, provider, tunnel_port, wait_for):
        client = open_client(tunnel_port)
        try:
            client.sendall(b"ping")
            assert client.recv(4) == b"ping"
        finally:
            client.close()

        remote_host, remote_port, origin = provider.sessions[0].opened[0]
        assert (remote_host, remote_port) == ("localhost", 7)
        assert origin[0] == "127.0.0.1"

    def test_concurrent_clients_are_independent(self, tunnel_port):
        clients = [open_client(tunnel_port) for _ in range(5)]
        try:
            for index, client in enumerate(clients):
                client.sendall(f"client-{index}".encode())
            for index, client in enumerate(clients):
                expected = f"client-{index}".encode()
                assert client.recv(len(expected)) == expected
        finally:
            for client in clients:
                client.close()

    def test_local_close_closes_channel(self, manager, provider, tunnel_port, wait_for):
        client = open_client(tunnel_port)
        client.sendall(b"hello")
        assert client.recv(5) == b"hello"
        assert manager.list_active()[0].active_connections == 1

        client.close()

        channel = provider.sessions[0].channels[0]
        assert wait_for(lambda: channel.fileno() == -1)
        assert wait_for(lambda: manager.list_active()[0].active_connections == 0)

    def test_remote_close_closes_local_socket(self, manager, hangup_server, tunnel_port):
        manager_session = manager.registry.list_records()[0].session
        manager_session.target_port = hangup_server.server_address[1]

        client = open_client(tunnel_port)
        try:
            assert peer_closed(client)
        finally:
            client.close()

    def test_channel_open_failure_keeps_tunnel_alive(self, manager, provider, tunnel_port):
        session = provider.sessions[0]
        session.refuse = True

        refused = open_client(tunnel_port)
        try:
            assert peer_closed(refused)
        finally:
            refused.close()

        session.refuse = False
        client = open_client(tunnel_port)
        try:
            client.sendall(b"still alive")
            assert client.recv(11) == b"still alive"
        finally:
            client.close()
        assert len(manager.list_active()) == 1


class TestStopTunnel:
    """Test suite for stop_tunnel, stop_all and close."""

    def test_stop_removes_and_frees_port(self, manager, provider, free_port):
        port = free_port()
        key = manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=5432))

        manager.stop_tunnel(key)

        assert manager.list_active() == []
        assert provider.sessions[0].closed
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", port))

    def test_stop_accepts_string_key(self, manager, free_port):
        port = free_port()
        manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=5432))

        manager.stop_tunnel(f"db1:{port}:5432")

        assert manager.list_active() == []

    def test_stop_twice_raises_not_found(self, manager, free_port):
        key = manager.create_tunnel(
            TunnelSpec(host_alias="db1", local_port=free_port(), remote_port=5432)
        )
        manager.stop_tunnel(key)

        with pytest.raises(TunnelNotFoundError, match="Connection not found"):
            manager.stop_tunnel(key)

    def test_stop_unknown_key_leaves_registry_unchanged(self, manager, store, free_port):
        port = free_port()
        manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=5432))
        saves_before = len(store.saves)

        with pytest.raises(TunnelNotFoundError):
            manager.stop_tunnel("web:1:2")
        with pytest.raises(TunnelNotFoundError):
            manager.stop_tunnel("not-a-key")

        assert [info.key for info in manager.list_active()] == [f"db1:{port}:5432"]
        assert len(store.saves) == saves_before

    def test_stop_persists_snapshot(self, manager, store, free_port):
        key = manager.create_tunnel(
            TunnelSpec(host_alias="db1", local_port=free_port(), remote_port=5432)
        )

        manager.stop_tunnel(key)

        assert store.last_saved == []

    def test_stop_force_closes_active_relays(self, manager, free_port):
        port = free_port()
        key = manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=7))
        client = open_client(port)
        try:
            client.sendall(b"x")
            assert client.recv(1) == b"x"

            manager.stop_tunnel(key)

            assert peer_closed(client)
        finally:
            client.close()

    def test_stop_succeeds_when_session_close_fails(self, manager, provider, free_port):
        key = manager.create_tunnel(
            TunnelSpec(host_alias="db1", local_port=free_port(), remote_port=5432)
        )
        provider.sessions[0].close_error = OSError("socket already gone")

        manager.stop_tunnel(key)

        assert manager.list_active() == []

    def test_stop_all_stops_everything(self, manager, store, free_port):
        first = manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=free_port(), remote_port=1))
        second = manager.create_tunnel(TunnelSpec(host_alias="web", local_port=free_port(), remote_port=2))

        result = manager.stop_all()

        assert sorted(result.stopped) == sorted([str(first), str(second)])
        assert result.errors == []
        assert manager.list_active() == []
        assert store.last_saved == []

    def test_stop_all_collects_errors(self, manager, provider, store, free_port):
        manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=free_port(), remote_port=1))
        web_key = manager.create_tunnel(
            TunnelSpec(host_alias="web", local_port=free_port(), remote_port=2)
        )
        provider.sessions[0].close_error = RuntimeError("boom")

        result = manager.stop_all()

        assert result.stopped == [str(web_key)]
        assert len(result.errors) == 1
        assert result.errors[0].error == "boom"
        assert manager.list_active() == []
        assert store.last_saved == []

    def test_close_keeps_snapshot_for_restart(self, resolver, provider, store, settings, free_port):
        manager = TunnelManager(resolver, provider, store, settings)
        port = free_port()
        manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=5432))
        saves_before = len(store.saves)

        manager.close()

        assert manager.list_active() == []
        assert provider.sessions[0].closed
        assert len(store.saves) == saves_before
        assert is_port_free(port)

    def test_context_manager_closes_tunnels(self, resolver, provider, store, settings, free_port):
        port = free_port()
        with TunnelManager(resolver, provider, store, settings) as manager:
            manager.create_tunnel(TunnelSpec(host_alias="db1", local_port=port, remote_port=5432))
            assert not is_port_free(port)

        assert provider.sessions[0].closed
        assert is_port_free(port)


class TestRestoreAll:
    """Test suite for restore_all."""

    def _record(self, host, local_port, remote_port, remote_host="localhost"):
        return {
            "connectionKey": f"{host}:{local_port}:{remote_port}",
            "host": host,
            "localPort": local_port,
            "remotePort": remote_port,
            "remoteHost": remote_host,
            "startTime": "2024-01-01T00:00:00.000Z",
        }

    def test_restore_recreates_saved_tunnel(self, manager, store, free_port):
        port = free_port()
        store.records = [self._record("db1", port, 5432)]

        result = manager.restore_all()

        assert (result.restored, result.failed) == (1, 0)
        [info] = manager.list_active()
        assert info.key == f"db1:{port}:5432"
        assert info.spec.remote_host == "localhost"

    def test_restore_continues_after_failures(self, manager, store, free_port):
        good_port = free_port()
        store.records = [
            self._record("gone", free_port(), 22),
            {"host": "db1", "localPort": "not-a-port"},
            "garbage",
            self._record("db1", good_port, 5432, remote_host="10.0.0.9"),
        ]

        result = manager.restore_all()

        assert result.restored == 1
        assert result.failed == 3
        assert result.failures[0].connection_key.startswith("gone:")
        assert [info.key for info in manager.list_active()] == [f"db1:{good_port}:5432"]
        assert manager.list_active()[0].spec.remote_host == "10.0.0.9"

    def test_restore_record_without_connection_key(self, manager, store, free_port):
        port = free_port()
        store.records = [
            {"host": "db1", "localPort": port, "remotePort": 5432, "remoteHost": "localhost"}
        ]

        result = manager.restore_all()

        assert (result.restored, result.failed) == (1, 0)
        assert [info.key for info in manager.list_active()] == [f"db1:{port}:5432"]
        assert store.last_saved[0].connection_key == f"db1:{port}:5432"

    def test_failed_keyless_record_is_labelled_by_host_and_ports(self, manager, store, free_port):
        port = free_port()
        store.records = [{"host": "gone", "localPort": port, "remotePort": 22}]

        result = manager.restore_all()

        assert result.failed == 1
        assert result.failures[0].connection_key == f"gone:{port}:22"
        assert result.failures[0].error == "SSH config not found"

    def test_restore_with_empty_snapshot(self, manager, provider):
        result = manager.restore_all()

        assert (result.restored, result.failed) == (0, 0)
        assert provider.sessions == []

    def test_restore_survives_unreadable_snapshot(self, manager, store):
        def broken_load():
            raise SnapshotStoreError("corrupt")

        store.load = broken_load

        result = manager.restore_all()

        assert (result.restored, result.failed) == (0, 0)


class TestManagerQueries:
    """Test suite for probe_port, list_hosts and check_host."""

    def test_probe_port(self, manager, free_port):
        port = free_port()
        assert manager.probe_port(port) is True

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", port))
            sock.listen(1)
            assert manager.probe_port(port) is False

    @pytest.mark.parametrize("port", [0, 65536, -1])
    def test_probe_port_rejects_invalid(self, manager, port):
        with pytest.raises(InvalidPortError):
            manager.probe_port(port)

    def test_list_hosts(self, manager):
        assert [host.alias for host in manager.list_hosts()] == ["db1", "web"]

    def test_check_host(self, manager, provider):
        result = manager.check_host("db1")

        assert result.host == "db1"
        assert result.hostname == "10.0.0.5"
        assert result.port == 2222
        assert result.user == "deploy"
        assert result.output == "SSH connection test successful"
        assert provider.sessions[0].closed

    def test_check_unknown_host(self, manager):
        with pytest.raises(ConfigNotFoundError):
            manager.check_host("nope")
