"""SSH sessions built on paramiko.

One ``SSHSession`` backs one tunnel. It is never shared between tunnels,
even when they use the same alias.
"""

import os
import socket
from typing import Any

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from .common.logging import get_logger
from .config import ForwarderSettings
from .exceptions import ChannelOpenError, SshConnectError, SshFailureReason
from .hosts import HostConfig
from .utils import mask_sensitive_data

logger = get_logger(__name__)


def classify_connect_error(error: BaseException) -> SshFailureReason:
    """Map a connection exception onto an interpreted failure reason."""
    if isinstance(error, paramiko.AuthenticationException):
        return SshFailureReason.AUTH_FAILED
    if isinstance(error, NoValidConnectionsError):
        return SshFailureReason.CONNECTION_REFUSED
    if isinstance(error, ConnectionRefusedError):
        return SshFailureReason.CONNECTION_REFUSED
    if isinstance(error, FileNotFoundError):
        return SshFailureReason.KEY_NOT_FOUND
    if isinstance(error, (socket.timeout, TimeoutError)):
        return SshFailureReason.TIMEOUT
    if isinstance(error, socket.gaierror):
        return SshFailureReason.HOST_UNREACHABLE
    if isinstance(error, OSError):
        return SshFailureReason.HOST_UNREACHABLE
    return SshFailureReason.UNKNOWN


class SSHSession:
    """Authenticated SSH connection able to open forwarded channels."""

    def __init__(
        self,
        client: paramiko.SSHClient,
        host: HostConfig,
        channel_open_timeout: float = 10.0,
    ):
        self._client = client
        self.host = host
        self._channel_open_timeout = channel_open_timeout

    def is_active(self) -> bool:
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def open_channel(
        self, remote_host: str, remote_port: int, origin: tuple[str, int]
    ) -> paramiko.Channel:
        """Open a ``direct-tcpip`` channel to ``remote_host:remote_port``.

        Args:
            remote_host: Target host as seen from the SSH server
            remote_port: Target port
            origin: Address of the local client the channel is opened for

        Returns:
            Open channel

        Raises:
            ChannelOpenError: If the session is down or the server refuses
        """
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise ChannelOpenError(remote_host, remote_port, "SSH session is closed")

        try:
            return transport.open_channel(
                "direct-tcpip",
                dest_addr=(remote_host, remote_port),
                src_addr=origin,
                timeout=self._channel_open_timeout,
            )
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ChannelOpenError(remote_host, remote_port, str(e) or type(e).__name__) from e

    def exec_command(self, command: str, timeout: float | None = None) -> str:
        """Run a command and return its stripped stdout.

        Raises:
            SshConnectError: If the command cannot be executed
        """
        try:
            _stdin, stdout, stderr = self._client.exec_command(command, timeout=timeout)
            output = stdout.read().decode("utf-8", errors="replace").strip()
            errors = stderr.read().decode("utf-8", errors="replace").strip()
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise SshConnectError(classify_connect_error(e), str(e) or type(e).__name__) from e
        if errors:
            logger.warning("SSH command wrote to stderr", host=self.host.alias, stderr=errors)
        return output

    def close(self) -> None:
        self._client.close()
        logger.debug("SSH session closed", host=self.host.alias)


class ParamikoSessionProvider:
    """Opens SSH sessions with paramiko according to the forwarder settings."""

    def __init__(self, settings: ForwarderSettings | None = None):
        self.settings = settings or ForwarderSettings()

    def _build_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if self.settings.strict_host_key_checking:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    def _connect_kwargs(self, host: HostConfig) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "hostname": host.hostname,
            "port": host.port,
            "username": host.user,
            "timeout": self.settings.connect_timeout,
            "banner_timeout": self.settings.connect_timeout,
            "auth_timeout": self.settings.connect_timeout,
        }
        if host.identity_file:
            kwargs["key_filename"] = host.identity_file
            kwargs["look_for_keys"] = False
        return kwargs

    def connect(self, host: HostConfig) -> SSHSession:
        """Establish an authenticated session.

        Args:
            host: Resolved connection parameters

        Returns:
            Connected session

        Raises:
            SshConnectError: If the key file is missing, the server refuses,
                authentication fails or the handshake times out
        """
        if host.identity_file and not os.path.isfile(host.identity_file):
            raise SshConnectError(
                SshFailureReason.KEY_NOT_FOUND, f"{host.identity_file} does not exist"
            )

        logger.info(
            "Connecting to SSH server",
            host=host.alias,
            hostname=host.hostname,
            port=host.port,
            user=host.user,
            identity_file=mask_sensitive_data(host.identity_file, show_chars=12),
        )

        client = self._build_client()
        try:
            client.connect(**self._connect_kwargs(host))
        except (paramiko.SSHException, OSError, EOFError) as e:
            client.close()
            reason = classify_connect_error(e)
            logger.error(
                "SSH connection failed",
                host=host.alias,
                reason=reason.value,
                error=str(e),
            )
            raise SshConnectError(reason, str(e) or type(e).__name__) from e

        logger.info("SSH connection established", host=host.alias)
        return SSHSession(client, host, self.settings.channel_open_timeout)
