"""Host alias resolution backed by an OpenSSH style config file."""

from pathlib import Path

import paramiko
from pydantic import BaseModel, ConfigDict, Field

from .common.logging import get_logger
from .utils import expand_path

logger = get_logger(__name__)

DEFAULT_SSH_PORT = 22
DEFAULT_SSH_USER = "root"

_PATTERN_CHARS = ("*", "?", "!")


class HostConfig(BaseModel):
    """Connection parameters for one SSH host alias."""

    model_config = ConfigDict(frozen=True)

    alias: str = Field(min_length=1, description="Name used in the config file")
    hostname: str = Field(min_length=1, description="Address to dial")
    port: int = Field(default=DEFAULT_SSH_PORT, ge=1, le=65535)
    user: str = Field(default=DEFAULT_SSH_USER, min_length=1)
    identity_file: str | None = Field(default=None, description="Private key path")


class SSHConfigResolver:
    """Resolves aliases from an ssh-config file.

    The file is parsed on every call so edits are picked up without a
    restart. A missing or unreadable file resolves nothing.
    """

    def __init__(self, config_path: str | Path):
        self.config_path = Path(config_path)

    def _load(self) -> paramiko.SSHConfig | None:
        if not self.config_path.exists():
            logger.debug("SSH config file not found", path=str(self.config_path))
            return None

        try:
            return paramiko.SSHConfig.from_path(str(self.config_path))
        except (OSError, ValueError, paramiko.SSHException) as e:
            logger.error(
                "Error parsing SSH config", path=str(self.config_path), error=str(e)
            )
            return None

    @staticmethod
    def _aliases(config: paramiko.SSHConfig) -> list[str]:
        return sorted(
            name
            for name in config.get_hostnames()
            if not any(char in name for char in _PATTERN_CHARS)
        )

    @staticmethod
    def _to_host_config(config: paramiko.SSHConfig, alias: str) -> HostConfig:
        entry = config.lookup(alias)
        identity_files = entry.get("identityfile") or []
        return HostConfig(
            alias=alias,
            hostname=entry.get("hostname") or alias,
            port=int(entry.get("port") or DEFAULT_SSH_PORT),
            user=entry.get("user") or DEFAULT_SSH_USER,
            identity_file=expand_path(identity_files[0]) if identity_files else None,
        )

    def _build(self, config: paramiko.SSHConfig, alias: str) -> HostConfig | None:
        try:
            return self._to_host_config(config, alias)
        except ValueError as e:
            logger.warning(
                "Skipping invalid SSH host entry",
                alias=alias,
                path=str(self.config_path),
                error=str(e),
            )
            return None

    def resolve(self, alias: str) -> HostConfig | None:
        """Look up connection parameters for an alias.

        Args:
            alias: Host alias as written in a ``Host`` line

        Returns:
            HostConfig if the alias is declared and valid, None otherwise
        """
        config = self._load()
        if config is None or alias not in self._aliases(config):
            return None
        return self._build(config, alias)

    def list_hosts(self) -> list[HostConfig]:
        """Return every concrete alias declared in the file, skipping invalid ones."""
        config = self._load()
        if config is None:
            return []
        hosts = (self._build(config, alias) for alias in self._aliases(config))
        return [host for host in hosts if host is not None]
