"""Runtime settings for the forwarding service."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_API_PORT = 7432
DEFAULT_SSH_CONFIG_FILE = "ssh-config"
DEFAULT_SNAPSHOT_FILE = "saved-forwards.json"


class ForwarderSettings(BaseModel):
    """Configuration for the tunnel manager, SSH provider and HTTP facade."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra="forbid",
    )

    ssh_config_path: Path = Field(
        default_factory=lambda: Path.cwd() / DEFAULT_SSH_CONFIG_FILE,
        description="OpenSSH style config file with host aliases",
    )
    snapshot_path: Path = Field(
        default_factory=lambda: Path.cwd() / DEFAULT_SNAPSHOT_FILE,
        description="JSON file holding tunnels to restore on start",
    )

    connect_timeout: float = Field(
        default=15.0, ge=0.1, le=300.0, description="SSH handshake timeout in seconds"
    )
    channel_open_timeout: float = Field(
        default=10.0, ge=0.1, le=300.0, description="Forwarded channel open timeout"
    )
    strict_host_key_checking: bool = Field(
        default=False, description="Reject hosts missing from known_hosts"
    )

    buffer_size: int = Field(
        default=32768, ge=1024, le=1048576, description="Relay read chunk size"
    )
    accept_poll_interval: float = Field(
        default=0.5, ge=0.01, le=5.0, description="Listener wakeup interval"
    )

    api_host: str = Field(default="127.0.0.1", min_length=1)
    api_port: int = Field(default=DEFAULT_API_PORT, ge=1, le=65535)

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{v}'")
        return level
