"""JSON snapshot of the tunnels to restore on start."""

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .common.logging import get_logger
from .exceptions import SnapshotStoreError

logger = get_logger(__name__)

DEFAULT_REMOTE_HOST = "localhost"


class SnapshotEntry(BaseModel):
    """One persisted tunnel, stored with camelCase keys."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    connection_key: str | None = Field(default=None, alias="connectionKey")
    host: str = Field(min_length=1)
    local_port: int = Field(alias="localPort", ge=1, le=65535)
    remote_port: int = Field(alias="remotePort", ge=1, le=65535)
    remote_host: str = Field(default=DEFAULT_REMOTE_HOST, alias="remoteHost")
    start_time: datetime | None = Field(default=None, alias="startTime")


class JSONSnapshotStore:
    """Flat JSON file, fully rewritten on every save."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def save(self, entries: list[SnapshotEntry]) -> None:
        """Replace the snapshot with ``entries``.

        The file is written to a temporary sibling and renamed into place so
        a crash never leaves a truncated snapshot.

        Raises:
            SnapshotStoreError: If the file cannot be written
        """
        payload = [entry.model_dump(mode="json", by_alias=True) for entry in entries]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise SnapshotStoreError(f"Cannot write snapshot {self.path}: {e}") from e

        logger.info("Saved forwards to file", count=len(entries), path=str(self.path))

    def load(self) -> list[dict[str, Any]]:
        """Read the raw snapshot records.

        Records are returned unvalidated so that one malformed entry can be
        reported on its own during restore.

        Returns:
            List of records, empty if the file is missing

        Raises:
            SnapshotStoreError: If the file exists but cannot be parsed
        """
        if not self.path.exists():
            logger.info("No saved forwards file found", path=str(self.path))
            return []

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SnapshotStoreError(f"Cannot read snapshot {self.path}: {e}") from e

        if not isinstance(data, list):
            raise SnapshotStoreError(f"Snapshot {self.path} is not a JSON array")

        logger.info("Loaded saved forwards from file", count=len(data), path=str(self.path))
        return data


def parse_entry(record: Any) -> SnapshotEntry:
    """Validate one raw snapshot record.

    Raises:
        ValueError: If the record is malformed
    """
    if not isinstance(record, dict):
        raise ValueError(f"Snapshot entry must be an object, got {type(record).__name__}")
    try:
        return SnapshotEntry.model_validate(record)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ValueError(f"Invalid snapshot entry: {details}") from e
