"""
File-backed install records.

One JSON document per (connection, package manager) under
``<store_dir>/records/<connection_id>/<manager>.json``. Writes go through a
temporary file and ``os.replace`` so a reader never sees half a record.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from mcp_gateway.core.packages.models import InstallRecord
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class InstallRecordStore:
    """Reads and writes install records."""

    def __init__(self, store_dir: Path):
        self.root = Path(store_dir) / "records"

    def _path(self, connection_id: str, manager: str) -> Path:
        return self.root / connection_id / f"{manager}.json"

    def load(self, connection_id: str, manager: str) -> Optional[InstallRecord]:
        path = self._path(connection_id, manager)
        if not path.exists():
            return None
        try:
            return InstallRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            # Unreadable record means the connection gets reinstalled
            logger.warning(f"Ignoring unreadable install record {path}: {e}")
            return None

    def save(self, record: InstallRecord) -> None:
        path = self._path(record.connection_id, record.manager)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".record-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def delete(self, connection_id: str, manager: str) -> bool:
        path = self._path(connection_id, manager)
        if path.exists():
            path.unlink()
            return True
        return False

    def delete_all(self, connection_id: str) -> None:
        directory = self.root / connection_id
        if directory.exists():
            shutil.rmtree(directory)
