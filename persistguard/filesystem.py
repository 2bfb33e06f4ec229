"""Filesystem reads used directly by probes that need no external tool."""

import logging
import os
import stat as stat_module
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

try:
    import pwd
except ImportError:  # Windows has no pwd module
    pwd = None


class FileInfo(BaseModel):
    path: str
    is_dir: bool = False
    is_file: bool = False
    owner: Optional[str] = None
    permissions: Optional[str] = None
    size: int = 0
    modified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class LocalFileSystem:
    """Thin wrapper over the host filesystem.

    Probes depend on this interface rather than on ``os``/``pathlib`` so
    tests can substitute an in-memory tree.
    """

    def exists(self, path: str) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def list_dir(self, path: str) -> List[str]:
        """Full paths of the entries in ``path``, sorted. Missing dir -> []."""
        try:
            names = sorted(os.listdir(path))
        except FileNotFoundError:
            return []
        except NotADirectoryError:
            return []
        return [os.path.join(path, n) for n in names]

    def read_text(self, path: str, max_bytes: int = 2 * 1024 * 1024) -> str:
        with open(path, "rb") as f:
            data = f.read(max_bytes)
        return data.decode("utf-8", errors="replace")

    def stat(self, path: str) -> FileInfo:
        st = os.stat(path)
        return FileInfo(
            path=path,
            is_dir=stat_module.S_ISDIR(st.st_mode),
            is_file=stat_module.S_ISREG(st.st_mode),
            owner=self._owner_name(st.st_uid),
            permissions=format(stat_module.S_IMODE(st.st_mode), "o"),
            size=st.st_size,
            modified_at=datetime.fromtimestamp(st.st_mtime),
            created_at=datetime.fromtimestamp(st.st_ctime),
        )

    @staticmethod
    def _owner_name(uid: int) -> Optional[str]:
        if pwd is None:
            return None
        try:
            return pwd.getpwuid(uid).pw_name
        except KeyError:
            return str(uid)

    def home(self) -> str:
        return str(Path.home())
