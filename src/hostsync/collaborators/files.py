"""Local file operations for dotfiles, directories and font archives."""
import io
import logging
import os
import pwd
import zipfile
from pathlib import Path
from typing import Optional

from ..engine.schema import RunContext

logger = logging.getLogger(__name__)


class FileStore:
    """Reads and writes files on the host on behalf of the acting user.

    Owners are given as ``"user"`` (the acting user), ``"root"`` or an
    explicit account name. ``None`` leaves ownership untouched.
    """

    def __init__(self, context: RunContext):
        self.context = context

    def resolve_owner(self, owner: Optional[str]) -> Optional[str]:
        if owner is None:
            return None
        if owner == "user":
            return self.context.user
        return owner

    # Queries

    def exists(self, path: str) -> bool:
        return Path(path).exists()

    def is_dir(self, path: str) -> bool:
        return Path(path).is_dir()

    def is_nonempty_dir(self, path: str) -> bool:
        p = Path(path)
        return p.is_dir() and any(p.iterdir())

    def read_text(self, path: str) -> Optional[str]:
        """Return file contents, or None if the file does not exist."""
        p = Path(path)
        if not p.is_file():
            return None
        return p.read_text(encoding="utf-8")

    def owner_of(self, path: str) -> Optional[str]:
        try:
            uid = Path(path).stat().st_uid
        except FileNotFoundError:
            return None
        try:
            return pwd.getpwuid(uid).pw_name
        except KeyError:
            return str(uid)

    def mode_of(self, path: str) -> Optional[int]:
        try:
            return Path(path).stat().st_mode & 0o7777
        except FileNotFoundError:
            return None

    # Mutations

    def write_text(
        self,
        path: str,
        content: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
    ) -> None:
        """Write a file atomically, creating parent directories."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.hostsync-tmp")
        tmp.write_text(content, encoding="utf-8")
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, target)
        self.chown(str(target), owner)
        logger.debug(f"Wrote {target} ({len(content)} bytes)")

    def backup(self, path: str) -> Optional[str]:
        """Move an existing file aside with a timestamp suffix."""
        src = Path(path)
        if not src.exists():
            return None
        dest = src.with_name(f"{src.name}.backup.{self.context.run_id}")
        os.replace(src, dest)
        logger.debug(f"Backed up {src} to {dest}")
        return str(dest)

    def make_dir(self, path: str, owner: Optional[str] = None, mode: Optional[int] = None) -> None:
        p = Path(path)
        p.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            os.chmod(p, mode)
        self.chown(str(p), owner)

    def chown(self, path: str, owner: Optional[str], recursive: bool = False) -> None:
        name = self.resolve_owner(owner)
        if name is None:
            return
        entry = pwd.getpwnam(name)
        os.chown(path, entry.pw_uid, entry.pw_gid)
        if recursive and Path(path).is_dir():
            for root, dirs, files in os.walk(path):
                for item in dirs + files:
                    os.chown(os.path.join(root, item), entry.pw_uid, entry.pw_gid)

    def extract_zip(self, data: bytes, dest: str, owner: Optional[str] = None) -> int:
        """Extract a zip archive into ``dest``.

        Returns:
            Number of members extracted

        Raises:
            ValueError: The data is not a zip archive or a member escapes ``dest``
        """
        target = Path(dest)
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise ValueError(f"Not a zip archive: {e}") from e
        target.mkdir(parents=True, exist_ok=True)
        with archive:
            root = target.resolve()
            members = archive.namelist()
            for member in members:
                resolved = (target / member).resolve()
                if root not in resolved.parents and resolved != root:
                    raise ValueError(f"Archive member escapes destination: {member}")
            archive.extractall(target)
        self.chown(str(target), owner, recursive=True)
        return len(members)
