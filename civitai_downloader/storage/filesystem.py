import logging
import os
import shutil
import stat
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from civitai_downloader.exceptions import ArchiveError
from civitai_downloader.models.schemas import ExportEntry

logger = logging.getLogger(__name__)

READABLE = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH
SEARCHABLE = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


class ExportStorage:
    """Output tree shared by the downloader and the web server."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def normalize_permissions(self) -> None:
        """Equivalent of ``chmod -R a+rX``: everything readable, directories searchable."""
        try:
            _add_mode(self.root, READABLE | SEARCHABLE)
            for dirpath, dirnames, filenames in os.walk(self.root):
                for name in dirnames:
                    _add_mode(Path(dirpath) / name, READABLE | SEARCHABLE)
                for name in filenames:
                    path = Path(dirpath) / name
                    mode = path.lstat().st_mode
                    if stat.S_ISLNK(mode):
                        continue
                    # Executable files stay executable for everyone, like chmod's X.
                    extra = SEARCHABLE if mode & SEARCHABLE else 0
                    _add_mode(path, READABLE | extra)
        except OSError as exc:
            raise ArchiveError(f"Unable to fix permissions under {self.root}: {exc}") from exc

    def create_archive(self, archive_name: str, owner: Optional[str] = None) -> Path:
        """Zip the whole tree into ``<root>/<archive_name>`` and make the archive world-readable.

        The archive is built under a temporary name and moved into place, so the previous
        archive stays available until the new one is complete and is never zipped into itself.
        """
        archive_path = self.root / archive_name
        partial_path = self.root / f".{archive_name}.partial"
        try:
            with zipfile.ZipFile(partial_path, "w", compression=zipfile.ZIP_DEFLATED, allowZip64=True) as archive:
                for path in self._archive_members(skip={archive_path, partial_path}):
                    archive.write(path, arcname=str(path.relative_to(self.root)))
            os.replace(partial_path, archive_path)
            _add_mode(archive_path, READABLE)
            if owner:
                user, _, group = owner.partition(":")
                shutil.chown(archive_path, user=user, group=group or user)
        except (OSError, LookupError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Unable to create archive {archive_path}: {exc}") from exc
        finally:
            # Left over only when the archive never replaced the previous one.
            partial_path.unlink(missing_ok=True)
        logger.info("ZIP archive ready: %s", archive_path)
        return archive_path

    def list_entries(self, subpath: str = "") -> List[ExportEntry]:
        """Return the entries of a directory inside the tree, directories first."""
        folder = self.resolve(subpath)
        if not folder.is_dir():
            return []
        entries = []
        for path in sorted(folder.iterdir(), key=lambda item: (not item.is_dir(), item.name.lower())):
            if path.name.startswith("."):
                continue
            info = path.stat()
            entries.append(
                ExportEntry(
                    relative_path=path.relative_to(self.root).as_posix(),
                    size=None if path.is_dir() else info.st_size,
                    is_dir=path.is_dir(),
                    modified_at=datetime.fromtimestamp(info.st_mtime, tz=timezone.utc),
                )
            )
        return entries

    def resolve(self, subpath: str) -> Path:
        """Map a relative path onto the tree, refusing paths that escape it."""
        root = self.root.resolve()
        candidate = (root / subpath.lstrip("/")).resolve()
        if candidate != root and root not in candidate.parents:
            raise ValueError(f"Path {subpath!r} is outside the export directory")
        return candidate

    def _archive_members(self, skip: Iterable[Path]) -> Iterable[Path]:
        skipped = set(skip)
        for path in sorted(self.root.rglob("*")):
            if path in skipped or not path.is_file():
                continue
            yield path


def _add_mode(path: Path, bits: int) -> None:
    current = stat.S_IMODE(path.stat().st_mode)
    if current & bits != bits:
        path.chmod(current | bits)
