"""Temporary on-disk storage for uploads and processed images, with age-based cleanup."""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from pathlib import Path
from typing import Iterable, Optional

from .config import ALLOWED_MIME_TYPES, MAX_UPLOAD_BYTES
from .errors import InvalidInputError
from .io import safe_stem

logger = logging.getLogger(__name__)


def validate_upload(
    data: bytes,
    content_type: Optional[str],
    *,
    max_bytes: int = MAX_UPLOAD_BYTES,
    allowed_types: Iterable[str] = ALLOWED_MIME_TYPES,
) -> None:
    """
    Reject an upload before any processing. Raises InvalidInputError with the reason.
    """
    allowed = tuple(allowed_types)
    if not data:
        raise InvalidInputError("No file uploaded")
    if content_type not in allowed:
        raise InvalidInputError("Invalid file type. Only JPEG, JPG, and PNG are allowed.")
    if len(data) > max_bytes:
        limit_mb = max(1, round(max_bytes / 1024 / 1024))
        raise InvalidInputError(f"File is too large. Maximum size is {limit_mb}MB.")


class FileStore:
    def __init__(self, upload_dir: Path, processed_dir: Path):
        self.upload_dir = Path(upload_dir)
        self.processed_dir = Path(processed_dir)

    def ensure_dirs(self) -> None:
        for d in (self.upload_dir, self.processed_dir):
            d.mkdir(parents=True, exist_ok=True)

    def save_upload(self, data: bytes) -> str:
        """Store raw upload bytes under a random name; returns the name."""
        self.ensure_dirs()
        name = uuid.uuid4().hex
        (self.upload_dir / name).write_bytes(data)
        return name

    def processed_name(self, original_filename: str) -> str:
        return f"{int(time.time() * 1000)}_{safe_stem(original_filename)}.png"

    def save_processed(self, name: str, data: bytes) -> Path:
        self.ensure_dirs()
        path = self.processed_dir / name
        path.write_bytes(data)
        return path

    def copy_to_processed(self, upload_name: str, name: str) -> Path:
        """Degraded path: the 'processed' image is a copy of the original."""
        self.ensure_dirs()
        dst = self.processed_dir / name
        shutil.copyfile(self.upload_path(upload_name), dst)
        return dst

    @staticmethod
    def _resolve(root: Path, name: str) -> Path:
        # Only bare file names; anything path-like could escape the directory.
        if not name or Path(name).name != name or name in (".", ".."):
            raise FileNotFoundError(name)
        path = root / name
        if not path.is_file():
            raise FileNotFoundError(str(path))
        return path

    def upload_path(self, name: str) -> Path:
        return self._resolve(self.upload_dir, name)

    def processed_path(self, name: str) -> Path:
        return self._resolve(self.processed_dir, name)

    def remove_expired(self, ttl_s: float, now: Optional[float] = None) -> int:
        """
        Delete files in both directories whose ctime is older than ttl_s.

        Returns the number of deleted files.
        """
        cutoff = (time.time() if now is None else now) - float(ttl_s)
        removed = 0
        for d in (self.upload_dir, self.processed_dir):
            if not d.exists():
                continue
            for path in d.iterdir():
                if not path.is_file():
                    continue
                try:
                    if path.stat().st_ctime < cutoff:
                        path.unlink()
                        removed += 1
                except FileNotFoundError:
                    # Raced with another cleanup; nothing left to do.
                    continue
        if removed:
            logger.info("Removed %d expired file(s)", removed)
        return removed
