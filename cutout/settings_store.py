from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from .contracts import ImageSettings
from .io import read_json, write_json

logger = logging.getLogger(__name__)


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


class SettingsStore:
    """
    Holds the single global ImageSettings record.

    Updates are merged onto the current record and validated as a whole; an
    invalid update leaves the record untouched. Concurrent writers are
    serialized and the last one wins. With `path` set the record is also
    written to JSON and reloaded on start.
    """

    def __init__(self, initial: Optional[ImageSettings] = None, path: Optional[Path] = None):
        self._lock = threading.Lock()
        self._path = path
        self._settings = initial or self._load() or ImageSettings()

    def _load(self) -> Optional[ImageSettings]:
        if self._path is None:
            return None
        data = read_json(str(self._path))
        if data is None:
            return None
        logger.info("Loaded settings from %s", self._path)
        return ImageSettings.model_validate(data)

    def get(self) -> ImageSettings:
        return self._settings.model_copy()

    def update(self, changes: Dict[str, Any]) -> ImageSettings:
        """
        Merge `changes` (camelCase or snake_case keys) and persist.

        Raises pydantic.ValidationError without mutating on invalid input.
        """
        with self._lock:
            camel = {_camel(k): v for k, v in changes.items()}
            merged = {**self._settings.model_dump(by_alias=True), **camel}
            updated = ImageSettings.model_validate(merged)
            if self._path is not None:
                write_json(str(self._path), updated.to_wire())
            self._settings = updated
            return updated.model_copy()
