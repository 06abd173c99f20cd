"""Durable storage for checkpoint documents."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Union

from .models import Checkpoint
from ..paths import get_checkpoints_dir

logger = logging.getLogger(__name__)


def folders_key(folders: Iterable[Union[str, Path]]) -> str:
    """Stable key for a set of folders, independent of their order."""
    resolved = sorted(str(Path(folder).resolve()) for folder in folders)
    return hashlib.sha1("\n".join(resolved).encode("utf-8")).hexdigest()[:16]


class CheckpointStore:
    """Loads and persists a single checkpoint document.

    Every :meth:`save` writes the whole document to a temporary file in the
    same directory, fsyncs it and atomically replaces the previous version,
    so a crash never leaves a truncated checkpoint behind.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self.save_count = 0

    @classmethod
    def for_folders(
        cls,
        folders: Iterable[Union[str, Path]],
        base_dir: Optional[Path] = None,
    ) -> "CheckpointStore":
        directory = base_dir or get_checkpoints_dir()
        return cls(Path(directory) / f"deploy_{folders_key(folders)}.json")

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[Checkpoint]:
        if not self.path.is_file():
            return None
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        logger.debug("Loaded checkpoint from %s", self.path)
        return Checkpoint.from_dict(data)

    def save(self, checkpoint: Checkpoint) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(checkpoint.to_dict(), handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self.save_count += 1

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
