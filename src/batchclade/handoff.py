"""Collaborators that receive the merged artifacts once a batch succeeds."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Callable

from .errors import UploadFailure


logger = logging.getLogger(__name__)

Uploader = Callable[[Path, str], None]
Notifier = Callable[[str], None]


def log_notifier(message: str) -> None:
    logger.info("notify: %s", message)


class DirectoryUploader:
    """Copy artifacts into a directory named by the destination identifier.

    Relative destinations resolve under ``root``.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = None if root is None else Path(root)

    def target_dir(self, destination: str) -> Path:
        dest = Path(destination)
        if not dest.is_absolute() and self.root is not None:
            dest = self.root / dest
        return dest

    def __call__(self, path: Path, destination: str) -> None:
        target = self.target_dir(destination)
        try:
            target.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target / Path(path).name)
        except OSError as exc:
            raise UploadFailure(path, destination, str(exc)) from exc
        logger.info("uploaded %s -> %s", path, target)
