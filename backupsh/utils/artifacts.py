"""
Scoped cleanup of partially written output files.

Files tracked inside a PartialArtifacts block are removed if the block is
left through an exception or a SIGINT/SIGTERM, unless commit() was called
first.
"""

import logging
import os
import signal
from pathlib import Path
from typing import Iterable, List

from backupsh.errors import Interrupted


logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class PartialArtifacts:
    """Context manager owning output files until the run is committed."""

    def __init__(self, signals: Iterable[int] = HANDLED_SIGNALS):
        self.signals = tuple(signals)
        self.paths: List[Path] = []
        self._previous_handlers = {}

    def __enter__(self):
        for signum in self.signals:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        return self

    def __exit__(self, exc_type, exc, tb):
        self._restore_handlers()
        if exc_type is not None:
            self.remove_all()
        return False

    def track(self, path) -> Path:
        """Register a file to be removed if the run does not complete."""
        path = Path(path)
        if path not in self.paths:
            self.paths.append(path)
        return path

    def forget(self, path):
        """Stop tracking a file that no longer exists or was handed off."""
        path = Path(path)
        if path in self.paths:
            self.paths.remove(path)

    def commit(self):
        """Mark every tracked file as durable."""
        self.paths = []

    def remove_all(self):
        for path in self.paths:
            try:
                os.remove(path)
                logger.info(f"Removed partial file {path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Failed to remove partial file {path}: {e}")
        self.paths = []

    def _handle_signal(self, signum, frame):
        logger.warning("Backup interrupted. Cleaning up...")
        self.remove_all()
        raise Interrupted(signum)

    def _restore_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}
