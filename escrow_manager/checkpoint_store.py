from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Optional

from .errors import CheckpointError
from .ledger import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Ledger checkpoint in a single JSON file, replaced atomically on save."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[Checkpoint]:
        if not os.path.exists(self.path):
            logger.info({"event": "checkpoint_missing", "path": self.path})
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return Checkpoint.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise CheckpointError(f"unreadable checkpoint {self.path}: {exc}") from exc

    def save(self, checkpoint: Checkpoint) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".checkpoint-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(checkpoint.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
