"""Crash-safe replacement of the store document.

The file store rewrites its whole JSON document on every mutation. The new
document goes to a sibling temp file which is then renamed over the old
one, so readers see either the previous document or the new one.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from assessment_orchestrator.utils.logging import get_logger

logger = get_logger("utils.atomic")


class StoreWriteError(OSError):
    """The store document could not be replaced."""


def replace_json(path: Path, document: Any) -> None:
    """
    Atomically replace ``path`` with ``document`` serialized as JSON.

    Raises:
        StoreWriteError: If serialization, the write or the rename fails;
            the previous file is left untouched
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory keeps the rename on one filesystem
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    except (OSError, TypeError, ValueError) as e:
        tmp_path.unlink(missing_ok=True)
        logger.error("store_write_failed", path=str(path), error=str(e))
        raise StoreWriteError(f"Could not write {path}: {e}") from e

    logger.debug("store_document_replaced", path=str(path))
