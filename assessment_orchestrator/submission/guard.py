"""Duplicate submission protection keyed by content fingerprint.

Two layers block duplicates:

1. An in-memory map of live entries, at most one per fingerprint, each
   expiring after ``entry_ttl`` seconds so a crashed workflow cannot lock
   its content forever.
2. A cooldown marker written to the key-value store when the service
   accepts a submission. It survives restarts, so a fresh registry still
   refuses identical content for ``cooldown`` seconds.
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from assessment_orchestrator.errors import DuplicateSubmission
from assessment_orchestrator.utils.logging import get_logger
from assessment_orchestrator.utils.store import KeyValueStore, MemoryStore

logger = get_logger("submission.guard")

COOLDOWN_KEY_PREFIX = "recent-submission-"
DEFAULT_ENTRY_TTL = 5 * 60.0
DEFAULT_COOLDOWN = 30.0


def _canonical(value: Any) -> Any:
    """Recursively normalize mapping keys to strings."""
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def fingerprint(payload: Mapping[str, Any]) -> str:
    """
    Compute a deterministic digest of a submission payload.

    Key insertion order does not matter: keys are stringified and sorted at
    every nesting level before hashing.

    Args:
        payload: Answers or score payload

    Returns:
        Full SHA256 hex digest
    """
    content = json.dumps(
        _canonical(payload),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class GuardEntry:
    """A live submission for one fingerprint."""

    fingerprint: str
    submission_id: str
    created_at: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.created_at > ttl


class SubmissionRegistry:
    """
    Owns the live-submission map and the persistent cooldown markers.

    Create one per application and pass it by reference to every workflow
    that should share duplicate protection.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
        entry_ttl: float = DEFAULT_ENTRY_TTL,
        cooldown: float = DEFAULT_COOLDOWN,
    ) -> None:
        """
        Initialize the registry.

        Args:
            store: Persistence for cooldown markers (in-memory if omitted)
            clock: Returns the current time in epoch seconds
            entry_ttl: Ceiling after which a live entry is discarded
            cooldown: Seconds identical content stays blocked after acceptance
        """
        self.store = store if store is not None else MemoryStore()
        self.clock = clock
        self.entry_ttl = entry_ttl
        self.cooldown = cooldown

        self._entries: dict[str, GuardEntry] = {}
        self._attempts = 0
        self._completed = 0

    fingerprint = staticmethod(fingerprint)

    def _purge_expired(self) -> None:
        now = self.clock()
        expired = [
            fp for fp, entry in self._entries.items()
            if entry.is_expired(now, self.entry_ttl)
        ]
        for fp in expired:
            entry = self._entries.pop(fp)
            logger.info(
                "guard_entry_expired",
                fingerprint=fp[:12],
                submission_id=entry.submission_id,
            )

    def is_in_progress(self, fp: str) -> bool:
        """Check whether a live entry exists for the fingerprint."""
        self._purge_expired()
        return fp in self._entries

    def get_entry(self, fp: str) -> Optional[GuardEntry]:
        self._purge_expired()
        return self._entries.get(fp)

    def in_cooldown(self, fp: str) -> bool:
        """
        Check the persistent cooldown marker for the fingerprint.

        Expired markers are removed as a side effect.
        """
        key = f"{COOLDOWN_KEY_PREFIX}{fp}"
        raw = self.store.get(key)
        if raw is None:
            return False

        try:
            marked_at = float(raw)
        except (TypeError, ValueError):
            logger.warning("guard_cooldown_corrupt", fingerprint=fp[:12], value=repr(raw))
            self.store.delete(key)
            return False

        if self.clock() - marked_at < self.cooldown:
            return True

        self.store.delete(key)
        return False

    def begin(self, fp: str, respect_cooldown: bool = True) -> GuardEntry:
        """
        Register a new live submission.

        Args:
            fp: Content fingerprint
            respect_cooldown: Also refuse while the persistent cooldown is active

        Returns:
            The created GuardEntry

        Raises:
            DuplicateSubmission: If an unexpired entry exists or cooldown is active
        """
        self._purge_expired()

        existing = self._entries.get(fp)
        if existing is not None:
            logger.warning(
                "duplicate_submission_blocked",
                fingerprint=fp[:12],
                submission_id=existing.submission_id,
                reason="in_progress",
            )
            raise DuplicateSubmission()

        if respect_cooldown and self.in_cooldown(fp):
            logger.warning(
                "duplicate_submission_blocked",
                fingerprint=fp[:12],
                reason="cooldown",
            )
            raise DuplicateSubmission(
                "This assessment was just submitted. Please wait a moment before submitting again."
            )

        entry = GuardEntry(
            fingerprint=fp,
            submission_id=f"submission-{uuid.uuid4().hex[:12]}",
            created_at=self.clock(),
        )
        self._entries[fp] = entry
        self._attempts += 1

        logger.info(
            "submission_started",
            fingerprint=fp[:12],
            submission_id=entry.submission_id,
            attempt=self._attempts,
        )
        return entry

    def mark_cooldown(self, fp: str) -> None:
        """Persist the cooldown marker after the service accepted the content."""
        self.store.set(f"{COOLDOWN_KEY_PREFIX}{fp}", self.clock())

    def complete(self, fp: str) -> None:
        """Remove the live entry after a successful terminal state."""
        entry = self._entries.pop(fp, None)
        if entry is not None:
            self._completed += 1
            logger.info(
                "submission_completed",
                fingerprint=fp[:12],
                submission_id=entry.submission_id,
            )

    def fail(self, fp: str) -> None:
        """Remove the live entry after a failed or cancelled workflow."""
        entry = self._entries.pop(fp, None)
        if entry is not None:
            logger.info(
                "submission_released",
                fingerprint=fp[:12],
                submission_id=entry.submission_id,
            )

    def clear(self) -> None:
        """Drop every live entry and cooldown marker."""
        self._entries.clear()
        for key in self.store.keys(COOLDOWN_KEY_PREFIX):
            self.store.delete(key)
        self._attempts = 0
        self._completed = 0
        logger.info("guard_cleared")

    def stats(self) -> dict[str, int]:
        """Get a summary of guard activity."""
        self._purge_expired()
        return {
            "submission_attempts": self._attempts,
            "active_submissions": len(self._entries),
            "completed_submissions": self._completed,
        }
