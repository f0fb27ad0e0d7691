"""Finalization guard keeping a record alive until its remote issue is closed."""

from __future__ import annotations

from issue_operator.exceptions import NotFound, WriteConflict
from issue_operator.logging import get_logger
from issue_operator.models import IssueRequest
from issue_operator.store import RecordStore

logger = get_logger(__name__)

# Guard token placed in a record's finalizers
FINALIZER = "finalizer.issues.operator.github.io"

# Attempts per ensure/remove before a WriteConflict is surfaced
DEFAULT_MAX_ATTEMPTS = 5


class FinalizationGuard:
    """Idempotently attaches and removes the guard token.

    Each change is a read-modify-write guarded by ``resource_version``. On
    ``WriteConflict`` the record is re-read and the change re-applied, so
    a concurrent edit to other fields is never overwritten.
    """

    def __init__(
        self,
        store: RecordStore,
        finalizer: str = FINALIZER,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.store = store
        self.finalizer = finalizer
        self.max_attempts = max_attempts

    def ensure(self, record: IssueRequest) -> IssueRequest:
        """Attach the guard if missing.

        Args:
            record: The record as last read.

        Returns:
            The record as stored after the call.

        Raises:
            WriteConflict: If every attempt lost a race.
            NotFound: If the record was erased meanwhile.
        """
        current = record
        for attempt in range(1, self.max_attempts + 1):
            if current.has_finalizer(self.finalizer):
                return current

            updated = current.copy()
            updated.finalizers.append(self.finalizer)
            try:
                stored = self.store.update(updated)
                logger.debug("Attached finalizer to %s", record.key)
                return stored
            except WriteConflict:
                logger.debug(
                    "Conflict attaching finalizer to %s (attempt %s/%s)",
                    record.key,
                    attempt,
                    self.max_attempts,
                )
                if attempt == self.max_attempts:
                    raise
                current = self.store.get(record.key)

        # loop above always returns or raises
        raise WriteConflict(f"could not attach finalizer to {record.key}")

    def remove(self, record: IssueRequest) -> IssueRequest | None:
        """Detach the guard if present.

        Returns:
            The record as stored after the call, or None if the store erased
            it (last finalizer removed during deletion, or already gone).

        Raises:
            WriteConflict: If every attempt lost a race.
        """
        current: IssueRequest = record
        for attempt in range(1, self.max_attempts + 1):
            if not current.has_finalizer(self.finalizer):
                return current

            updated = current.copy()
            updated.finalizers = [f for f in updated.finalizers if f != self.finalizer]
            try:
                stored = self.store.update(updated)
                logger.debug("Removed finalizer from %s", record.key)
            except NotFound:
                return None
            except WriteConflict:
                logger.debug(
                    "Conflict removing finalizer from %s (attempt %s/%s)",
                    record.key,
                    attempt,
                    self.max_attempts,
                )
                if attempt == self.max_attempts:
                    raise
                try:
                    current = self.store.get(record.key)
                except NotFound:
                    return None
                continue

            if stored.deletion_requested and not stored.finalizers:
                return None
            return stored

        raise WriteConflict(f"could not remove finalizer from {record.key}")
