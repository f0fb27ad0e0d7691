"""Record store holding IssueRequest records and their credential holders.

``RecordStore`` is the interface the operator is written against.
``InMemoryRecordStore`` is a thread-safe implementation with the
semantics the reconciler relies on:

- Optimistic concurrency: ``update`` compares ``resource_version``,
  ``update_status`` compares ``status_version``. A stale write raises
  ``WriteConflict``.
- Two-phase deletion: ``delete`` on a record with finalizers only stamps
  ``deletion_timestamp``. The record is erased when its last finalizer is
  removed, and credential holders it owns are cascaded away.
- Watch: listeners receive a ``WatchEvent`` for every change, called
  outside the store lock.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from issue_operator.exceptions import AlreadyExists, NotFound, StoreError, WriteConflict
from issue_operator.logging import get_logger
from issue_operator.models import CredentialHolder, IssueRequest, ObjectKey
from issue_operator.types import EventType, ObjectKind

logger = get_logger(__name__)


@dataclass(frozen=True)
class WatchEvent:
    """A change notification from the store.

    Attributes:
        kind: Which kind of object changed.
        event_type: Added, modified or deleted.
        key: Key of the changed object.
        status_only: True if only the status sub-document changed.
        owner: For credential holders, the key of the owning record.
    """

    kind: ObjectKind
    event_type: EventType
    key: ObjectKey
    status_only: bool = False
    owner: ObjectKey | None = None


WatchListener = Callable[[WatchEvent], None]
AdmissionHook = Callable[[IssueRequest], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RecordStore(ABC):
    """Abstract interface for record and credential-holder persistence.

    All methods return copies; mutating a returned object has no effect
    until it is written back.
    """

    @abstractmethod
    def get(self, key: ObjectKey) -> IssueRequest:
        """Return the record stored under ``key``.

        Raises:
            NotFound: If no such record exists.
        """
        pass

    @abstractmethod
    def list_records(self) -> list[IssueRequest]:
        """Return every stored record, ordered by key."""
        pass

    @abstractmethod
    def create(self, record: IssueRequest) -> IssueRequest:
        """Create a record.

        Raises:
            AlreadyExists: If the key is taken.
            AdmissionRejected: If the admission hook refuses the record.
        """
        pass

    @abstractmethod
    def update(self, record: IssueRequest) -> IssueRequest:
        """Write spec and finalizers, guarded by ``resource_version``.

        Status and ``deletion_timestamp`` in ``record`` are ignored.

        Raises:
            NotFound: If the record was erased.
            WriteConflict: If ``resource_version`` is stale.
            AdmissionRejected: If the admission hook refuses a spec change.
            StoreError: If a finalizer is added to a record being deleted.
        """
        pass

    @abstractmethod
    def update_status(self, record: IssueRequest) -> IssueRequest:
        """Write the status sub-document only, guarded by ``status_version``.

        Raises:
            NotFound: If the record was erased.
            WriteConflict: If ``status_version`` is stale.
        """
        pass

    @abstractmethod
    def delete(self, key: ObjectKey) -> None:
        """Request deletion of a record.

        Raises:
            NotFound: If no such record exists.
        """
        pass

    @abstractmethod
    def get_credential(self, key: ObjectKey) -> CredentialHolder:
        """Return the credential holder stored under ``key``.

        Raises:
            NotFound: If no such holder exists.
        """
        pass

    @abstractmethod
    def create_credential(self, holder: CredentialHolder) -> CredentialHolder:
        """Create a credential holder.

        Raises:
            AlreadyExists: If the key is taken.
        """
        pass

    @abstractmethod
    def update_credential(self, holder: CredentialHolder) -> CredentialHolder:
        """Replace a holder's data, guarded by ``resource_version``.

        Raises:
            NotFound: If the holder does not exist.
            WriteConflict: If ``resource_version`` is stale.
        """
        pass

    @abstractmethod
    def watch(self, listener: WatchListener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that unsubscribes it."""
        pass


class InMemoryRecordStore(RecordStore):
    """Thread-safe in-process RecordStore.

    Args:
        admission: Optional hook run on ``create`` and on spec-changing
            ``update``. It raises ``AdmissionRejected`` to refuse a write.
            ``None`` admits everything, e.g. to seed invalid records in tests.
        clock: Source of deletion timestamps.
    """

    def __init__(
        self,
        admission: AdmissionHook | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._lock = threading.RLock()
        self._records: dict[ObjectKey, IssueRequest] = {}
        self._credentials: dict[ObjectKey, CredentialHolder] = {}
        self._listeners: list[WatchListener] = []
        self._admission = admission
        self._clock = clock

    def get(self, key: ObjectKey) -> IssueRequest:
        with self._lock:
            return self._get_stored(key).copy()

    def list_records(self) -> list[IssueRequest]:
        with self._lock:
            return [self._records[key].copy() for key in sorted(self._records)]

    def create(self, record: IssueRequest) -> IssueRequest:
        if self._admission is not None:
            self._admission(record)

        with self._lock:
            if record.key in self._records:
                raise AlreadyExists(f"IssueRequest {record.key} already exists")
            stored = record.copy()
            stored.deletion_timestamp = None
            stored.resource_version = 1
            stored.status_version = 1
            self._records[stored.key] = stored
            result = stored.copy()

        logger.debug("Created record %s", record.key, extra={"diagnostic_tag": "store"})
        self._notify([WatchEvent(ObjectKind.ISSUE_REQUEST, EventType.ADDED, record.key)])
        return result

    def update(self, record: IssueRequest) -> IssueRequest:
        with self._lock:
            stored = self._get_stored(record.key)
            spec_changed = record.spec != stored.spec

        if spec_changed and self._admission is not None:
            self._admission(record)

        events: list[WatchEvent] = []
        with self._lock:
            stored = self._get_stored(record.key)
            if record.resource_version != stored.resource_version:
                raise WriteConflict(
                    f"IssueRequest {record.key}: resource_version {record.resource_version} "
                    f"is stale (current {stored.resource_version})"
                )
            if stored.deletion_requested:
                added = set(record.finalizers) - set(stored.finalizers)
                if added:
                    raise StoreError(
                        f"IssueRequest {record.key} is being deleted; "
                        f"cannot add finalizers {sorted(added)}"
                    )

            updated = stored.copy()
            updated.spec = record.copy().spec
            updated.finalizers = list(record.finalizers)
            updated.resource_version = stored.resource_version + 1

            if updated.deletion_requested and not updated.finalizers:
                events.extend(self._erase(updated.key))
            else:
                self._records[updated.key] = updated
                events.append(
                    WatchEvent(ObjectKind.ISSUE_REQUEST, EventType.MODIFIED, updated.key)
                )
            result = updated.copy()

        self._notify(events)
        return result

    def update_status(self, record: IssueRequest) -> IssueRequest:
        with self._lock:
            stored = self._get_stored(record.key)
            if record.status_version != stored.status_version:
                raise WriteConflict(
                    f"IssueRequest {record.key}: status_version {record.status_version} "
                    f"is stale (current {stored.status_version})"
                )
            updated = stored.copy()
            updated.status = record.copy().status
            updated.status_version = stored.status_version + 1
            self._records[updated.key] = updated
            result = updated.copy()

        self._notify(
            [
                WatchEvent(
                    ObjectKind.ISSUE_REQUEST,
                    EventType.MODIFIED,
                    record.key,
                    status_only=True,
                )
            ]
        )
        return result

    def delete(self, key: ObjectKey) -> None:
        events: list[WatchEvent] = []
        with self._lock:
            stored = self._get_stored(key)
            if stored.finalizers:
                if not stored.deletion_requested:
                    stored.deletion_timestamp = self._clock()
                    stored.resource_version += 1
                    events.append(WatchEvent(ObjectKind.ISSUE_REQUEST, EventType.MODIFIED, key))
                    logger.debug(
                        "Marked record %s for deletion, finalizers=%s",
                        key,
                        stored.finalizers,
                        extra={"diagnostic_tag": "store"},
                    )
            else:
                events.extend(self._erase(key))

        self._notify(events)

    def get_credential(self, key: ObjectKey) -> CredentialHolder:
        with self._lock:
            holder = self._credentials.get(key)
            if holder is None:
                raise NotFound(f"credential holder {key} not found")
            return holder.copy()

    def create_credential(self, holder: CredentialHolder) -> CredentialHolder:
        with self._lock:
            if holder.key in self._credentials:
                raise AlreadyExists(f"credential holder {holder.key} already exists")
            stored = holder.copy()
            stored.resource_version = 1
            self._credentials[stored.key] = stored
            result = stored.copy()

        self._notify(
            [WatchEvent(ObjectKind.CREDENTIAL, EventType.ADDED, holder.key, owner=holder.owner)]
        )
        return result

    def update_credential(self, holder: CredentialHolder) -> CredentialHolder:
        with self._lock:
            stored = self._credentials.get(holder.key)
            if stored is None:
                raise NotFound(f"credential holder {holder.key} not found")
            if holder.resource_version != stored.resource_version:
                raise WriteConflict(
                    f"credential holder {holder.key}: resource_version "
                    f"{holder.resource_version} is stale (current {stored.resource_version})"
                )
            updated = stored.copy()
            updated.data = dict(holder.data)
            updated.resource_version = stored.resource_version + 1
            self._credentials[updated.key] = updated
            result = updated.copy()

        self._notify(
            [
                WatchEvent(
                    ObjectKind.CREDENTIAL,
                    EventType.MODIFIED,
                    holder.key,
                    owner=stored.owner,
                )
            ]
        )
        return result

    def watch(self, listener: WatchListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _get_stored(self, key: ObjectKey) -> IssueRequest:
        record = self._records.get(key)
        if record is None:
            raise NotFound(f"IssueRequest {key} not found")
        return record

    def _erase(self, key: ObjectKey) -> list[WatchEvent]:
        """Remove a record and cascade to its holders. Caller holds the lock."""
        del self._records[key]
        events = [WatchEvent(ObjectKind.ISSUE_REQUEST, EventType.DELETED, key)]

        owned = [k for k, holder in self._credentials.items() if holder.owner == key]
        for holder_key in owned:
            del self._credentials[holder_key]
            events.append(
                WatchEvent(ObjectKind.CREDENTIAL, EventType.DELETED, holder_key, owner=key)
            )

        logger.debug(
            "Erased record %s, cascaded %s credential holder(s)",
            key,
            len(owned),
            extra={"diagnostic_tag": "store"},
        )
        return events

    def _notify(self, events: list[WatchEvent]) -> None:
        if not events:
            return
        with self._lock:
            listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception(
                        "Watch listener failed on %s %s %s",
                        event.kind,
                        event.event_type,
                        event.key,
                    )
