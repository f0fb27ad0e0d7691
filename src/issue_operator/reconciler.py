"""Reconcile loop driving one IssueRequest record toward its desired state.

One pass, for one key:

1. Fetch the record; a missing record is done.
2. If deletion was requested, tear down: close the remote issue, then
   release the finalizer so the store erases the record.
3. Otherwise attach the finalizer, resolve the token, find/create/update
   the remote issue and project its state onto the record's status.

Every failure is translated into a ``ReconcileResult`` here; nothing a
pass raises escapes ``reconcile``.
"""

from __future__ import annotations

from dataclasses import dataclass

from issue_operator.credentials import SecretProvisioner
from issue_operator.exceptions import (
    MalformedRepoRef,
    NotFound,
    RemoteIssueGone,
    StoreError,
    TicketingError,
    Unauthorized,
    WriteConflict,
)
from issue_operator.finalizer import FinalizationGuard
from issue_operator.github_rest_client import TicketingClient, TicketingClientFactory
from issue_operator.logging import ContextAdapter, get_logger
from issue_operator.models import IssueRequest, ObjectKey, RemoteIssue
from issue_operator.repo_ref import RepoRef, parse_repo_url
from issue_operator.status import StatusProjector
from issue_operator.store import RecordStore
from issue_operator.types import Outcome, TokenState

logger = get_logger(__name__)

# Seconds to wait before re-checking an empty or rejected token
DEFAULT_TOKEN_POLL_INTERVAL = 60.0

# Seconds to wait after losing a status write race
DEFAULT_CONFLICT_RETRY_DELAY = 5.0


@dataclass(frozen=True)
class ReconcileResult:
    """Scheduling directive for the key a pass ran on.

    Attributes:
        outcome: What the scheduler should do next.
        delay: Seconds to wait, for ``REQUEUE_AFTER`` only.
        error: The failure behind ``BACKOFF`` or ``FATAL``, if any.
    """

    outcome: Outcome
    delay: float = 0.0
    error: BaseException | None = None

    @classmethod
    def done(cls) -> ReconcileResult:
        return cls(Outcome.DONE)

    @classmethod
    def requeue(cls) -> ReconcileResult:
        return cls(Outcome.REQUEUE)

    @classmethod
    def requeue_after(cls, delay: float) -> ReconcileResult:
        return cls(Outcome.REQUEUE_AFTER, delay=delay)

    @classmethod
    def backoff(cls, error: BaseException) -> ReconcileResult:
        return cls(Outcome.BACKOFF, error=error)

    @classmethod
    def fatal(cls, error: BaseException) -> ReconcileResult:
        return cls(Outcome.FATAL, error=error)


class IssueRequestReconciler:
    """Reconciles IssueRequest records against the remote tracker.

    The ticketing client is built per pass from the record's current token
    through ``client_factory`` and closed when the pass ends, so a rotated
    token is picked up on the next pass.

    No create, update or close call is made before the finalizer is
    attached, nor while the record's token is empty or absent.
    """

    def __init__(
        self,
        store: RecordStore,
        client_factory: TicketingClientFactory,
        provisioner: SecretProvisioner | None = None,
        guard: FinalizationGuard | None = None,
        projector: StatusProjector | None = None,
        token_poll_interval: float = DEFAULT_TOKEN_POLL_INTERVAL,
        conflict_retry_delay: float = DEFAULT_CONFLICT_RETRY_DELAY,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.provisioner = provisioner or SecretProvisioner(store)
        self.guard = guard or FinalizationGuard(store)
        self.projector = projector or StatusProjector()
        self.token_poll_interval = token_poll_interval
        self.conflict_retry_delay = conflict_retry_delay

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Run one pass for ``key`` and return what to do next."""
        log = logger.with_context(record=str(key))

        try:
            record = self.store.get(key)
            if record.deletion_requested:
                return self._teardown(record, log.with_context(phase="teardown"))
            return self._sync_pass(record, log.with_context(phase="sync"))
        except MalformedRepoRef as e:
            log.error("Cannot reconcile: %s; waiting for the spec to change", e)
            return ReconcileResult.fatal(e)
        except Unauthorized as e:
            log.warning(
                "GitHub rejected the token: %s; retrying in %ss", e, self.token_poll_interval
            )
            return ReconcileResult.requeue_after(self.token_poll_interval)
        except TicketingError as e:
            log.warning("Remote call failed: %s", e, extra={"error_type": type(e).__name__})
            return ReconcileResult.backoff(e)
        except NotFound:
            log.debug("Record no longer exists")
            return ReconcileResult.done()
        except WriteConflict:
            log.info("Status write conflict; retrying in %ss", self.conflict_retry_delay)
            return ReconcileResult.requeue_after(self.conflict_retry_delay)
        except StoreError as e:
            log.warning("Store operation failed: %s", e, extra={"error_type": type(e).__name__})
            return ReconcileResult.backoff(e)

    def _sync_pass(self, record: IssueRequest, log: ContextAdapter) -> ReconcileResult:
        try:
            record = self.guard.ensure(record)
        except WriteConflict:
            log.info("Finalizer write conflict; requeueing")
            return ReconcileResult.requeue()

        # Parsed before the token so a bad URL never touches status
        ref = parse_repo_url(record.spec.repo_url)

        lookup = self.provisioner.read_token(record)
        if lookup.state == TokenState.NOT_FOUND:
            self.provisioner.ensure_holder(record)
            self.projector.set_token_required(self.store, record, True)
            return ReconcileResult.requeue()
        if lookup.state == TokenState.EMPTY:
            self.projector.set_token_required(self.store, record, True)
            log.info(
                "Waiting for a token in %s; rechecking in %ss",
                record.credential_key,
                self.token_poll_interval,
            )
            return ReconcileResult.requeue_after(self.token_poll_interval)

        record = self.projector.set_token_required(self.store, record, False)

        with self.client_factory(lookup.token) as client:
            issue = self._sync(client, ref, record, log)

        try:
            self.projector.apply(self.store, record, issue)
        except WriteConflict:
            log.info("Status write conflict; retrying in %ss", self.conflict_retry_delay)
            return ReconcileResult.requeue_after(self.conflict_retry_delay)

        log.with_context(issue=issue.number).debug("Reconciled")
        return ReconcileResult.done()

    def _sync(
        self,
        client: TicketingClient,
        ref: RepoRef,
        record: IssueRequest,
        log: ContextAdapter,
    ) -> RemoteIssue:
        """Make the remote issue match the record's spec and return it.

        Raises:
            RemoteIssueGone: If the issue the record already tracks is no
                longer listed. Creating a replacement would change the
                record's issue number.
        """
        spec = record.spec
        known = record.status.remote_issue_id

        found = client.find_issue(ref.owner, ref.repo, spec.title, known_number=known)
        if known > 0 and (found is None or found.number != known):
            raise RemoteIssueGone(ref.owner, ref.repo, known)

        if found is None:
            issue = client.create_issue(ref.owner, ref.repo, spec.title, spec.description)
            log.with_context(issue=issue.number).info("Created issue in %s", ref)
            return issue

        issue = client.update_issue(ref.owner, ref.repo, found, spec.description, spec.title)
        log.with_context(issue=issue.number).debug("Updated issue in %s", ref)
        return issue

    def _teardown(self, record: IssueRequest, log: ContextAdapter) -> ReconcileResult:
        if not record.has_finalizer(self.guard.finalizer):
            # Some other finalizer holds the record; nothing left for us
            return ReconcileResult.done()

        known = record.status.remote_issue_id
        try:
            ref = parse_repo_url(record.spec.repo_url)
        except MalformedRepoRef as e:
            if known > 0:
                log.warning("Cannot close issue #%s: %s; retrying", known, e)
                return ReconcileResult.backoff(e)
            # No remote call can have succeeded with this ref
            log.info("Releasing without a close: %s", e)
            return self._release(record, log)

        lookup = self.provisioner.read_token(record)

        if not lookup.usable:
            if known > 0:
                if lookup.state == TokenState.NOT_FOUND:
                    self.provisioner.ensure_holder(record)
                self.projector.set_token_required(self.store, record, True)
                log.warning(
                    "Cannot close issue #%s without a token in %s; rechecking in %ss",
                    known,
                    record.credential_key,
                    self.token_poll_interval,
                )
                return ReconcileResult.requeue_after(self.token_poll_interval)
            log.info("No token and no tracked issue; nothing to close")
        else:
            with self.client_factory(lookup.token) as client:
                self._close(client, ref, record, log)

        return self._release(record, log)

    def _release(self, record: IssueRequest, log: ContextAdapter) -> ReconcileResult:
        """Delete the record and drop our guard so the store can erase it."""
        try:
            self.store.delete(record.key)
        except NotFound:
            return ReconcileResult.done()

        try:
            self.guard.remove(record)
        except WriteConflict:
            log.info("Finalizer write conflict; requeueing")
            return ReconcileResult.requeue()

        log.info("Released %s", record.key)
        return ReconcileResult.done()

    def _close(
        self,
        client: TicketingClient,
        ref: RepoRef,
        record: IssueRequest,
        log: ContextAdapter,
    ) -> None:
        known = record.status.remote_issue_id
        issue = client.find_issue(ref.owner, ref.repo, record.spec.title, known_number=known)

        if known > 0 and (issue is None or issue.number != known):
            log.warning("Tracked issue #%s is no longer listed in %s; skipping close", known, ref)
            return
        if issue is None:
            log.info("No matching issue in %s; skipping close", ref)
            return
        if not issue.is_open:
            log.debug("Issue #%s already closed", issue.number)
            return

        client.close_issue(ref.owner, ref.repo, issue)
        log.with_context(issue=issue.number).info("Closed issue in %s", ref)
