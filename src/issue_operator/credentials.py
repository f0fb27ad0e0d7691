"""Credential holder provisioning and token lookup."""

from __future__ import annotations

from typing import NamedTuple

from issue_operator.exceptions import AlreadyExists, NotFound
from issue_operator.logging import get_logger
from issue_operator.models import TOKEN_DATA_KEY, CredentialHolder, IssueRequest
from issue_operator.store import RecordStore
from issue_operator.types import TokenState

logger = get_logger(__name__)


class TokenLookup(NamedTuple):
    """Result of reading a record's credential holder.

    ``token`` is only meaningful when ``state`` is ``PRESENT``.
    """

    state: TokenState
    token: str = ""

    @classmethod
    def not_found(cls) -> TokenLookup:
        return cls(TokenState.NOT_FOUND)

    @classmethod
    def empty(cls) -> TokenLookup:
        return cls(TokenState.EMPTY)

    @classmethod
    def present(cls, token: str) -> TokenLookup:
        return cls(TokenState.PRESENT, token)

    @property
    def usable(self) -> bool:
        return self.state == TokenState.PRESENT


class SecretProvisioner:
    """Creates and reads the per-record credential holder.

    The holder is created once, empty, and owned by its record so erasing
    the record cascades to it. An operator fills in the token; the
    provisioner never overwrites an existing holder.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def ensure_holder(self, record: IssueRequest) -> bool:
        """Create an empty credential holder for ``record`` if none exists.

        Returns:
            True if this call created the holder.
        """
        key = record.credential_key
        try:
            self.store.get_credential(key)
            return False
        except NotFound:
            pass

        holder = CredentialHolder(key=key, owner=record.key, data={TOKEN_DATA_KEY: ""})
        try:
            self.store.create_credential(holder)
        except AlreadyExists:
            logger.debug("Credential holder %s created concurrently", key)
            return False

        logger.info(
            "Created credential holder %s for %s; set its %r value to a GitHub token",
            key,
            record.key,
            TOKEN_DATA_KEY,
        )
        return True

    def read_token(self, record: IssueRequest) -> TokenLookup:
        """Look up the token for ``record``.

        Surrounding whitespace is stripped before the emptiness test.
        """
        try:
            holder = self.store.get_credential(record.credential_key)
        except NotFound:
            return TokenLookup.not_found()

        token = holder.token.strip()
        if not token:
            return TokenLookup.empty()
        return TokenLookup.present(token)
