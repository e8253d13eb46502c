"""
Token and pending authorization stores.

`TokenStore` is the boundary to durable session storage. Only an in-memory implementation ships
here; encrypted file or distributed cache backends implement the same three methods.

`PendingAuthorizationStore` keeps outstanding authorization requests in process memory, keyed
by state, with a TTL and a capacity bound. Consuming a request removes it, so a state can be
completed at most once.
"""

from abc import ABC, abstractmethod
import asyncio
from datetime import datetime, timezone
import logging
from typing import Dict, Optional

from social.graze.atclient.errors import CorrelationException
from social.graze.atclient.model.oauth import AuthorizationRequest, TokenRecord

logger = logging.getLogger(__name__)


class TokenStore(ABC):
    @abstractmethod
    async def store(self, did: str, record: TokenRecord) -> None:
        pass

    @abstractmethod
    async def get(self, did: str) -> Optional[TokenRecord]:
        pass

    @abstractmethod
    async def remove(self, did: str) -> None:
        pass


class InMemoryTokenStore(TokenStore):
    """Process local token store. Records are lost when the process exits."""

    def __init__(self) -> None:
        self._records: Dict[str, TokenRecord] = {}
        self._lock = asyncio.Lock()

    async def store(self, did: str, record: TokenRecord) -> None:
        async with self._lock:
            self._records[did] = record.model_copy(deep=True)

    async def get(self, did: str) -> Optional[TokenRecord]:
        async with self._lock:
            record = self._records.get(did)
            if record is None:
                return None
            return record.model_copy(deep=True)

    async def remove(self, did: str) -> None:
        async with self._lock:
            self._records.pop(did, None)

    def __len__(self) -> int:
        return len(self._records)


class PendingAuthorizationStore:
    """
    Outstanding authorization requests keyed by state.

    All methods are synchronous and never await, so within one event loop `add` and `pop` are
    atomic with respect to each other.
    """

    def __init__(self, ttl_seconds: int = 600, max_pending: int = 100) -> None:
        self._ttl_seconds = ttl_seconds
        self._max_pending = max_pending
        self._requests: Dict[str, AuthorizationRequest] = {}

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        if now is None:
            now = datetime.now(timezone.utc)

        expired = [
            state
            for state, request in self._requests.items()
            if request.is_expired(self._ttl_seconds, now)
        ]
        for state in expired:
            self._requests.pop(state).signer.discard()

        if expired:
            logger.debug("Purged %d expired authorization requests", len(expired))
        return len(expired)

    def add(self, request: AuthorizationRequest) -> None:
        """
        Raises:
            CorrelationException: If the store is at capacity after purging expired entries
        """
        self.purge_expired()
        if len(self._requests) >= self._max_pending:
            raise CorrelationException.too_many_pending(self._max_pending)
        self._requests[request.state] = request

    def pop(self, state: str) -> Optional[AuthorizationRequest]:
        """Remove and return the request for `state`, or None when unknown or expired."""
        request = self._requests.pop(state, None)
        if request is None:
            return None

        if request.is_expired(self._ttl_seconds):
            request.signer.discard()
            return None

        return request

    def __contains__(self, state: str) -> bool:
        return state in self._requests

    def __len__(self) -> int:
        return len(self._requests)
