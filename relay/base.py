"""
Transport store contract.

The relay uses a durable key-value table as its only message channel. Every
public operation here swallows and logs backend failures and hands back an
empty result instead: both polling loops simply retry on their next tick.
"""
import time
from abc import ABC, abstractmethod
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from mirror_utils.logger import get_logger
from relay.records import InvocationRecord, InvokeStatus, LivenessRecord

logger = get_logger(__name__)

MAX_BATCH_SIZE = 25

RecordKey = Tuple[str, str]
T = TypeVar("T")


def chunk(items: Sequence[T], size: int = MAX_BATCH_SIZE) -> Iterator[List[T]]:
    """Split ``items`` into lists of at most ``size`` elements."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class TransportStore(ABC):
    """
    Abstract base class for relay storage backends.

    Subclasses implement the underscore primitives and may raise whatever
    their client library raises; ``transient_errors`` lists the exception
    types converted into logged empty results.
    """

    transient_errors: Tuple[type, ...] = ()
    backend_name = "abstract"

    def _guard(self, operation: str, default, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except self.transient_errors as e:
            logger.error(
                f"Transport store {operation} failed",
                backend=self.backend_name,
                operation=operation,
                error=str(e)
            )
            return default

    # Backend primitives

    @abstractmethod
    def _put(self, record: InvocationRecord) -> None:
        pass

    @abstractmethod
    def _get(self, channel: str, invoke_id: str) -> Optional[InvocationRecord]:
        pass

    @abstractmethod
    def _query(self, channel: str, status: Optional[InvokeStatus]) -> List[InvocationRecord]:
        pass

    @abstractmethod
    def _batch_put(self, records: List[InvocationRecord]) -> List[InvocationRecord]:
        """Write one chunk; return the records the backend did not accept."""

    @abstractmethod
    def _delete(self, channel: str, invoke_id: str) -> None:
        pass

    @abstractmethod
    def _batch_delete(self, keys: List[RecordKey]) -> int:
        """Delete one chunk; return how many keys were deleted."""

    @abstractmethod
    def _scan(self, channel: Optional[str]) -> List[InvocationRecord]:
        pass

    @abstractmethod
    def _touch_liveness(self, channel: str, timestamp: int) -> None:
        pass

    @abstractmethod
    def _get_liveness(self, channel: str) -> Optional[LivenessRecord]:
        pass

    def _purge_expired(self, now: int) -> int:
        # Backends with native item expiry have nothing to do
        return 0

    # Public operations

    def put(self, record: InvocationRecord) -> bool:
        """Write a record; True on success."""
        return self._guard("put", False, lambda: self._put(record) or True)

    def get(self, channel: str, invoke_id: str, default=None) -> Optional[InvocationRecord]:
        """
        Read one record; None when absent, ``default`` when the read failed.
        """
        return self._guard("get", default, self._get, channel, invoke_id)

    def query(self, channel: str, status: Optional[InvokeStatus] = None) -> List[InvocationRecord]:
        """Records of ``channel``, optionally only those in ``status``."""
        return self._guard("query", [], self._query, channel, status)

    def batch_put(self, records: Iterable[InvocationRecord]) -> List[InvocationRecord]:
        """
        Write records in chunks of MAX_BATCH_SIZE.

        Each chunk is sent independently, a failing chunk does not stop the
        others.

        Returns:
            The records that were not written
        """
        records = list(records)
        unwritten: List[InvocationRecord] = []
        for batch in chunk(records):
            unwritten.extend(self._guard("batch_put", batch, self._batch_put, batch))
        if unwritten:
            logger.warning(
                "Batch write left records unwritten",
                backend=self.backend_name,
                requested=len(records),
                unwritten=len(unwritten)
            )
        return unwritten

    def delete(self, channel: str, invoke_id: str) -> bool:
        return self._guard("delete", False, lambda: self._delete(channel, invoke_id) or True)

    def batch_delete(self, keys: Iterable[RecordKey]) -> int:
        """Delete ``(channel, invoke_id)`` keys in chunks; return how many were deleted."""
        deleted = 0
        for batch in chunk(list(keys)):
            deleted += self._guard("batch_delete", 0, self._batch_delete, batch)
        return deleted

    def scan_all(self, channel: Optional[str] = None) -> List[InvocationRecord]:
        """Every invocation record (of ``channel`` when given), following pagination."""
        return self._guard("scan", [], self._scan, channel)

    def touch_liveness(self, channel: str, timestamp: Optional[float] = None) -> bool:
        timestamp = time.time() if timestamp is None else timestamp
        return self._guard(
            "touch_liveness", False, lambda: self._touch_liveness(channel, int(timestamp)) or True
        )

    def get_liveness(self, channel: str) -> Optional[LivenessRecord]:
        return self._guard("get_liveness", None, self._get_liveness, channel)

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Delete records whose ttl has passed, for backends without native expiry."""
        now = time.time() if now is None else now
        return self._guard("purge_expired", 0, self._purge_expired, int(now))
