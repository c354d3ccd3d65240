import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Generic, Optional, TypeVar

from models import ExpiringRecord

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=ExpiringRecord)


class TokenStore(ABC, Generic[R]):
    """
    Keyed store for authorization codes and refresh tokens.

    Adapters must make take() a single indivisible fetch-and-delete: of two
    concurrent takes for the same key, exactly one receives the record.
    """

    @abstractmethod
    def put(self, key: str, record: R) -> None:
        ...

    @abstractmethod
    def take(self, key: Optional[str], match: Optional[Callable[[R], bool]] = None) -> Optional[R]:
        """
        Remove and return the record stored under key.

        With match, the record is removed only if match(record) is true;
        otherwise it stays in place and None is returned. Expired records
        are still returned so the caller decides how to report them.
        """

    @abstractmethod
    def purge_expired(self, now: Optional[float] = None) -> int:
        ...


class InMemoryTokenStore(TokenStore[R]):
    """Process-local store backed by a dict and a lock"""

    def __init__(self, name: str = "tokens"):
        self.name = name
        self._records: Dict[str, R] = {}
        self._lock = threading.Lock()

    def put(self, key: str, record: R) -> None:
        with self._lock:
            self._records[key] = record

    def take(self, key: Optional[str], match: Optional[Callable[[R], bool]] = None) -> Optional[R]:
        if not key:
            return None

        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if match is not None and not match(record):
                return None
            del self._records[key]
            return record

    def purge_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            expired = [key for key, record in self._records.items() if record.is_expired(now)]
            for key in expired:
                del self._records[key]

        if expired:
            logger.info(f"Purged {len(expired)} expired entries from {self.name} store")
        return len(expired)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
