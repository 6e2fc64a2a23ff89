"""
Evidence Blob Storage

Byte fetches for uploaded evidence files, keyed by object key. Fetches that
fail transiently are retried with exponential backoff before giving up with
TransientIOError.
"""
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..config import BLOB_ROOT, BLOB_FETCH_ATTEMPTS, BLOB_BACKOFF_BASE_SECONDS
from ..errors import TransientIOError, UpstreamNotFoundError


logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Returns the bytes stored under a key."""

    @abstractmethod
    def get_object(self, key: str) -> bytes:
        """
        Raises:
            UpstreamNotFoundError: no object under `key`
            TransientIOError: retryable read failure
        """
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Blobs as files under a root directory. Keys are relative paths."""

    def __init__(self, root: str = BLOB_ROOT):
        self.root = os.path.abspath(root)

    def _path_for(self, key: str) -> str:
        if not key or not isinstance(key, str):
            raise UpstreamNotFoundError(f"Invalid storage key: {key!r}")
        path = os.path.abspath(os.path.join(self.root, key))
        if os.path.commonpath([self.root, path]) != self.root:
            raise UpstreamNotFoundError(f"Storage key escapes blob root: {key}")
        return path

    def get_object(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise UpstreamNotFoundError(f"Blob not found: {key}")
        except OSError as e:
            raise TransientIOError(f"Failed to read blob {key}: {e}") from e


class InMemoryBlobStore(BlobStore):
    """Dict-backed store for tests and demo seeds."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self.objects = dict(objects or {})

    def put_object(self, key: str, data: bytes) -> None:
        self.objects[key] = data

    def get_object(self, key: str) -> bytes:
        if key not in self.objects:
            raise UpstreamNotFoundError(f"Blob not found: {key}")
        return self.objects[key]


@dataclass
class BlobRetryConfig:
    """
    Exponential backoff for blob reads.

    Args:
        max_attempts: Attempts including the first one
        backoff_base: Delay before the second attempt; doubles each time after
        max_backoff: Upper bound on a single delay
    """
    max_attempts: int = BLOB_FETCH_ATTEMPTS
    backoff_base: float = BLOB_BACKOFF_BASE_SECONDS
    max_backoff: float = 30.0


def fetch_with_retry(
    store: BlobStore,
    key: str,
    retry_config: Optional[BlobRetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> bytes:
    """
    Read a blob, retrying TransientIOError with exponential backoff.

    Missing objects are not retried.

    Raises:
        UpstreamNotFoundError: object does not exist
        TransientIOError: still failing after all attempts
    """
    config = retry_config or BlobRetryConfig()
    last_error: Optional[TransientIOError] = None

    for attempt in range(config.max_attempts):
        try:
            return store.get_object(key)
        except TransientIOError as e:
            last_error = e
            if attempt + 1 >= config.max_attempts:
                break
            delay = min(config.backoff_base * (2 ** attempt), config.max_backoff)
            logger.warning(
                f"Blob fetch {key} failed ({e.message}), "
                f"retrying in {delay:.1f}s (attempt {attempt + 1}/{config.max_attempts})"
            )
            sleep(delay)

    raise TransientIOError(
        f"Failed to get object {key} after {config.max_attempts} attempts: "
        f"{last_error.message if last_error else 'unknown error'}"
    )
