"""Thread-safe cache for covariance estimates and projection factorisations."""

import hashlib
import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional

import numpy as np
from scipy import sparse

logger = logging.getLogger(__name__)


def fingerprint(*arrays: Any) -> str:
    """
    Compute a content hash of dense or sparse matrices.

    ``None`` entries hash to a fixed marker so optional residuals can be part
    of a key.
    """
    digest = hashlib.sha1()
    for arr in arrays:
        if arr is None:
            digest.update(b"<none>")
        elif sparse.issparse(arr):
            csr = sparse.csr_matrix(arr)
            csr.sum_duplicates()
            digest.update(f"sparse{csr.shape}".encode())
            digest.update(np.ascontiguousarray(csr.indptr).tobytes())
            digest.update(np.ascontiguousarray(csr.indices).tobytes())
            digest.update(np.ascontiguousarray(csr.data, dtype=float).tobytes())
        else:
            dense = np.ascontiguousarray(arr, dtype=float)
            digest.update(f"dense{dense.shape}".encode())
            digest.update(dense.tobytes())
    return digest.hexdigest()


class FactorizationCache:
    """
    Least-recently-used cache shared between reconciliation calls.

    Readers and writers are serialised by a lock; values are computed outside
    the lock and written by replacing the entry, so a concurrent reader sees
    either the old or the new value.
    """

    def __init__(self, maxsize: int = 32) -> None:
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self.maxsize = maxsize
        self._entries: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            if key not in self._entries:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return self._entries[key]

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.maxsize:
                self._entries.popitem(last=False)

    def get_or_compute(self, key: Hashable, factory: Callable[[], Any]) -> Any:
        """Return the cached value for ``key``, computing and storing it on a miss."""
        value = self.get(key)
        if value is None:
            value = factory()
            self.put(key, value)
            logger.debug(f"Cached new entry ({len(self)} of {self.maxsize})")
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
