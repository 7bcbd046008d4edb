"""Bounded image cache.

Keeps recently loaded slide images resident under an item-count and/or
byte budget. Eviction is by insertion order (oldest-inserted first); a
cache hit does not refresh an entry's position.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import xarray as xr

from histostack.contracts import CacheTypeMismatch

__all__ = ['CacheEntry', 'ImageCache']

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    sequence: int
    nbytes: int
    image: xr.DataArray


class ImageCache:
    """FIFO cache of images keyed by source identifier.

    Parameters
    ----------
    loader : callable
        ``loader(key) -> xr.DataArray``, called on a miss.
    max_bytes : int, optional
        Byte ceiling. 0 disables the check.
    max_items : int, optional
        Entry-count ceiling. 0 disables the check.

    Notes
    -----
    Not thread-safe. Mutation must be serialized if slices are ever
    processed in parallel.

    Examples
    --------
    >>> cache = ImageCache(store.load_source, max_items=20)
    >>> img = cache.get("/data/slide_001.nii.gz", np.float32)
    """

    def __init__(self, loader: Callable[[str], xr.DataArray],
                 max_bytes: int = 0, max_items: int = 0):
        if max_bytes < 0 or max_items < 0:
            raise ValueError("Cache limits must be non-negative")
        self._loader = loader
        self.max_bytes = max_bytes
        self.max_items = max_items
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._counter = 0
        self.used_bytes = 0
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return str(key) in self._entries

    def _is_full(self, incoming_bytes: int, incoming_count: int) -> bool:
        if self.max_bytes > 0 and self.used_bytes + incoming_bytes > self.max_bytes:
            return True
        if self.max_items > 0 and len(self._entries) + incoming_count > self.max_items:
            return True
        return False

    def shrink(self, incoming_bytes: int, incoming_count: int) -> None:
        """Evict oldest-inserted entries until the incoming load fits or the cache is empty."""
        while self._entries and self._is_full(incoming_bytes, incoming_count):
            key, entry = self._entries.popitem(last=False)
            self.used_bytes -= entry.nbytes
            logger.debug("Evicted %s (seq=%d, %d bytes)", key, entry.sequence, entry.nbytes)

    def purge(self) -> None:
        self._entries.clear()
        self.used_bytes = 0

    def get(self, key, dtype=None) -> xr.DataArray:
        """Return the image for ``key``, loading it on a miss.

        Parameters
        ----------
        key : str or Path
            Source identifier passed to the loader.
        dtype : numpy dtype, optional
            Element type the caller expects. A miss casts the loaded image
            to it; a hit holding a different type raises.

        Raises
        ------
        CacheTypeMismatch
            If the cached entry's element type differs from ``dtype``.
        """
        key = str(key)
        entry = self._entries.get(key)
        if entry is not None:
            if dtype is not None and entry.image.dtype != np.dtype(dtype):
                raise CacheTypeMismatch(key, entry.image.dtype, np.dtype(dtype))
            self.hits += 1
            return entry.image

        self.misses += 1
        image = self._loader(key)
        if dtype is not None and image.dtype != np.dtype(dtype):
            image = image.astype(dtype)
        nbytes = int(image.nbytes)
        self.shrink(nbytes, 1)

        self._counter += 1
        self._entries[key] = CacheEntry(self._counter, nbytes, image)
        self.used_bytes += nbytes
        logger.debug("Cached %s (seq=%d, %d bytes, %d entries)",
                     key, self._counter, nbytes, len(self._entries))
        return image

    def sequence_numbers(self) -> dict:
        """Insertion sequence number of each resident key."""
        return {key: entry.sequence for key, entry in self._entries.items()}
