# Davkeeper
# Copyright (C) 2026 Davkeeper developers
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; version 3
# of the License or (at your option) any later version of
# the License.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston,
# MA  02110-1301, USA.

"""CTag-keyed cache of collection listings.

CTags used in this file are opaque strings; an empty or missing CTag means
the server does not support them, and such a listing is never fresh.
"""

import asyncio
import collections
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


CollectionCacheEntry = collections.namedtuple(
    "CollectionCacheEntry", ["collection_id", "ctag", "objects", "fetched_at"])


class CollectionCache:
    """In-memory map from collection URL to its last full listing.

    The cache is only ever populated from a complete fetch and only ever
    emptied by invalidation; mutations never patch entries in place.
    """

    def __init__(self, clock=time.time) -> None:
        self._entries: dict[str, CollectionCacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, collection_id: str) -> bool:
        return collection_id in self._entries

    def lock(self, collection_id: str) -> asyncio.Lock:
        """Return the lock guarding a single collection key."""
        try:
            return self._locks[collection_id]
        except KeyError:
            lock = self._locks[collection_id] = asyncio.Lock()
            return lock

    def generation(self, collection_id: str) -> int:
        """Number of invalidations seen for a collection.

        Take this before starting a fetch and hand it to `set`, so a
        listing fetched before an invalidation is not stored after it.
        """
        return self._generations.get(collection_id, 0)

    def is_fresh(self, collection_id: str, current_ctag: Optional[str]) -> bool:
        if not current_ctag:
            return False
        entry = self._entries.get(collection_id)
        if entry is None:
            return False
        return entry.ctag == current_ctag

    def get(self, collection_id: str) -> Optional[CollectionCacheEntry]:
        return self._entries.get(collection_id)

    def set(self, collection_id: str, ctag: Optional[str], objects,
            generation: Optional[int] = None) -> bool:
        """Replace the entry for a collection wholesale.

        Returns: False if the listing was discarded because the collection
            was invalidated after the fetch started
        """
        if generation is not None and generation != self.generation(collection_id):
            logger.debug(
                "Discarding stale listing for %s (invalidated during fetch)",
                collection_id)
            return False
        self._entries[collection_id] = CollectionCacheEntry(
            collection_id, ctag or "", tuple(objects), self._clock())
        logger.debug(
            "Cache updated for %s: %d objects, ctag %r",
            collection_id, len(objects), ctag)
        return True

    def invalidate(self, collection_id: str) -> None:
        """Drop the entry; the next read performs a full fetch."""
        self._generations[collection_id] = self.generation(collection_id) + 1
        if self._entries.pop(collection_id, None) is not None:
            logger.debug("Invalidated cache for %s", collection_id)

    def clear(self) -> None:
        for collection_id in list(self._entries):
            self.invalidate(collection_id)
