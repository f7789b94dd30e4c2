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

"""Orchestration of reads and single-resource writes on collections.

Every write follows the same steps: look the resource up, transform its
text, write it with a version precondition and invalidate the cached
listing of the collection it lives in.
"""

import asyncio
import collections
import logging
from typing import Callable, Optional

from .cache import CollectionCache
from .concurrency import ConcurrencyController
from .errors import ConflictError, NotFoundError, ValidationError
from .retry import RetryExecutor
from .store import (
    Collection,
    File,
    InvalidFileContents,
    ResourceHandle,
    TimeRange,
    collection_url_for,
    matches_collection,
)

logger = logging.getLogger(__name__)

ALL_COLLECTIONS = "all"


MutationResult = collections.namedtuple(
    "MutationResult", ["handle", "warnings"])


class CollectionService:
    """Base class for the calendar and address book services.

    Subclasses set the collection kind and file handler and provide
    `build` and `transform`.
    """

    kind: str
    resource_type: str
    collection_noun: str
    file_class: type[File]
    extension: str
    # Patch fields that qualify the others without changing anything.
    patch_options: tuple[str, ...] = ()

    def __init__(self, client, cache: Optional[CollectionCache] = None,
                 retry: Optional[RetryExecutor] = None,
                 default_collection: Optional[str] = None) -> None:
        self.client = client
        self.cache = cache if cache is not None else CollectionCache()
        self.retry = retry if retry is not None else RetryExecutor()
        self.default_collection = default_collection
        self.controller = ConcurrencyController(
            client, self.retry, self.file_class, self.resource_type)
        self._collections: Optional[list[Collection]] = None

    def build(self, input) -> tuple[str, str]:
        """Return (text, uid) of a new resource."""
        raise NotImplementedError(self.build)

    def transform(self, raw: str, patch) -> str:
        raise NotImplementedError(self.transform)

    def warnings_for(self, handle: ResourceHandle) -> list:
        return []

    def changed_fields(self, patch) -> list[str]:
        return [name for (name, value) in patch._asdict().items()
                if value is not None and name not in self.patch_options]

    async def refresh_collections(self) -> list[Collection]:
        self._collections = await self.retry.run(
            lambda: self.client.discover(self.kind),
            f"discover {self.collection_noun}s")
        return self._collections

    async def list_collections(self) -> list[Collection]:
        if self._collections is None:
            return await self.refresh_collections()
        return self._collections

    async def resolve_collections(
            self, selector: Optional[str] = None) -> list[Collection]:
        """Resolve a collection selector.

        An explicit selector (display name or URL) wins over the configured
        default; without either, or with "all", every collection is used.

        Raises:
          NotFoundError: if nothing matches the selector
        """
        selector = selector or self.default_collection
        collections = await self.list_collections()
        if not selector or selector.lower() == ALL_COLLECTIONS:
            return collections
        matches = [c for c in collections if matches_collection(c, selector)]
        if not matches:
            available = ", ".join(
                repr(c.displayname or c.url) for c in collections)
            raise NotFoundError(
                self.collection_noun, selector,
                f"Available {self.collection_noun}s: {available or 'none'}.")
        return matches

    async def resolve_target(self, selector: Optional[str] = None) -> Collection:
        """Pick the collection a new resource is created in."""
        collections = await self.resolve_collections(selector)
        if not collections:
            raise NotFoundError(
                self.collection_noun, selector or ALL_COLLECTIONS,
                f"Create a {self.collection_noun} on the server first.")
        return collections[0]

    def _with_uid(self, handle: ResourceHandle) -> ResourceHandle:
        if handle.uid is not None:
            return handle
        try:
            return handle._replace(uid=self.file_class(handle.raw).get_uid())
        except (KeyError, InvalidFileContents) as exc:
            logger.warning("Unable to determine UID of %s: %s", handle.url, exc)
            return handle

    async def _fetch(self, collection: Collection,
                     time_range: Optional[TimeRange] = None):
        handles = await self.retry.run(
            lambda: self.client.fetch_resources(collection, time_range),
            f"list {collection.url}")
        return [self._with_uid(h) for h in handles]

    async def fetch_objects(self, collection: Collection,
                            time_range: Optional[TimeRange] = None
                            ) -> list[ResourceHandle]:
        """List the members of a collection.

        Full listings are served from the cache while the collection's ctag
        is unchanged. Time-ranged listings always go to the server.
        """
        if time_range is not None:
            return await self._fetch(collection, time_range)
        async with self.cache.lock(collection.url):
            ctag = await self.retry.run(
                lambda: self.client.get_ctag(collection.url),
                f"get ctag of {collection.url}")
            if self.cache.is_fresh(collection.url, ctag):
                logger.debug("Cache hit for %s", collection.url)
                return list(self.cache.get(collection.url).objects)
            generation = self.cache.generation(collection.url)
            handles = await self._fetch(collection)
            self.cache.set(collection.url, ctag, handles, generation)
            return handles

    async def fetch_all(self, time_range: Optional[TimeRange] = None,
                        collection: Optional[str] = None
                        ) -> list[ResourceHandle]:
        collections = await self.resolve_collections(collection)
        listings = await asyncio.gather(
            *[self.fetch_objects(c, time_range) for c in collections])
        return [handle for listing in listings for handle in listing]

    async def find_by_uid(self, uid: str,
                          collection: Optional[str] = None) -> ResourceHandle:
        if not uid:
            raise ValidationError(
                "uid", f"A {self.resource_type} UID is required.")
        for c in await self.resolve_collections(collection):
            for handle in await self.fetch_objects(c):
                if handle.uid == uid:
                    return handle
        raise NotFoundError(self.resource_type, uid)

    def _invalidate(self, handle: ResourceHandle) -> None:
        self.cache.invalidate(collection_url_for(handle.url))

    async def create(self, input, collection: Optional[str] = None
                     ) -> MutationResult:
        (text, uid) = self.build(input)
        target = await self.resolve_target(collection)
        try:
            handle = await self.controller.create(
                target.url, text, uid + self.extension, uid)
        finally:
            self.cache.invalidate(target.url)
        logger.info("Created %s %s at %s", self.resource_type, uid, handle.url)
        return MutationResult(handle, self.warnings_for(handle))

    async def _mutate(self, uid: str, collection: Optional[str],
                      transform: Callable[[str], str]) -> MutationResult:
        handle = await self.find_by_uid(uid, collection)
        try:
            if handle.raw is None:
                handle = await self.controller.refetch(handle.url, handle.uid)
            # A missing etag is fetched by the controller, which also checks
            # that the text transformed here is still current.
            text = transform(handle.raw)
            new = await self.controller.update(handle, text)
        except ConflictError:
            self._invalidate(handle)
            raise
        self._invalidate(new)
        logger.info("Updated %s %s", self.resource_type, uid)
        return MutationResult(new, self.warnings_for(new))

    async def update(self, uid: str, patch,
                     collection: Optional[str] = None) -> MutationResult:
        """Change the given fields of a resource, keeping everything else.

        Raises:
          ValidationError: if the patch changes nothing
          NotFoundError: if there is no resource with this UID
          ConflictError: if it was changed or deleted by someone else
        """
        if not self.changed_fields(patch):
            raise ValidationError(
                None, "No fields to update were provided.",
                f"Specify at least one field of the {self.resource_type} "
                "to change.")
        return await self._mutate(
            uid, collection, lambda raw: self.transform(raw, patch))

    async def delete(self, uid: str, collection: Optional[str] = None) -> None:
        handle = await self.find_by_uid(uid, collection)
        try:
            await self.controller.delete(handle)
        finally:
            self._invalidate(handle)
        logger.info("Deleted %s %s", self.resource_type, uid)
