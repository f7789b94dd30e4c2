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

"""Optimistic concurrency control for single-resource writes.

Creates carry "If-None-Match: *", updates and deletes carry
"If-Match: <etag>". Server responses are turned into one of a closed set
of outcomes before anything else looks at them.
"""

import collections
import logging
from typing import Optional
from urllib.parse import urljoin

from .errors import ConflictError, DuplicateResourceError, RemoteError
from .retry import RetryExecutor
from .store import File, InvalidFileContents, ResourceHandle

logger = logging.getLogger(__name__)


Success = collections.namedtuple("Success", ["etag"])
SuccessWithoutToken = collections.namedtuple("SuccessWithoutToken", [])
Conflict = collections.namedtuple("Conflict", ["status"])
NotFound = collections.namedtuple("NotFound", [])
OtherError = collections.namedtuple("OtherError", ["status"])


def classify(response):
    """Turn a DAVResponse into an outcome."""
    if 200 <= response.status < 300:
        if response.etag:
            return Success(response.etag)
        return SuccessWithoutToken()
    if response.status == 412:
        return Conflict(response.status)
    if response.status == 404:
        return NotFound()
    return OtherError(response.status)


class ConcurrencyController:
    """Perform writes with version preconditions.

    Args:
      client: Wire client (DAVClient or MemoryDAVClient)
      retry: RetryExecutor used for every remote call
      file_class: File subclass used to read UIDs from fetched text
      resource_type: Noun used in error messages ("event", "contact")
    """

    def __init__(self, client, retry: RetryExecutor, file_class: type[File],
                 resource_type: str) -> None:
        self.client = client
        self.retry = retry
        self.file_class = file_class
        self.resource_type = resource_type

    async def _get(self, url: str):
        return await self.retry.run(
            lambda: self.client.get_resource(url),
            f"fetch {self.resource_type} {url}")

    def _uid_of(self, text: str) -> Optional[str]:
        try:
            return self.file_class(text).get_uid()
        except (KeyError, InvalidFileContents):
            return None

    async def refetch(self, url: str, uid: Optional[str] = None) -> ResourceHandle:
        """Fetch the authoritative text and version token of a resource."""
        response = await self._get(url)
        outcome = classify(response)
        if isinstance(outcome, NotFound):
            raise ConflictError(
                self.resource_type, url,
                detail="It no longer exists on the server.")
        if isinstance(outcome, OtherError):
            raise RemoteError(f"fetch {self.resource_type}", response.status, url)
        if uid is None:
            uid = self._uid_of(response.body)
        return ResourceHandle(uid, url, response.etag, response.body)

    async def ensure_token(self, handle: ResourceHandle) -> ResourceHandle:
        """Make sure a handle carries a version token.

        A handle without one is re-fetched once. If the text on the server
        no longer matches what the handle was read as, that is a conflict.
        """
        if handle.etag:
            return handle
        logger.debug("No etag for %s, re-fetching", handle.url)
        fresh = await self.refetch(handle.url, handle.uid)
        if handle.raw is not None and fresh.raw != handle.raw:
            raise ConflictError(self.resource_type, handle.url)
        if not fresh.etag:
            logger.warning(
                "Server did not provide an etag for %s; writing without a "
                "precondition", handle.url)
        return fresh

    async def create(self, collection_url: str, text: str, filename: str,
                     uid: str) -> ResourceHandle:
        """Create a new resource; never overwrites an existing one.

        A precondition failure on a resource carrying our own UID means an
        earlier attempt of this very create already went through.
        """
        url = urljoin(collection_url, filename)
        response = await self.retry.run(
            lambda: self.client.create_resource(collection_url, text, filename),
            f"create {self.resource_type}")
        outcome = classify(response)
        if isinstance(outcome, Success):
            return ResourceHandle(uid, url, outcome.etag, text)
        if isinstance(outcome, SuccessWithoutToken):
            return await self.refetch(url, uid)
        if isinstance(outcome, Conflict):
            existing = await self._get(url)
            if 200 <= existing.status < 300 and \
                    self._uid_of(existing.body) == uid:
                logger.info("Create of %s already applied", url)
                return ResourceHandle(uid, url, existing.etag, existing.body)
            raise DuplicateResourceError(self.resource_type, url)
        if response.status == 409:
            # The server already holds another resource with this UID.
            raise DuplicateResourceError(self.resource_type, url)
        raise RemoteError(
            f"create {self.resource_type}", response.status, collection_url)

    async def update(self, handle: ResourceHandle, text: str) -> ResourceHandle:
        """Replace a resource, provided nobody changed it since it was read.

        A precondition failure on a resource that already holds exactly
        the new text means an earlier attempt of this update went through.

        Raises:
          ConflictError: on a failed precondition, or if it vanished
          RemoteError: on any other failure status
        """
        handle = await self.ensure_token(handle)
        response = await self.retry.run(
            lambda: self.client.update_resource(handle, text),
            f"update {self.resource_type} {handle.url}")
        outcome = classify(response)
        if isinstance(outcome, Success):
            return ResourceHandle(handle.uid, handle.url, outcome.etag, text)
        if isinstance(outcome, SuccessWithoutToken):
            return await self.refetch(handle.url, handle.uid)
        if isinstance(outcome, Conflict):
            current = await self._get(handle.url)
            if 200 <= current.status < 300 and current.body == text:
                logger.info("Update of %s already applied", handle.url)
                return ResourceHandle(
                    handle.uid, handle.url, current.etag, current.body)
            raise ConflictError(self.resource_type, handle.url, handle.etag)
        if isinstance(outcome, NotFound):
            raise ConflictError(
                self.resource_type, handle.url, handle.etag,
                detail="It was deleted on the server.")
        raise RemoteError(
            f"update {self.resource_type}", response.status, handle.url)

    async def delete(self, handle: ResourceHandle) -> None:
        """Delete a resource; a resource that is already gone is fine.

        Deletes are never issued without a version precondition.

        Raises:
          ConflictError: on a failed precondition, or if no version token
            can be obtained
          RemoteError: on any other failure status
        """
        if not handle.etag:
            response = await self._get(handle.url)
            outcome = classify(response)
            if isinstance(outcome, NotFound):
                logger.info("%s already absent", handle.url)
                return
            if isinstance(outcome, OtherError):
                raise RemoteError(
                    f"fetch {self.resource_type}", response.status, handle.url)
            if not response.etag:
                raise ConflictError(
                    self.resource_type, handle.url,
                    message=(
                        f"The {self.resource_type} can not be deleted "
                        "safely: the server did not report a version token "
                        "for it."),
                    hint="Delete it with another client, or check that the "
                         "server reports ETags.")
            handle = handle._replace(etag=response.etag)
        response = await self.retry.run(
            lambda: self.client.delete_resource(handle),
            f"delete {self.resource_type} {handle.url}")
        outcome = classify(response)
        if isinstance(outcome, (Success, SuccessWithoutToken)):
            return
        if isinstance(outcome, NotFound):
            logger.info("%s already absent", handle.url)
            return
        if isinstance(outcome, Conflict):
            raise ConflictError(self.resource_type, handle.url, handle.etag)
        raise RemoteError(
            f"delete {self.resource_type}", response.status, handle.url)
