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

"""In-memory DAV server and client.

Implements the same interface as DAVClient against collections held in
memory, with the precondition semantics of a real server. Used by the
test-suite and for trying things out without a server.
"""

import collections
import logging
import urllib.parse
from datetime import datetime, timezone
from typing import Optional

from icalendar.cal import Calendar, FreeBusy
from icalendar.prop import vPeriod
from multidict import CIMultiDict

from . import PRODID
from .client import DAVResponse
from .freebusy import STATUS_BY_FBTYPE, iter_calendar_periods
from .icalendar import ICalendarFile, iter_occurrences
from .store import (
    COLLECTION_TYPE_CALENDAR,
    VALID_COLLECTION_TYPES,
    Collection,
    File,
    InvalidFileContents,
    ResourceHandle,
    TimeRange,
    guess_content_type,
    open_by_content_type,
)
from .vcard import VCardFile

logger = logging.getLogger(__name__)

FILE_HANDLERS: dict[str, type[File]] = {
    ICalendarFile.content_type: ICalendarFile,
    VCardFile.content_type: VCardFile,
}

FBTYPE_BY_STATUS = {v: k for (k, v) in STATUS_BY_FBTYPE.items()}


class NoSuchItem(Exception):
    """No such item."""

    def __init__(self, name) -> None:
        self.name = name


class InvalidETag(Exception):
    """Unexpected value for etag."""

    def __init__(self, name, expected_etag, got_etag) -> None:
        self.name = name
        self.expected_etag = expected_etag
        self.got_etag = got_etag


class DuplicateUidError(Exception):
    """UID already in use."""

    def __init__(self, uid, existing_name, new_name) -> None:
        self.uid = uid
        self.existing_name = existing_name
        self.new_name = new_name


class MemoryCollection:
    """A single calendar or address book held in memory."""

    def __init__(self, url: str, kind: str,
                 displayname: Optional[str] = None) -> None:
        if kind not in VALID_COLLECTION_TYPES:
            raise ValueError(f"invalid collection type {kind!r}")
        self.url = url
        self.kind = kind
        self.displayname = displayname
        self._items: dict[str, tuple[str, str]] = {}  # name -> (text, etag)
        self._uid_to_name: dict[str, str] = {}
        self._etag_counter = 0

    def _generate_etag(self) -> str:
        self._etag_counter += 1
        return f'"etag-{self._etag_counter:06d}"'

    def get_ctag(self) -> str:
        """Return a ctag representing current state."""
        return f"ctag-{len(self._items)}-{self._etag_counter}"

    def __contains__(self, name: str) -> bool:
        return name in self._items

    def get(self, name: str) -> tuple[str, str]:
        try:
            return self._items[name]
        except KeyError:
            raise NoSuchItem(name)

    def iter_items(self):
        for name, (text, etag) in self._items.items():
            yield (name, text, etag)

    def import_one(self, name: str, text: str,
                   replace_etag: Optional[str] = None,
                   must_not_exist: bool = False) -> str:
        """Store an item, checking preconditions.

        Raises:
          InvalidETag: if a precondition does not hold
          DuplicateUidError: if another item has the same UID
          InvalidFileContents: if text is not valid
        Returns: new etag
        """
        fi = open_by_content_type(
            text, guess_content_type(name) or "", FILE_HANDLERS)
        fi.validate()
        try:
            uid = fi.get_uid()
        except (KeyError, NotImplementedError):
            uid = None
        current_etag = self._items[name][1] if name in self._items else None
        if must_not_exist and current_etag is not None:
            raise InvalidETag(name, None, current_etag)
        if replace_etag is not None and current_etag != replace_etag:
            raise InvalidETag(name, replace_etag, current_etag)
        if uid is not None:
            existing_name = self._uid_to_name.get(uid)
            if existing_name is not None and existing_name != name:
                raise DuplicateUidError(uid, existing_name, name)
        etag = self._generate_etag()
        self._forget_uid(name)
        self._items[name] = (text, etag)
        if uid is not None:
            self._uid_to_name[uid] = name
        return etag

    def delete_one(self, name: str, etag: Optional[str] = None) -> None:
        if name not in self._items:
            raise NoSuchItem(name)
        current_etag = self._items[name][1]
        if etag is not None and current_etag != etag:
            raise InvalidETag(name, etag, current_etag)
        self._forget_uid(name)
        del self._items[name]
        self._etag_counter += 1

    def _forget_uid(self, name: str) -> None:
        for uid, existing in list(self._uid_to_name.items()):
            if existing == name:
                del self._uid_to_name[uid]


class MemoryDAVClient:
    """Wire client backed by in-memory collections.

    Args:
      base_url: URL under which collections are created
      free_busy_status: None to answer free-busy queries, or an HTTP status
          to fail them with (e.g. 501 for "not supported")
      free_busy_body: Fixed body to answer free-busy queries with
      write_etags: Whether PUT responses include an ETag header
      listing_etags: Whether listings include etags
      ctags: Whether collections report a ctag
    """

    def __init__(self, base_url: str = "https://dav.example.com/",
                 *, free_busy_status: Optional[int] = None,
                 free_busy_body: Optional[str] = None,
                 write_etags: bool = True,
                 listing_etags: bool = True,
                 ctags: bool = True) -> None:
        self.base_url = base_url
        self.free_busy_status = free_busy_status
        self.free_busy_body = free_busy_body
        self.write_etags = write_etags
        self.listing_etags = listing_etags
        self.ctags = ctags
        self.collections: dict[str, MemoryCollection] = {}
        # (method, url, headers) of every request seen
        self.requests: list[tuple[str, str, dict]] = []
        self._failures: dict[str, collections.deque] = collections.defaultdict(
            collections.deque)
        self._lost_responses: dict[str, int] = collections.Counter()
        self.closed = False

    def add_collection(self, name: str, kind: str = COLLECTION_TYPE_CALENDAR,
                       displayname: Optional[str] = None) -> Collection:
        if kind == COLLECTION_TYPE_CALENDAR:
            prefix = "calendars/"
        else:
            prefix = "addressbooks/"
        url = urllib.parse.urljoin(self.base_url, prefix + name + "/")
        self.collections[url] = MemoryCollection(url, kind, displayname or name)
        return self._describe(self.collections[url])

    def _describe(self, collection: MemoryCollection) -> Collection:
        return Collection(
            collection.url, collection.displayname,
            collection.get_ctag() if self.ctags else None, collection.kind)

    def _split(self, url: str) -> tuple[MemoryCollection, str]:
        (collection_url, _, name) = url.rpartition("/")
        try:
            return (self.collections[collection_url + "/"], name)
        except KeyError:
            raise NoSuchItem(url)

    def fail_next(self, operation: str, exc: BaseException,
                  times: int = 1) -> None:
        """Make the next calls of an operation raise exc before running."""
        for i in range(times):
            self._failures[operation].append(exc)

    def lose_next_response(self, operation: str, times: int = 1) -> None:
        """Apply the next calls of an operation, then drop the response."""
        self._lost_responses[operation] += times

    def _maybe_fail(self, operation: str) -> None:
        if self._failures[operation]:
            raise self._failures[operation].popleft()

    def _deliver(self, operation: str, response: DAVResponse) -> DAVResponse:
        if self._lost_responses[operation] > 0:
            self._lost_responses[operation] -= 1
            raise ConnectionResetError(
                f"connection lost while waiting for {operation} response")
        return response

    def _log(self, method: str, url: str, headers=None) -> None:
        self.requests.append((method, url, dict(headers or {})))

    @staticmethod
    def _response(status: int, etag: Optional[str] = None,
                  body: str = "") -> DAVResponse:
        headers = CIMultiDict()
        if etag is not None:
            headers["ETag"] = etag
        return DAVResponse(status, etag, body, headers)

    def put_external(self, url: str, text: str) -> str:
        """Write a resource as another client would; returns the new etag."""
        (collection, name) = self._split(url)
        return collection.import_one(name, text)

    def delete_external(self, url: str) -> None:
        (collection, name) = self._split(url)
        collection.delete_one(name)

    def get_text(self, url: str) -> Optional[str]:
        try:
            (collection, name) = self._split(url)
            return collection.get(name)[0]
        except NoSuchItem:
            return None

    async def discover(self, kind: str) -> list[Collection]:
        self._maybe_fail("discover")
        self._log("PROPFIND", self.base_url)
        return [self._describe(c) for c in self.collections.values()
                if c.kind == kind]

    async def get_ctag(self, collection_url: str) -> Optional[str]:
        self._maybe_fail("get_ctag")
        self._log("PROPFIND", collection_url)
        if not self.ctags:
            return None
        return self.collections[collection_url].get_ctag()

    async def fetch_resources(self, collection: Collection,
                              time_range: Optional[TimeRange] = None
                              ) -> list[ResourceHandle]:
        self._maybe_fail("fetch_resources")
        self._log("REPORT", collection.url)
        store = self.collections[collection.url]
        ret = []
        for (name, text, etag) in store.iter_items():
            if time_range is not None and store.kind == COLLECTION_TYPE_CALENDAR:
                cal = ICalendarFile(text).calendar
                if not any(
                        True for comp in cal.walk("VEVENT")
                        for _ in iter_occurrences(
                            comp, time_range.start, time_range.end)):
                    continue
            ret.append(ResourceHandle(
                None, store.url + name,
                etag if self.listing_etags else None, text))
        return ret

    async def get_resource(self, url: str) -> DAVResponse:
        self._maybe_fail("get_resource")
        self._log("GET", url)
        try:
            (collection, name) = self._split(url)
            (text, etag) = collection.get(name)
        except NoSuchItem:
            return self._response(404)
        return self._response(200, etag, text)

    def _put(self, url: str, text: str, replace_etag=None,
             must_not_exist=False) -> DAVResponse:
        try:
            (collection, name) = self._split(url)
            if replace_etag is not None and name not in collection:
                return self._response(404)
            etag = collection.import_one(
                name, text, replace_etag=replace_etag,
                must_not_exist=must_not_exist)
        except NoSuchItem:
            return self._response(404)
        except InvalidETag:
            return self._response(412)
        except DuplicateUidError:
            return self._response(409)
        except InvalidFileContents as exc:
            logger.debug("Rejecting invalid %s: %s", url, exc)
            return self._response(400)
        return self._response(201, etag if self.write_etags else None)

    async def create_resource(self, collection_url: str, text: str,
                              filename: str) -> DAVResponse:
        self._maybe_fail("create_resource")
        url = urllib.parse.urljoin(collection_url, filename)
        self._log("PUT", url, {"If-None-Match": "*"})
        return self._deliver(
            "create_resource", self._put(url, text, must_not_exist=True))

    async def update_resource(self, handle: ResourceHandle,
                              text: str) -> DAVResponse:
        self._maybe_fail("update_resource")
        headers = {"If-Match": handle.etag} if handle.etag else {}
        self._log("PUT", handle.url, headers)
        return self._deliver(
            "update_resource", self._put(handle.url, text, handle.etag))

    async def delete_resource(self, handle: ResourceHandle) -> DAVResponse:
        self._maybe_fail("delete_resource")
        headers = {"If-Match": handle.etag} if handle.etag else {}
        self._log("DELETE", handle.url, headers)
        try:
            (collection, name) = self._split(handle.url)
            collection.delete_one(name, handle.etag)
        except NoSuchItem:
            response = self._response(404)
        except InvalidETag:
            response = self._response(412)
        else:
            response = self._response(204)
        return self._deliver("delete_resource", response)

    async def free_busy_query(self, collection_url: str, start: datetime,
                              end: datetime) -> DAVResponse:
        self._maybe_fail("free_busy_query")
        self._log("REPORT", collection_url)
        if self.free_busy_status is not None:
            return self._response(self.free_busy_status)
        if self.free_busy_body is not None:
            return self._response(200, body=self.free_busy_body)
        store = self.collections.get(collection_url)
        if store is None:
            return self._response(404)
        ret = Calendar()
        ret["VERSION"] = "2.0"
        ret["PRODID"] = PRODID
        fb = FreeBusy()
        fb.add("DTSTAMP", datetime.now(timezone.utc))
        fb.add("DTSTART", start)
        fb.add("DTEND", end)
        for (name, text, etag) in store.iter_items():
            cal = ICalendarFile(text).calendar
            for period in iter_calendar_periods(cal, start, end):
                vp = vPeriod((period.start.astimezone(timezone.utc),
                              period.end.astimezone(timezone.utc)))
                if period.status != "busy":
                    vp.params["FBTYPE"] = FBTYPE_BY_STATUS[period.status]
                fb.add("FREEBUSY", vp, encode=0)
        ret.add_component(fb)
        return self._response(200, body=ret.to_ical().decode("utf-8"))

    async def close(self) -> None:
        self.closed = True
