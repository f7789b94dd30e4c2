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

"""WebDAV wire client.

Speaks just enough WebDAV, CalDAV (RFC 4791) and CardDAV (RFC 6352) to
discover collections, list and fetch their members, write single resources
with preconditions and run free-busy queries.
"""

import collections
import logging
import urllib.parse
from datetime import datetime, timezone
from typing import Optional
# defusedxml only covers parsing; documents are built with ElementTree.
from xml.etree import ElementTree as ET

import aiohttp
from defusedxml import DefusedXmlException
from defusedxml.ElementTree import ParseError
from defusedxml.ElementTree import fromstring as xmlparse
from multidict import CIMultiDict

from .errors import RemoteError
from .store import (
    COLLECTION_TYPE_ADDRESSBOOK,
    COLLECTION_TYPE_CALENDAR,
    Collection,
    ResourceHandle,
    TimeRange,
    guess_content_type,
)

logger = logging.getLogger(__name__)

CALDAV_NAMESPACE = "urn:ietf:params:xml:ns:caldav"
CARDDAV_NAMESPACE = "urn:ietf:params:xml:ns:carddav"
CALENDARSERVER_NAMESPACE = "http://calendarserver.org/ns/"

ET.register_namespace("D", "DAV:")
ET.register_namespace("C", CALDAV_NAMESPACE)
ET.register_namespace("CR", CARDDAV_NAMESPACE)
ET.register_namespace("CS", CALENDARSERVER_NAMESPACE)

COLLECTION_RESOURCE_TYPES = {
    COLLECTION_TYPE_CALENDAR: "{%s}calendar" % CALDAV_NAMESPACE,
    COLLECTION_TYPE_ADDRESSBOOK: "{%s}addressbook" % CARDDAV_NAMESPACE,
}

HOME_SET_PROPERTIES = {
    COLLECTION_TYPE_CALENDAR: "{%s}calendar-home-set" % CALDAV_NAMESPACE,
    COLLECTION_TYPE_ADDRESSBOOK: "{%s}addressbook-home-set" % CARDDAV_NAMESPACE,
}

GETCTAG = "{%s}getctag" % CALENDARSERVER_NAMESPACE

DEFAULT_TIMEOUT = 30.0


DAVResponse = collections.namedtuple(
    "DAVResponse", ["status", "etag", "body", "headers"])


class MultiStatusEntry(collections.namedtuple(
        "MultiStatusEntry", ["href", "status", "props"])):

    def prop_text(self, name: str) -> Optional[str]:
        el = self.props.get(name)
        if el is None:
            return None
        return el.text


class InvalidResponse(Exception):
    """The server sent a body that could not be interpreted."""


def format_utc(dt: datetime) -> str:
    """Format a datetime as an iCalendar UTC DATE-TIME."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _parse_status(text: Optional[str]) -> int:
    # "HTTP/1.1 200 OK"
    if not text:
        return 200
    try:
        return int(text.split()[1])
    except (IndexError, ValueError):
        return 500


def read_href_element(et: ET.Element) -> Optional[str]:
    if et is None or et.text is None:
        return None
    return urllib.parse.unquote(et.text.strip())


def parse_multistatus(body) -> list[MultiStatusEntry]:
    """Parse a DAV:multistatus body.

    Returns: list of MultiStatusEntry; props maps property tags to elements
        and only includes properties reported with a 2xx status
    """
    try:
        root = xmlparse(body)
    except (ParseError, DefusedXmlException) as exc:
        raise InvalidResponse(f"Malformed multistatus body: {exc}") from exc
    if root.tag != "{DAV:}multistatus":
        raise InvalidResponse(f"Expected multistatus, got {root.tag}")
    ret = []
    for response in root.findall("{DAV:}response"):
        href = read_href_element(response.find("{DAV:}href"))
        status = _parse_status(response.findtext("{DAV:}status"))
        props = {}
        for propstat in response.findall("{DAV:}propstat"):
            if not 200 <= _parse_status(propstat.findtext("{DAV:}status")) < 300:
                continue
            for prop in propstat.findall("{DAV:}prop"):
                for el in prop:
                    props[el.tag] = el
        ret.append(MultiStatusEntry(href, status, props))
    return ret


def propfind_body(props) -> bytes:
    propfind = ET.Element("{DAV:}propfind")
    prop = ET.SubElement(propfind, "{DAV:}prop")
    for name in props:
        ET.SubElement(prop, name)
    return ET.tostring(propfind, encoding="utf-8")


def calendar_query_body(time_range: Optional[TimeRange] = None) -> bytes:
    query = ET.Element("{%s}calendar-query" % CALDAV_NAMESPACE)
    prop = ET.SubElement(query, "{DAV:}prop")
    ET.SubElement(prop, "{DAV:}getetag")
    ET.SubElement(prop, "{%s}calendar-data" % CALDAV_NAMESPACE)
    filter = ET.SubElement(query, "{%s}filter" % CALDAV_NAMESPACE)
    vcalendar = ET.SubElement(
        filter, "{%s}comp-filter" % CALDAV_NAMESPACE, name="VCALENDAR")
    vevent = ET.SubElement(
        vcalendar, "{%s}comp-filter" % CALDAV_NAMESPACE, name="VEVENT")
    if time_range is not None:
        ET.SubElement(
            vevent, "{%s}time-range" % CALDAV_NAMESPACE,
            start=format_utc(time_range.start), end=format_utc(time_range.end))
    return ET.tostring(query, encoding="utf-8")


def addressbook_query_body() -> bytes:
    query = ET.Element("{%s}addressbook-query" % CARDDAV_NAMESPACE)
    prop = ET.SubElement(query, "{DAV:}prop")
    ET.SubElement(prop, "{DAV:}getetag")
    ET.SubElement(prop, "{%s}address-data" % CARDDAV_NAMESPACE)
    return ET.tostring(query, encoding="utf-8")


def free_busy_query_body(start: datetime, end: datetime) -> bytes:
    query = ET.Element("{%s}free-busy-query" % CALDAV_NAMESPACE)
    ET.SubElement(
        query, "{%s}time-range" % CALDAV_NAMESPACE,
        start=format_utc(start), end=format_utc(end))
    return ET.tostring(query, encoding="utf-8")


class DAVClient:
    """Wire client talking to a real server over aiohttp.

    Args:
      url: Server (or principal) URL
      username: Basic auth user name
      password: Basic auth password
      timeout: Total timeout for a single request, in seconds
    """

    def __init__(self, url: str, username: Optional[str] = None,
                 password: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[aiohttp.ClientSession] = None) -> None:
        self.url = url
        if username is not None:
            self._auth = aiohttp.BasicAuth(username, password or "")
        else:
            self._auth = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                auth=self._auth, timeout=self._timeout)
        return self._session

    def absolute(self, href: str) -> str:
        return urllib.parse.urljoin(self.url, href)

    async def request(self, method: str, url: str, body=None,
                      headers=None) -> DAVResponse:
        url = self.absolute(url)
        logger.debug("%s %s", method, url)
        async with self._get_session().request(
                method, url, data=body, headers=headers) as resp:
            text = await resp.text()
            return DAVResponse(
                resp.status, resp.headers.get("ETag"), text,
                CIMultiDict(resp.headers))

    async def propfind(self, url: str, props, depth: str = "0"):
        response = await self.request(
            "PROPFIND", url, body=propfind_body(props),
            headers={"Depth": depth,
                     "Content-Type": "application/xml; charset=utf-8"})
        if response.status != 207:
            raise RemoteError("list properties", response.status, url)
        return parse_multistatus(response.body)

    async def _find_href(self, url: str, prop: str) -> str:
        try:
            entries = await self.propfind(url, [prop])
        except InvalidResponse as exc:
            logger.warning("Unable to read %s from %s: %s", prop, url, exc)
            return url
        for entry in entries:
            el = entry.props.get(prop)
            if el is not None:
                href = read_href_element(el.find("{DAV:}href"))
                if href:
                    return self.absolute(href)
        return url

    async def discover(self, kind: str) -> list[Collection]:
        """Find the calendars or address books of the current user."""
        principal = await self._find_href(
            self.url, "{DAV:}current-user-principal")
        home = await self._find_href(principal, HOME_SET_PROPERTIES[kind])
        entries = await self.propfind(
            home, ["{DAV:}resourcetype", "{DAV:}displayname", GETCTAG],
            depth="1")
        wanted = COLLECTION_RESOURCE_TYPES[kind]
        collections = []
        for entry in entries:
            resourcetype = entry.props.get("{DAV:}resourcetype")
            if resourcetype is None or resourcetype.find(wanted) is None:
                continue
            collections.append(Collection(
                self.absolute(entry.href),
                entry.prop_text("{DAV:}displayname"),
                entry.prop_text(GETCTAG),
                kind))
        logger.info("Discovered %d %s collection(s) under %s",
                    len(collections), kind, home)
        return collections

    async def get_ctag(self, collection_url: str) -> Optional[str]:
        entries = await self.propfind(
            collection_url, [GETCTAG, "{DAV:}sync-token"])
        for entry in entries:
            for name in (GETCTAG, "{DAV:}sync-token"):
                el = entry.props.get(name)
                if el is not None and el.text:
                    return el.text
        return None

    async def fetch_resources(self, collection: Collection,
                              time_range: Optional[TimeRange] = None
                              ) -> list[ResourceHandle]:
        """List every member of a collection with its text and etag.

        UIDs are left unset; the caller parses them from the text.
        """
        if collection.kind == COLLECTION_TYPE_CALENDAR:
            body = calendar_query_body(time_range)
            data_tag = "{%s}calendar-data" % CALDAV_NAMESPACE
        else:
            body = addressbook_query_body()
            data_tag = "{%s}address-data" % CARDDAV_NAMESPACE
        response = await self.request(
            "REPORT", collection.url, body=body,
            headers={"Depth": "1",
                     "Content-Type": "application/xml; charset=utf-8"})
        if response.status != 207:
            raise RemoteError("list collection", response.status, collection.url)
        ret = []
        for entry in parse_multistatus(response.body):
            data = entry.props.get(data_tag)
            if data is None or not data.text:
                continue
            etag = entry.props.get("{DAV:}getetag")
            ret.append(ResourceHandle(
                None, self.absolute(entry.href),
                etag.text if etag is not None else None, data.text))
        return ret

    async def get_resource(self, url: str) -> DAVResponse:
        return await self.request("GET", url)

    async def create_resource(self, collection_url: str, text: str,
                              filename: str) -> DAVResponse:
        url = urllib.parse.urljoin(collection_url, filename)
        return await self.request(
            "PUT", url, body=text.encode("utf-8"),
            headers={"If-None-Match": "*",
                     "Content-Type": _content_type(filename)})

    async def update_resource(self, handle: ResourceHandle,
                              text: str) -> DAVResponse:
        headers = {"Content-Type": _content_type(handle.url)}
        if handle.etag:
            headers["If-Match"] = handle.etag
        return await self.request(
            "PUT", handle.url, body=text.encode("utf-8"), headers=headers)

    async def delete_resource(self, handle: ResourceHandle) -> DAVResponse:
        headers = {}
        if handle.etag:
            headers["If-Match"] = handle.etag
        return await self.request("DELETE", handle.url, headers=headers)

    async def free_busy_query(self, collection_url: str, start: datetime,
                              end: datetime) -> DAVResponse:
        return await self.request(
            "REPORT", collection_url, body=free_busy_query_body(start, end),
            headers={"Depth": "1",
                     "Content-Type": "application/xml; charset=utf-8"})

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()


def _content_type(name: str) -> str:
    content_type = guess_content_type(name) or "text/calendar"
    return content_type + "; charset=utf-8"
