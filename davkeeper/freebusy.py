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

"""Availability (free/busy) lookups.

The server is asked first, using a free-busy-query REPORT (RFC 4791,
section 7.10). Servers that do not support it, or answer with something
unusable, are handled by computing busy time from the events themselves.
"""

import collections
import logging
from datetime import datetime, timezone
from typing import Optional

from icalendar.cal import Calendar

from .errors import NetworkError, ValidationError
from .icalendar import ICalendarFile, as_tz_aware_ts, iter_instances
from .store import InvalidFileContents, TimeRange

logger = logging.getLogger(__name__)

STATUS_BUSY = "busy"
STATUS_TENTATIVE = "tentative"
STATUS_UNAVAILABLE = "unavailable"
STATUS_FREE = "free"

STATUS_BY_FBTYPE = {
    "BUSY": STATUS_BUSY,
    "BUSY-TENTATIVE": STATUS_TENTATIVE,
    "BUSY-UNAVAILABLE": STATUS_UNAVAILABLE,
    "FREE": STATUS_FREE,
}

# Higher wins when periods are merged.
STATUS_STRENGTH = {
    STATUS_TENTATIVE: 1,
    STATUS_BUSY: 2,
    STATUS_UNAVAILABLE: 3,
}

# Statuses meaning "this server does not do free-busy-query".
FALLBACK_STATUSES = frozenset([400, 403, 404, 405, 415, 501])

PATH_SERVER = "server"
PATH_FALLBACK = "fallback"


AvailabilityPeriod = collections.namedtuple(
    "AvailabilityPeriod", ["start", "end", "status"])


AvailabilityResult = collections.namedtuple(
    "AvailabilityResult", ["periods", "range", "path"])


class ServerQueryFailed(Exception):
    """The server-side query can not be used; compute locally instead."""


def map_freebusy(comp):
    """Return the FBTYPE an event contributes, or "FREE"."""
    transp = str(comp.get("TRANSP", "OPAQUE")).upper()
    if transp == "TRANSPARENT":
        return "FREE"
    status = str(comp.get("STATUS", "CONFIRMED")).upper()
    if status == "CANCELLED":
        return "FREE"
    elif status == "TENTATIVE":
        return "BUSY-TENTATIVE"
    elif status.startswith("X-"):
        return status
    return "BUSY"


def clip(period: AvailabilityPeriod, start: datetime,
         end: datetime) -> Optional[AvailabilityPeriod]:
    s = max(period.start, start)
    e = min(period.end, end)
    if s >= e:
        return None
    return AvailabilityPeriod(s, e, period.status)


def merge_periods(periods) -> list[AvailabilityPeriod]:
    """Merge overlapping periods, keeping the strongest status.

    Touching periods are only joined when their status is the same.
    Returns: periods ordered by start, non-overlapping
    """
    ret = []
    for period in sorted(periods, key=lambda p: (p.start, p.end)):
        if ret:
            last = ret[-1]
            if period.start < last.end or (
                    period.start == last.end and period.status == last.status):
                status = max(
                    (last.status, period.status),
                    key=lambda s: STATUS_STRENGTH.get(s, 0))
                ret[-1] = AvailabilityPeriod(
                    last.start, max(last.end, period.end), status)
                continue
        ret.append(period)
    return ret


def iter_calendar_periods(cal: Calendar, start: datetime, end: datetime,
                          tz=timezone.utc):
    """Iterate over the busy periods contributed by a calendar object."""
    for (comp, s, e) in iter_instances(cal, start, end, tz):
        kind = map_freebusy(comp)
        if kind == "FREE":
            continue
        period = clip(
            AvailabilityPeriod(s, e, STATUS_BY_FBTYPE.get(kind, STATUS_BUSY)),
            start, end)
        if period is not None:
            yield period


def parse_freebusy_response(body: str, start: datetime,
                            end: datetime) -> list[AvailabilityPeriod]:
    """Parse the VCALENDAR returned by a free-busy-query.

    FREE periods are dropped; everything else is clipped to the range.

    Raises:
      ServerQueryFailed: if the body is empty or holds no VFREEBUSY
    """
    if not body or not body.strip():
        raise ServerQueryFailed("empty free-busy response")
    try:
        cal = Calendar.from_ical(body)
    except ValueError as exc:
        raise ServerQueryFailed(f"malformed free-busy response: {exc}") from exc
    components = cal.walk("VFREEBUSY")
    if not components:
        raise ServerQueryFailed("no VFREEBUSY in free-busy response")
    ret = []
    for comp in components:
        props = comp.get("FREEBUSY", [])
        if not isinstance(props, list):
            props = [props]
        for prop in props:
            status = STATUS_BY_FBTYPE.get(
                str(prop.params.get("FBTYPE", "BUSY")).upper(), STATUS_BUSY)
            if status == STATUS_FREE:
                continue
            for period in getattr(prop, "dts", [prop]):
                value = period.dt
                if not isinstance(value, tuple):
                    raise ServerQueryFailed(f"unexpected FREEBUSY value {value!r}")
                (s, e) = value
                s = as_tz_aware_ts(s, timezone.utc)
                if not isinstance(e, datetime):
                    e = s + e
                e = as_tz_aware_ts(e, timezone.utc)
                p = clip(AvailabilityPeriod(s, e, status), start, end)
                if p is not None:
                    ret.append(p)
    return ret


class AvailabilityResolver:
    """Answer "when is this calendar busy?".

    Args:
      calendars: CalendarService used to resolve and list calendars
      tz: Timezone for floating and all-day values
    """

    def __init__(self, calendars, tz=timezone.utc) -> None:
        self.calendars = calendars
        self.tz = tz

    async def query(self, start: datetime, end: datetime,
                    collection: Optional[str] = None) -> AvailabilityResult:
        """Compute busy periods between start and end.

        Never fails because the server lacks free-busy support.

        Raises:
          ValidationError: if the range is empty or reversed
          NotFoundError: if the named calendar does not exist
        """
        start = as_tz_aware_ts(start, self.tz).astimezone(timezone.utc)
        end = as_tz_aware_ts(end, self.tz).astimezone(timezone.utc)
        if end <= start:
            raise ValidationError(
                "end", "The end of the range must be after its start.")
        collections = await self.calendars.resolve_collections(collection)
        try:
            periods = await self._server_query(collections, start, end)
            path = PATH_SERVER
        except ServerQueryFailed as exc:
            logger.info("Computing availability locally: %s", exc)
            periods = await self._local_query(collection, start, end)
            path = PATH_FALLBACK
        return AvailabilityResult(
            merge_periods(periods), TimeRange(start, end), path)

    async def _server_query(self, collections, start, end):
        client = self.calendars.client
        retry = self.calendars.retry
        periods = []
        for collection in collections:
            try:
                response = await retry.run(
                    lambda url=collection.url: client.free_busy_query(
                        url, start, end),
                    f"free-busy query on {collection.url}")
            except NetworkError as exc:
                raise ServerQueryFailed(str(exc)) from exc
            if response.status in FALLBACK_STATUSES:
                raise ServerQueryFailed(
                    f"free-busy query not supported (HTTP {response.status})")
            if not 200 <= response.status < 300:
                raise ServerQueryFailed(
                    f"free-busy query failed (HTTP {response.status})")
            periods.extend(parse_freebusy_response(response.body, start, end))
        return periods

    async def _local_query(self, collection, start, end):
        handles = await self.calendars.fetch_all(
            TimeRange(start, end), collection=collection)
        periods = []
        for handle in handles:
            try:
                cal = ICalendarFile(handle.raw).calendar
            except InvalidFileContents as exc:
                logger.warning("Skipping unparsable %s: %s", handle.url, exc)
                continue
            periods.extend(iter_calendar_periods(cal, start, end, self.tz))
        return periods
