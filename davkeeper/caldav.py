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

"""Calendar (CalDAV) event service.

https://tools.ietf.org/html/rfc4791
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from .errors import SchedulingSideEffectWarning
from .icalendar import (
    EventInput,
    EventOccurrence,
    EventPatch,
    ICalendarFile,
    add_alarm,
    build_event,
    get_attendees,
    iter_instances,
    occurrence_from_component,
    patch_event,
    remove_alarm,
)
from .service import CollectionService, MutationResult
from .store import (
    COLLECTION_TYPE_CALENDAR,
    InvalidFileContents,
    ResourceHandle,
    TimeRange,
)

logger = logging.getLogger(__name__)


class CalendarService(CollectionService):
    """Create, change and delete events in calendar collections."""

    kind = COLLECTION_TYPE_CALENDAR
    resource_type = "event"
    collection_noun = "calendar"
    file_class = ICalendarFile
    extension = ".ics"
    patch_options = ("timezone", )

    def build(self, input: EventInput) -> tuple[str, str]:
        uid = str(uuid.uuid4())
        return (build_event(input, uid=uid), uid)

    def transform(self, raw: str, patch: EventPatch) -> str:
        return patch_event(raw, patch)

    def warnings_for(self, handle: ResourceHandle) -> list:
        try:
            attendees = get_attendees(ICalendarFile(handle.raw).get_event())
        except InvalidFileContents:
            return []
        if attendees:
            return [SchedulingSideEffectWarning(handle.uid, attendees)]
        return []

    async def add_alarm(self, uid: str, trigger: str,
                        description: Optional[str] = None,
                        collection: Optional[str] = None) -> MutationResult:
        """Add a reminder to an event."""
        return await self._mutate(
            uid, collection,
            lambda raw: add_alarm(raw, trigger, description))

    async def remove_alarm(self, uid: str, index: Optional[int] = None,
                           collection: Optional[str] = None) -> MutationResult:
        """Remove one reminder (0-based index) or all reminders of an event."""
        return await self._mutate(
            uid, collection, lambda raw: remove_alarm(raw, index))

    async def list_occurrences(self, start: datetime, end: datetime,
                               collection: Optional[str] = None,
                               tz=timezone.utc) -> list[EventOccurrence]:
        """List the event instances overlapping a range, sorted by start.

        Recurring events are expanded; floating and all-day values are
        interpreted in tz.
        """
        ret = []
        for handle in await self.fetch_all(TimeRange(start, end), collection):
            try:
                cal = ICalendarFile(handle.raw).calendar
            except InvalidFileContents as exc:
                logger.warning("Skipping unparsable %s: %s", handle.url, exc)
                continue
            for (comp, s, e) in iter_instances(cal, start, end, tz):
                ret.append(occurrence_from_component(comp, s, e))
        ret.sort(key=lambda o: (o.start, o.summary))
        return ret
