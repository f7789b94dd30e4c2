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

"""ICalendar file handling.

Events are always changed by parsing the stored text, modifying the
properties that were asked for and serializing the complete tree again.
Nothing is ever rebuilt from the typed fields alone.
"""

import collections
import logging
import re
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import dateutil.rrule
from icalendar.cal import Alarm, Calendar, Component, Event
from icalendar.prop import vCalAddress, vDDDTypes, vRecur, vText

from . import PRODID
from .errors import RecurrenceLostError, ValidationError
from .store import File, InvalidFileContents

logger = logging.getLogger(__name__)

DateOrDatetime = Union[date, datetime]

# Based on RFC5545 section 3.3.11, CONTROL = %x00-08 / %x0A-1F / %x7F
# All control characters except HTAB (\x09) are forbidden
_INVALID_CONTROL_CHARACTERS = (
    [chr(i) for i in range(0x00, 0x09)]
    + [chr(i) for i in range(0x0A, 0x20)]
    + [chr(0x7F)]
)

DEFAULT_EVENT_LENGTH = timedelta(hours=1)


EventInput = collections.namedtuple(
    "EventInput",
    ["title", "start", "end", "description", "location", "all_day",
     "recurrence", "timezone", "attendees", "allow_scheduling"],
    defaults=[None, None, None, None, None, False, None, None, (), False])
EventInput.__doc__ = """Fields for a new event.

start and end are date or datetime objects; naive datetimes are interpreted
in `timezone` (or UTC). Attendees are only written when allow_scheduling is
set, since the server may invite them on our behalf.
"""


EventPatch = collections.namedtuple(
    "EventPatch",
    ["title", "start", "end", "description", "location", "recurrence",
     "timezone"],
    defaults=[None] * 7)
EventPatch.__doc__ = """Changes to an existing event.

None leaves a field untouched; an empty string removes it. Naive start and
end datetimes are interpreted in `timezone`, or in the zone of the stored
value when no timezone is given.
"""


class ICalendarFile(File):
    """Handle for ICalendar files."""

    content_type = "text/calendar"

    def __init__(self, content) -> None:
        super().__init__(content)
        self._calendar = None

    def validate(self) -> None:
        """Verify that file contents are valid."""
        cal = self.calendar
        if getattr(cal, "errors", None):
            raise InvalidFileContents(
                self.content_type, self.content,
                "Broken calendar file: " + ", ".join(map(str, cal.errors)))
        errors = list(validate_component(cal))
        if errors:
            raise InvalidFileContents(
                self.content_type, self.content, ", ".join(errors))

    @property
    def calendar(self) -> Calendar:
        if self._calendar is None:
            try:
                self._calendar = Calendar.from_ical(self.content)
            except ValueError as exc:
                raise InvalidFileContents(
                    self.content_type, self.content, str(exc)) from exc
        return self._calendar

    def serialize(self) -> str:
        return self.calendar.to_ical().decode("utf-8")

    def get_event(self) -> Component:
        """Return the master VEVENT.

        Overridden instances of a recurring series (those with a
        RECURRENCE-ID) are left alone; editing them is not supported.
        """
        events = self.calendar.walk("VEVENT")
        if not events:
            raise InvalidFileContents(
                self.content_type, self.content, "No VEVENT component found")
        for event in events:
            if "RECURRENCE-ID" not in event:
                return event
        return events[0]

    def get_uid(self) -> str:
        for component in self.calendar.subcomponents:
            try:
                return str(component["UID"])
            except KeyError:
                pass
        raise KeyError

    def describe(self, name):
        try:
            return str(self.get_event()["SUMMARY"])
        except (KeyError, InvalidFileContents):
            return super().describe(name)


def validate_component(comp):
    """Validate a calendar component.

    Args:
      comp: Calendar component
    Returns: iterator over error messages
    """
    for name, value in comp.items():
        if isinstance(value, vText):
            for c in _INVALID_CONTROL_CHARACTERS:
                if c in value:
                    yield "Invalid character {} in field {}".format(
                        c.encode("unicode_escape"), name)
    for subcomp in comp.subcomponents:
        yield from validate_component(subcomp)


def get_attendees(comp: Component) -> list[str]:
    """Return attendee names (CN when present, address otherwise)."""
    attendees = comp.get("ATTENDEE")
    if attendees is None:
        return []
    if not isinstance(attendees, list):
        attendees = [attendees]
    ret = []
    for attendee in attendees:
        cn = getattr(attendee, "params", {}).get("CN")
        if cn:
            ret.append(str(cn))
        else:
            ret.append(re.sub("^mailto:", "", str(attendee), flags=re.I))
    return ret


def as_tz_aware_ts(dt: DateOrDatetime,
                   default_timezone: Union[str, timezone, ZoneInfo]) -> datetime:
    if not isinstance(dt, datetime):
        _dt = datetime.combine(dt, time())
    else:
        _dt = dt
    if _dt.tzinfo is None:
        if isinstance(default_timezone, str):
            _dt = _dt.replace(tzinfo=ZoneInfo(default_timezone))
        else:
            _dt = _dt.replace(tzinfo=default_timezone)
    return _dt


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def resolve_timezone(name: Optional[str]):
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(
            "timezone", f"Unknown timezone {name!r}.",
            "Use an IANA timezone name such as 'Europe/Paris'.") from exc


def _as_utc(dt: datetime, tz) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def parse_recurrence(text: str) -> vRecur:
    """Parse an RRULE value such as "FREQ=WEEKLY;BYDAY=MO"."""
    text = text.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):]
    try:
        rrule = vRecur.from_ical(text)
    except ValueError as exc:
        raise ValidationError(
            "recurrence", f"Invalid recurrence rule {text!r}.",
            "Use RRULE syntax, e.g. 'FREQ=WEEKLY;BYDAY=MO'.") from exc
    if "FREQ" not in rrule:
        raise ValidationError(
            "recurrence", f"Recurrence rule {text!r} has no FREQ part.",
            "Use RRULE syntax, e.g. 'FREQ=DAILY;COUNT=5'.")
    return rrule


def _event_bounds(input: EventInput):
    if not input.title:
        raise ValidationError(
            "title", "An event title is required.",
            "Provide a title for the event.")
    if input.start is None:
        raise ValidationError(
            "start", "An event start is required.",
            "Provide the start date or time of the event.")
    start = input.start
    end = input.end
    if input.all_day:
        if isinstance(start, datetime):
            start = start.date()
        if isinstance(end, datetime):
            end = end.date()
        if end is None or end == start:
            end = start + timedelta(days=1)
    else:
        tz = resolve_timezone(input.timezone)
        if not isinstance(start, datetime):
            start = datetime.combine(start, time())
        start = _as_utc(start, tz)
        if end is None:
            end = start + DEFAULT_EVENT_LENGTH
        else:
            if not isinstance(end, datetime):
                end = datetime.combine(end, time())
            end = _as_utc(end, tz)
    if end <= start:
        raise ValidationError(
            "end", f"End ({end}) must be after start ({start}).",
            "Choose an end time later than the start time.")
    return start, end


def build_event(input: EventInput, now: Optional[datetime] = None,
                uid: Optional[str] = None) -> str:
    """Build a complete VCALENDAR containing a single new VEVENT.

    Args:
      input: EventInput with the caller supplied fields
      now: Creation timestamp (defaults to the current UTC time)
      uid: UID to use (defaults to a random UUID)
    Raises:
      ValidationError: if a required field is missing or inconsistent
    Returns: iCalendar text
    """
    if input.attendees and not input.allow_scheduling:
        raise ValidationError(
            "attendees",
            "Adding attendees can make the server send invitations.",
            "Set allow_scheduling to confirm that invitations may be sent.")
    start, end = _event_bounds(input)
    if now is None:
        now = _now()

    cal = Calendar()
    cal.add("VERSION", "2.0")
    cal.add("PRODID", PRODID)
    event = Event()
    event.add("UID", uid or str(uuid.uuid4()))
    event.add("DTSTAMP", now)
    event.add("CREATED", now)
    event.add("SEQUENCE", 0)
    event.add("SUMMARY", input.title)
    event.add("DTSTART", start)
    event.add("DTEND", end)
    if input.description:
        event.add("DESCRIPTION", input.description)
    if input.location:
        event.add("LOCATION", input.location)
    if input.recurrence:
        event.add("RRULE", parse_recurrence(input.recurrence))
    if input.allow_scheduling:
        for address in input.attendees:
            attendee = vCalAddress(
                address if ":" in address else "mailto:" + address)
            attendee.params["PARTSTAT"] = vText("NEEDS-ACTION")
            attendee.params["RSVP"] = vText("TRUE")
            event.add("ATTENDEE", attendee, encode=0)
    cal.add_component(event)
    return cal.to_ical().decode("utf-8")


def _replace(comp: Component, name: str, value, parameters=None) -> None:
    comp.pop(name, None)
    comp.add(name, value, parameters=parameters)


def _set_text(comp: Component, name: str, value: Optional[str]) -> None:
    if value is None:
        return
    if value == "":
        comp.pop(name, None)
        return
    if name in comp and not isinstance(comp[name], list):
        params = dict(comp[name].params)
    else:
        params = None
    _replace(comp, name, value, parameters=params)


def _coerce_like(old, value: DateOrDatetime) -> DateOrDatetime:
    """Convert a new DTSTART/DTEND value to the shape of the old one."""
    if old is None:
        return value
    old_dt = old.dt
    if not isinstance(old_dt, datetime):
        # All-day event: keep it all-day.
        return value.date() if isinstance(value, datetime) else value
    if not isinstance(value, datetime):
        value = datetime.combine(value, time())
    if old_dt.tzinfo is None:
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=old_dt.tzinfo)
    return value.astimezone(old_dt.tzinfo)


def _localize(value, tz):
    if tz is not None and isinstance(value, datetime) and value.tzinfo is None:
        return _as_utc(value, tz)
    return value


def _set_datetime(comp: Component, name: str, value) -> None:
    if value is None:
        return
    if value == "":
        raise ValidationError(
            name.lower(), f"{name} can not be removed from an event.")
    old = comp.get(name)
    new = _coerce_like(old, value)
    params = None
    if old is not None and "TZID" in old.params and isinstance(new, datetime) \
            and new.tzinfo is not None and new.utcoffset() != timedelta(0):
        params = {"TZID": old.params["TZID"]}
    comp.pop(name, None)
    prop = vDDDTypes(new)
    if params:
        prop.params.update(params)
    comp.add(name, prop, encode=0)


def touch(comp: Component, now: Optional[datetime] = None) -> None:
    """Record that a component changed.

    Refreshes DTSTAMP (and LAST-MODIFIED if present) and increments
    SEQUENCE, whatever else changed.
    """
    if now is None:
        now = _now()
    _replace(comp, "DTSTAMP", now)
    if "LAST-MODIFIED" in comp:
        _replace(comp, "LAST-MODIFIED", now)
    try:
        sequence = int(comp.get("SEQUENCE", 0))
    except (TypeError, ValueError):
        sequence = 0
    _replace(comp, "SEQUENCE", sequence + 1)


def check_recurrence(fi: ICalendarFile, had_rrule: bool,
                     removal_requested: bool = False) -> None:
    """Verify a recurring series still has its rule after a change.

    Raises:
      RecurrenceLostError: if the rule vanished without being asked to
    """
    if not had_rrule or removal_requested:
        return
    reparsed = ICalendarFile(fi.serialize())
    if "RRULE" not in reparsed.get_event():
        raise RecurrenceLostError(str(reparsed.get_event().get("UID")))


def _open(raw: str) -> ICalendarFile:
    fi = ICalendarFile(raw)
    fi.get_event()
    return fi


def patch_event(raw: str, patch: EventPatch,
                now: Optional[datetime] = None) -> str:
    """Apply a patch to an existing event, keeping everything else.

    Args:
      raw: Current iCalendar text as stored on the server
      patch: EventPatch; None fields are left untouched
      now: Modification timestamp (defaults to the current UTC time)
    Raises:
      InvalidFileContents: if raw can not be parsed
      ValidationError: if the patch is inconsistent with the event
      RecurrenceLostError: if the recurrence rule would be lost
    Returns: iCalendar text
    """
    tz = resolve_timezone(patch.timezone) if patch.timezone else None
    fi = _open(raw)
    vevent = fi.get_event()
    had_rrule = "RRULE" in vevent

    _set_text(vevent, "SUMMARY", patch.title)
    _set_text(vevent, "DESCRIPTION", patch.description)
    _set_text(vevent, "LOCATION", patch.location)
    _set_datetime(vevent, "DTSTART", _localize(patch.start, tz))
    if patch.end is not None:
        vevent.pop("DURATION", None)
    _set_datetime(vevent, "DTEND", _localize(patch.end, tz))
    if patch.recurrence == "":
        vevent.pop("RRULE", None)
    elif patch.recurrence is not None:
        _replace(vevent, "RRULE", parse_recurrence(patch.recurrence))

    dtstart = vevent.get("DTSTART")
    dtend = vevent.get("DTEND")
    if dtstart is not None and dtend is not None and (
            patch.start is not None or patch.end is not None):
        start = as_tz_aware_ts(dtstart.dt, timezone.utc)
        end = as_tz_aware_ts(dtend.dt, timezone.utc)
        if end <= start:
            raise ValidationError(
                "end", f"End ({dtend.dt}) must be after start ({dtstart.dt}).",
                "Update the end time as well.")

    touch(vevent, now)
    check_recurrence(fi, had_rrule, patch.recurrence == "")
    return fi.serialize()


_TRIGGER_RE = re.compile(
    r"^\s*(\d+)\s*(m|min|mins|minutes?|h|hrs?|hours?|d|days?|w|weeks?)"
    r"(\s+before)?\s*$", re.I)

_TRIGGER_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def parse_trigger(text: str) -> timedelta:
    """Parse a reminder offset.

    Accepts "15 minutes", "1h", "2 days before" or an iCalendar duration
    such as "-PT15M". Offsets are relative to the event start; plain
    amounts mean "before".
    """
    m = _TRIGGER_RE.match(text)
    if m:
        amount = int(m.group(1))
        unit = _TRIGGER_UNITS[m.group(2)[0].lower()]
        return -timedelta(**{unit: amount})
    try:
        return vDDDTypes.from_ical(text.strip().upper())
    except ValueError as exc:
        raise ValidationError(
            "trigger", f"Could not understand reminder time {text!r}.",
            "Use e.g. '15 minutes', '1 hour', '1 day' or '-PT15M'.") from exc


def add_alarm(raw: str, trigger: str, description: Optional[str] = None,
              now: Optional[datetime] = None) -> str:
    """Add a DISPLAY reminder to an event."""
    offset = parse_trigger(trigger)
    if not isinstance(offset, timedelta):
        raise ValidationError(
            "trigger", f"Reminder time {trigger!r} is not a relative offset.")
    fi = _open(raw)
    vevent = fi.get_event()
    had_rrule = "RRULE" in vevent
    alarm = Alarm()
    alarm.add("ACTION", "DISPLAY")
    alarm.add("DESCRIPTION", description or str(vevent.get("SUMMARY", "Reminder")))
    alarm.add("TRIGGER", offset)
    vevent.add_component(alarm)
    touch(vevent, now)
    check_recurrence(fi, had_rrule)
    return fi.serialize()


def list_alarms(raw: str) -> list[Component]:
    return [c for c in _open(raw).get_event().subcomponents if c.name == "VALARM"]


def remove_alarm(raw: str, index: Optional[int] = None,
                 now: Optional[datetime] = None) -> str:
    """Remove one reminder (by 0-based index) or all of them.

    Raises:
      ValidationError: if there is no such reminder
    """
    fi = _open(raw)
    vevent = fi.get_event()
    had_rrule = "RRULE" in vevent
    alarms = [c for c in vevent.subcomponents if c.name == "VALARM"]
    if not alarms:
        raise ValidationError("index", "This event has no reminders.")
    if index is None:
        doomed = alarms
    elif 0 <= index < len(alarms):
        doomed = [alarms[index]]
    else:
        raise ValidationError(
            "index",
            f"Invalid reminder index {index}; the event has "
            f"{len(alarms)} reminder(s).",
            f"Use an index between 0 and {len(alarms) - 1}.")
    vevent.subcomponents = [
        c for c in vevent.subcomponents
        if not any(c is d for d in doomed)]
    touch(vevent, now)
    check_recurrence(fi, had_rrule)
    return fi.serialize()


def _iter_prop_dates(comp: Component, name: str):
    props = comp.get(name)
    if props is None:
        return
    if not isinstance(props, list):
        props = [props]
    for prop in props:
        for value in getattr(prop, "dts", [prop]):
            yield value.dt


def _normalize_dt_for_rrule(dt: DateOrDatetime, original_dt: DateOrDatetime):
    """Normalize a value to the type dateutil uses for a DTSTART.

    - For date-only events, naive datetimes at midnight
    - For floating time events, naive datetimes
    - For timezone-aware events, aware datetimes
    """
    if not isinstance(original_dt, datetime):
        if isinstance(dt, datetime):
            return datetime.combine(dt.date(), time.min)
        return datetime.combine(dt, time.min)
    if not isinstance(dt, datetime):
        dt = datetime.combine(dt, original_dt.timetz())
    if original_dt.tzinfo is None and dt.tzinfo is not None:
        return dt.replace(tzinfo=None)
    if original_dt.tzinfo is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=original_dt.tzinfo)
    return dt


def rruleset_from_comp(comp: Component) -> dateutil.rrule.rruleset:
    dtstart = comp["DTSTART"].dt
    rs = dateutil.rrule.rruleset()
    if "RRULE" in comp:
        rrulestr = comp["RRULE"].to_ical().decode("utf-8")
        rs.rrule(dateutil.rrule.rrulestr(
            rrulestr, dtstart=_normalize_dt_for_rrule(dtstart, dtstart)))
    for exdate in _iter_prop_dates(comp, "EXDATE"):
        rs.exdate(_normalize_dt_for_rrule(exdate, dtstart))
    for rdate in _iter_prop_dates(comp, "RDATE"):
        if isinstance(rdate, tuple):
            rdate = rdate[0]
        rs.rdate(_normalize_dt_for_rrule(rdate, dtstart))
    return rs


def get_event_duration(comp: Component) -> timedelta:
    """Get the duration of an event component."""
    if "DURATION" in comp:
        return comp["DURATION"].dt
    dtstart = comp["DTSTART"].dt
    if "DTEND" in comp:
        return comp["DTEND"].dt - dtstart
    if isinstance(dtstart, datetime):
        return timedelta(0)
    return timedelta(days=1)


def iter_occurrences(comp: Component, start: datetime, end: datetime,
                     tz=timezone.utc, limit: int = 1000):
    """Iterate over (start, end) of the instances overlapping a range.

    Recurring events are expanded. Floating and all-day values are
    interpreted in tz. Returned values are aware datetimes.

    Args:
      comp: VEVENT component
      start: Start of the range (aware)
      end: End of the range (aware)
    """
    if "DTSTART" not in comp:
        return
    dtstart = comp["DTSTART"].dt
    duration = get_event_duration(comp)

    def tzify(dt):
        return as_tz_aware_ts(dt, tz)

    if "RRULE" not in comp and "RDATE" not in comp:
        s = tzify(dtstart)
        e = s + duration
        if s < end and (e > start or (e == s and s >= start)):
            yield (s, e)
        return

    try:
        rs = rruleset_from_comp(comp)
    except ValueError as exc:
        logger.warning(
            "Unable to expand recurrence of %s, using first instance: %s",
            comp.get("UID"), exc)
        s = tzify(dtstart)
        if s < end and s + duration > start:
            yield (s, s + duration)
        return
    lo = _normalize_dt_for_rrule(
        (start - duration).astimezone(tz), dtstart)
    hi = _normalize_dt_for_rrule(end.astimezone(tz), dtstart)
    for i, occurrence in enumerate(rs.between(lo, hi, inc=True)):
        if i >= limit:
            logger.warning(
                "Truncated expansion of %s at %d instances",
                comp.get("UID"), limit)
            break
        s = tzify(occurrence)
        e = s + duration
        if s < end and e > start:
            yield (s, e)


def iter_instances(cal: Calendar, start: datetime, end: datetime,
                   tz=timezone.utc):
    """Iterate over (component, start, end) of the event instances in a range.

    Instances replaced by an override (a VEVENT with RECURRENCE-ID) are
    taken from the override rather than from the master rule.
    """
    events = cal.walk("VEVENT")
    overridden = set()
    for comp in events:
        if "RECURRENCE-ID" in comp:
            overridden.add(as_tz_aware_ts(comp["RECURRENCE-ID"].dt, tz))
    for comp in events:
        is_master = "RECURRENCE-ID" not in comp
        for (s, e) in iter_occurrences(comp, start, end, tz):
            if is_master and s in overridden:
                continue
            yield (comp, s, e)


EventOccurrence = collections.namedtuple(
    "EventOccurrence",
    ["uid", "summary", "start", "end", "all_day", "location", "description",
     "attendees"])


def occurrence_from_component(comp: Component, start: datetime,
                              end: datetime) -> EventOccurrence:
    def text(name):
        value = comp.get(name)
        return str(value) if value is not None else None
    all_day = not isinstance(comp["DTSTART"].dt, datetime)
    return EventOccurrence(
        text("UID"), text("SUMMARY") or "(No title)", start, end, all_day,
        text("LOCATION"), text("DESCRIPTION"), get_attendees(comp))
