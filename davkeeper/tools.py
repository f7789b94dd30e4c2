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

"""Tool invocation boundary.

Each verb is a plain async function taking a Context and flat keyword
arguments, and returning a ToolResult. Errors never escape as exceptions;
they are reported in the result together with a hint.
"""

import collections
import functools
import logging
import re
from datetime import date, datetime, time, timedelta

import dateutil.parser

from .cache import CollectionCache
from .caldav import CalendarService
from .carddav import AddressBookService
from .client import InvalidResponse
from .errors import DavkeeperError, ValidationError
from .freebusy import AvailabilityResolver
from .icalendar import EventInput, EventPatch, resolve_timezone
from .retry import RetryExecutor
from .store import InvalidFileContents
from .vcard import ContactInput, ContactPatch, summarize_contact

logger = logging.getLogger(__name__)


ToolResult = collections.namedtuple(
    "ToolResult", ["text", "is_error", "error_kind", "hint"],
    defaults=[False, None, None])


Tool = collections.namedtuple(
    "Tool", ["name", "function", "description", "read_only", "destructive"])


Context = collections.namedtuple(
    "Context", ["calendars", "contacts", "availability", "timezone"],
    defaults=[None])
Context.__doc__ = """Services shared by the verbs.

timezone is the IANA name naive input times are read in, and the zone
event times are shown in (UTC when unset).
"""


TOOLS: dict[str, Tool] = {}

_DATE_RE = re.compile(r"^\s*\d{4}-\d{2}-\d{2}\s*$")


def tool(description, read_only=False, destructive=False):
    """Register a verb and convert its failures into error results.

    The read_only and destructive flags are published for callers that
    want to ask for confirmation; they are not enforced here.
    """
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(ctx, **kwargs):
            logger.debug("%s called with %r", fn.__name__, sorted(kwargs))
            try:
                return await fn(ctx, **kwargs)
            except DavkeeperError as exc:
                logger.info("%s failed: %s", fn.__name__, exc.message)
                return ToolResult(exc.describe(), True, exc.kind, exc.hint)
            except InvalidFileContents as exc:
                logger.warning("%s failed: %s", fn.__name__, exc)
                return ToolResult(
                    f"The stored data could not be parsed: {exc.error}",
                    True, "invalid-data", None)
            except InvalidResponse as exc:
                logger.warning("%s failed: %s", fn.__name__, exc)
                return ToolResult(
                    "The server sent a response that could not be "
                    f"understood: {exc}", True, "remote", None)
        TOOLS[fn.__name__] = Tool(
            fn.__name__, wrapper, description, read_only, destructive)
        return wrapper
    return decorator


def parse_when(value, field: str):
    """Parse a date or date-time argument.

    "YYYY-MM-DD" gives a date; anything else is handed to dateutil, which
    accepts ISO 8601 as well as looser formats like "May 3 2026 14:00".
    Naive results are returned as-is and interpreted by the caller.
    """
    if value is None or isinstance(value, (date, datetime)):
        return value
    if _DATE_RE.match(value):
        return date.fromisoformat(value.strip())
    try:
        return dateutil.parser.parse(value, fuzzy=True)
    except (ValueError, OverflowError) as exc:
        raise ValidationError(
            field, f"Could not parse {field} date {value!r}.",
            "Use ISO 8601, e.g. '2026-05-03T14:00:00+02:00'.") from exc


def _format_when(value) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat() + " (all day)"
    return str(value)


def _with_warnings(text: str, warnings) -> str:
    for warning in warnings:
        text += f"\n\nWarning: {warning}"
    return text


@tool("Create a new calendar event. Attendees are only added when "
      "allow_scheduling is set, because the server may send invitations.")
async def create_event(ctx, *, title=None, start=None, end=None,
                       description=None, location=None, calendar=None,
                       all_day=False, recurrence=None, timezone=None,
                       attendees=None, allow_scheduling=False):
    start = parse_when(start, "start")
    # A bare date means an all-day event.
    all_day = bool(all_day) or (
        isinstance(start, date) and not isinstance(start, datetime))
    input = EventInput(
        title=title, start=start, end=parse_when(end, "end"),
        description=description, location=location, all_day=all_day,
        recurrence=recurrence, timezone=timezone or ctx.timezone,
        attendees=tuple(attendees or ()),
        allow_scheduling=bool(allow_scheduling))
    result = await ctx.calendars.create(input, calendar)
    text = (
        f'Event created successfully: "{title}"\n'
        f"UID: {result.handle.uid}\n"
        f"URL: {result.handle.url}")
    return ToolResult(_with_warnings(text, result.warnings))


@tool("Update an existing event by UID. Only the given fields change; "
      "alarms, attendees and custom properties are kept. An empty string "
      "removes a field.", destructive=True)
async def update_event(ctx, *, uid=None, title=None, start=None, end=None,
                       description=None, location=None, recurrence=None,
                       calendar=None, timezone=None):
    patch = EventPatch(
        title=title, start=parse_when(start, "start"),
        end=parse_when(end, "end"), description=description,
        location=location, recurrence=recurrence,
        timezone=timezone or ctx.timezone)
    result = await ctx.calendars.update(uid, patch, calendar)
    changed = ctx.calendars.changed_fields(patch)
    text = (
        f"Event {uid} updated successfully.\n"
        f"Changed: {', '.join(changed)}")
    return ToolResult(_with_warnings(text, result.warnings))


@tool("Delete an event by UID.", destructive=True)
async def delete_event(ctx, *, uid=None, calendar=None):
    await ctx.calendars.delete(uid, calendar)
    return ToolResult(f"Event {uid} deleted successfully.")


@tool("Add a reminder to an event, e.g. trigger='15 minutes' or '-PT1H'.")
async def add_alarm(ctx, *, uid=None, trigger=None, description=None,
                    calendar=None):
    if not trigger:
        raise ValidationError(
            "trigger", "A reminder time is required.",
            "Use e.g. '15 minutes', '1 hour' or '-PT15M'.")
    result = await ctx.calendars.add_alarm(uid, trigger, description, calendar)
    return ToolResult(_with_warnings(
        f"Reminder ({trigger}) added to event {uid}.", result.warnings))


@tool("Remove a reminder from an event: index is the 0-based position of "
      "the reminder, or 'all'.", destructive=True)
async def remove_alarm(ctx, *, uid=None, index="all", calendar=None):
    if index is None or str(index).strip().lower() == "all":
        position = None
    else:
        try:
            position = int(index)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                "index", f"Invalid reminder index {index!r}.",
                "Use a number such as 0, or 'all'.") from exc
    result = await ctx.calendars.remove_alarm(uid, position, calendar)
    if position is None:
        text = f"All reminders removed from event {uid}."
    else:
        text = f"Reminder {position} removed from event {uid}."
    return ToolResult(_with_warnings(text, result.warnings))


@tool("Create a new contact.")
async def create_contact(ctx, *, name=None, email=None, phone=None,
                         organization=None, addressbook=None):
    result = await ctx.contacts.create(
        ContactInput(name, email, phone, organization), addressbook)
    return ToolResult(
        f'Contact created successfully: "{name}"\n'
        f"UID: {result.handle.uid}\n"
        f"URL: {result.handle.url}")


@tool("Update an existing contact by UID. Only the given fields change; "
      "photos, groups and custom properties are kept.", destructive=True)
async def update_contact(ctx, *, uid=None, name=None, email=None, phone=None,
                         organization=None, addressbook=None):
    patch = ContactPatch(name, email, phone, organization)
    await ctx.contacts.update(uid, patch, addressbook)
    changed = ctx.contacts.changed_fields(patch)
    return ToolResult(
        f"Contact {uid} updated successfully.\n"
        f"Changed: {', '.join(changed)}")


@tool("Delete a contact by UID.", destructive=True)
async def delete_contact(ctx, *, uid=None, addressbook=None):
    await ctx.contacts.delete(uid, addressbook)
    return ToolResult(f"Contact {uid} deleted successfully.")


@tool("List busy periods between start and end.", read_only=True)
async def check_availability(ctx, *, start=None, end=None, calendar=None):
    if start is None or end is None:
        raise ValidationError(
            "start" if start is None else "end",
            "Both start and end of the range are required.")
    result = await ctx.availability.query(
        parse_when(start, "start"), parse_when(end, "end"), calendar)
    (range_start, range_end) = result.range
    if not result.periods:
        text = (f"No busy periods between {_format_when(range_start)} and "
                f"{_format_when(range_end)}.")
    else:
        lines = [f"Busy periods between {_format_when(range_start)} and "
                 f"{_format_when(range_end)}:"]
        for period in result.periods:
            lines.append(
                f"- {_format_when(period.start)} to "
                f"{_format_when(period.end)} ({period.status})")
        text = "\n".join(lines)
    if result.path == "fallback":
        text += "\n\n(Computed from calendar events; the server does not "
        text += "provide free/busy information.)"
    return ToolResult(text)


MAX_EVENTS = 50
MAX_CONTACTS = 30
SEARCH_DAYS = 30
NEXT_EVENT_DAYS = 365


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" + ("" if count == 1 else "s")


def _bound(value, tz, is_end=False) -> datetime:
    """Turn a parsed start or end into an aware datetime.

    A bare date as the end of a range includes that whole day.
    """
    if not isinstance(value, datetime):
        if is_end:
            value += timedelta(days=1)
        value = datetime.combine(value, time())
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value


def _time_range(start, end, tz, default_length: timedelta):
    start = parse_when(start, "start")
    end = parse_when(end, "end")
    start = _bound(start, tz) if start is not None else datetime.now(tz)
    if end is None:
        end = start + default_length
    else:
        end = _bound(end, tz, is_end=True)
    if end <= start:
        raise ValidationError(
            "end", "The end of the range must be after its start.")
    return (start, end)


def format_occurrence(occurrence, tz) -> str:
    if occurrence.all_day:
        when = f"{occurrence.start:%a %b %d} (all day)"
    else:
        start = occurrence.start.astimezone(tz)
        end = occurrence.end.astimezone(tz)
        end_format = "%H:%M" if end.date() == start.date() else "%a %b %d %H:%M"
        when = f"{start:%a %b %d %H:%M} - {end.strftime(end_format)} ({tz})"
    lines = [occurrence.summary, f"  {when}"]
    if occurrence.location:
        lines.append(f"  at {occurrence.location}")
    if occurrence.attendees:
        lines.append(f"  Attendees: {', '.join(occurrence.attendees)}")
    lines.append(f"  UID: {occurrence.uid}")
    return "\n".join(lines)


def _format_occurrences(heading: str, occurrences, tz) -> str:
    shown = occurrences[:MAX_EVENTS]
    text = heading + "\n\n" + "\n\n".join(
        format_occurrence(o, tz) for o in shown)
    if len(occurrences) > len(shown):
        text += (f"\n\n(Showing {len(shown)} of {len(occurrences)} events. "
                 "Narrow the range to see the rest.)")
    return text


def format_contact(contact) -> str:
    lines = [contact.name]
    lines.extend(f"  Email: {email}" for email in contact.emails)
    lines.extend(f"  Phone: {phone}" for phone in contact.phones)
    if contact.organization:
        lines.append(f"  Organization: {contact.organization}")
    lines.append(f"  UID: {contact.uid}")
    return "\n".join(lines)


def format_contact_summary(contact) -> str:
    text = contact.name
    if contact.emails:
        text += f" <{contact.emails[0]}>"
    if contact.organization:
        text += f" - {contact.organization}"
    return text + f" (UID: {contact.uid})"


def _name_matches(contact, query: str) -> bool:
    query = query.lower()
    return any(query in part.lower()
               for part in (contact.name, contact.given, contact.family)
               if part)


@tool("Get the next upcoming event.", read_only=True)
async def get_next_event(ctx, *, calendar=None):
    tz = resolve_timezone(ctx.timezone)
    now = datetime.now(tz)
    occurrences = await ctx.calendars.list_occurrences(
        now, now + timedelta(days=NEXT_EVENT_DAYS), calendar, tz)
    upcoming = [o for o in occurrences if o.start >= now]
    if not upcoming:
        return ToolResult("No upcoming events found.")
    return ToolResult(format_occurrence(upcoming[0], tz))


@tool("Get all events scheduled for today, sorted by time.", read_only=True)
async def get_todays_schedule(ctx, *, calendar=None):
    tz = resolve_timezone(ctx.timezone)
    start = datetime.combine(datetime.now(tz).date(), time(), tzinfo=tz)
    occurrences = await ctx.calendars.list_occurrences(
        start, start + timedelta(days=1), calendar, tz)
    if not occurrences:
        return ToolResult("No events scheduled for today.")
    return ToolResult(_format_occurrences(
        f"Today's schedule ({_plural(len(occurrences), 'event')}):",
        occurrences, tz))


@tool("Get the events between start and end. A date as end includes "
      "that whole day; without an end, one day from start is shown.",
      read_only=True)
async def get_events_in_range(ctx, *, start=None, end=None, calendar=None):
    if start is None:
        raise ValidationError(
            "start", "The start of the range is required.",
            "Use a date such as '2026-05-04' or an ISO 8601 time.")
    tz = resolve_timezone(ctx.timezone)
    (range_start, range_end) = _time_range(start, end, tz, timedelta(days=1))
    occurrences = await ctx.calendars.list_occurrences(
        range_start, range_end, calendar, tz)
    between = f"between {_format_when(range_start)} and {_format_when(range_end)}"
    if not occurrences:
        return ToolResult(f"No events found {between}.")
    return ToolResult(_format_occurrences(
        f"Events {between} ({len(occurrences)} total):", occurrences, tz))


@tool("Search events by keyword in title or description, or by attendee. "
      "Searches the next 30 days unless start and end are given.",
      read_only=True)
async def search_events(ctx, *, query=None, attendee=None, start=None,
                        end=None, calendar=None):
    if not query and not attendee:
        raise ValidationError(
            "query", "Provide a keyword or an attendee name to search for.")
    tz = resolve_timezone(ctx.timezone)
    (range_start, range_end) = _time_range(
        start, end, tz, timedelta(days=SEARCH_DAYS))
    occurrences = await ctx.calendars.list_occurrences(
        range_start, range_end, calendar, tz)
    if query:
        q = query.lower()
        occurrences = [
            o for o in occurrences
            if q in o.summary.lower() or q in (o.description or "").lower()]
    if attendee:
        a = attendee.lower()
        occurrences = [
            o for o in occurrences
            if any(a in name.lower() for name in o.attendees)]
    criteria = " and ".join(
        f'{label} "{value}"'
        for (label, value) in (("keyword", query), ("attendee", attendee))
        if value)
    if not occurrences:
        return ToolResult(f"No events found matching {criteria}.")
    return ToolResult(_format_occurrences(
        f"Found {_plural(len(occurrences), 'event')} matching {criteria}:",
        occurrences, tz))


@tool("List contacts with their email, organization and UID.",
      read_only=True)
async def list_contacts(ctx, *, addressbook=None):
    contacts = await ctx.contacts.list_contacts(addressbook)
    if not contacts:
        return ToolResult("No contacts found.")
    shown = contacts[:MAX_CONTACTS]
    text = f"Contacts ({len(shown)}):\n\n" + "\n".join(
        format_contact_summary(c) for c in shown)
    if len(contacts) > len(shown):
        text += (f"\n\n(Showing {len(shown)} of {len(contacts)} contacts. "
                 "Use search_contacts to find specific contacts.)")
    return ToolResult(text)


@tool("Search contacts by (partial) name and/or organization.",
      read_only=True)
async def search_contacts(ctx, *, name=None, organization=None,
                          addressbook=None):
    if not name and not organization:
        raise ValidationError(
            "name", "Provide a name or organization to search for.")
    contacts = await ctx.contacts.list_contacts(addressbook)
    if name:
        contacts = [c for c in contacts if _name_matches(c, name)]
    if organization:
        org = organization.lower()
        contacts = [c for c in contacts
                    if org in (c.organization or "").lower()]
    criteria = " and ".join(
        f'{label} "{value}"'
        for (label, value) in (("name", name), ("organization", organization))
        if value)
    if not contacts:
        return ToolResult(f"No contacts found matching {criteria}.")
    return ToolResult(
        f"Found {_plural(len(contacts), 'contact')} matching {criteria}:\n\n"
        + "\n\n".join(format_contact(c) for c in contacts))


@tool("Get all details of a contact, by UID or by (partial) name.",
      read_only=True)
async def get_contact_details(ctx, *, uid=None, name=None, addressbook=None):
    if uid:
        handle = await ctx.contacts.find_by_uid(uid, addressbook)
        contact = summarize_contact(handle.raw)
        return ToolResult(
            f"Contact details for {contact.name}:\n\n{format_contact(contact)}")
    if not name:
        raise ValidationError(
            "name", "Provide the UID or name of the contact.")
    contacts = [c for c in await ctx.contacts.list_contacts(addressbook)
                if _name_matches(c, name)]
    if not contacts:
        return ToolResult(f'No contact found matching "{name}".')
    if len(contacts) == 1:
        return ToolResult(
            f"Contact details for {contacts[0].name}:\n\n"
            f"{format_contact(contacts[0])}")
    return ToolResult(
        f'Found {len(contacts)} contacts matching "{name}":\n\n'
        + "\n\n".join(format_contact(c) for c in contacts))


def make_context(client, config=None, cache=None, retry=None) -> Context:
    """Wire the services used by the verbs around a wire client."""
    if cache is None:
        cache = CollectionCache()
    default_calendar = default_addressbook = timezone = None
    if config is not None:
        if retry is None:
            retry = RetryExecutor(
                attempts=config.retry_attempts, timeout=config.timeout)
        default_calendar = config.default_calendar
        default_addressbook = config.default_addressbook
        timezone = config.timezone
    if retry is None:
        retry = RetryExecutor()
    calendars = CalendarService(client, cache, retry, default_calendar)
    contacts = AddressBookService(client, cache, retry, default_addressbook)
    availability = AvailabilityResolver(calendars, resolve_timezone(timezone))
    return Context(calendars, contacts, availability, timezone)
