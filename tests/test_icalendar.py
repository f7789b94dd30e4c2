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

"""Tests for davkeeper.icalendar."""

import unittest
from datetime import date, datetime, timedelta, timezone

from icalendar.cal import Calendar

from davkeeper.errors import RecurrenceLostError, ValidationError
from davkeeper.icalendar import (
    EventInput,
    EventOccurrence,
    EventPatch,
    ICalendarFile,
    add_alarm,
    build_event,
    check_recurrence,
    get_attendees,
    iter_instances,
    iter_occurrences,
    list_alarms,
    occurrence_from_component,
    parse_trigger,
    patch_event,
    remove_alarm,
)
from davkeeper.store import InvalidFileContents

EXAMPLE_EVENT = """\
BEGIN:VCALENDAR\r
VERSION:2.0\r
PRODID:-//Other Client//EN\r
BEGIN:VTIMEZONE\r
TZID:Europe/Berlin\r
BEGIN:STANDARD\r
DTSTART:19701025T030000\r
RRULE:FREQ=YEARLY;BYMONTH=10;BYDAY=-1SU\r
TZOFFSETFROM:+0200\r
TZOFFSETTO:+0100\r
END:STANDARD\r
BEGIN:DAYLIGHT\r
DTSTART:19700329T020000\r
RRULE:FREQ=YEARLY;BYMONTH=3;BYDAY=-1SU\r
TZOFFSETFROM:+0100\r
TZOFFSETTO:+0200\r
END:DAYLIGHT\r
END:VTIMEZONE\r
BEGIN:VEVENT\r
UID:standup-1@example.com\r
DTSTAMP:20260101T000000Z\r
LAST-MODIFIED:20260101T000000Z\r
SEQUENCE:4\r
SUMMARY:Standup\r
DESCRIPTION:Daily sync\r
LOCATION:Room 1\r
DTSTART;TZID=Europe/Berlin:20260504T090000\r
DTEND;TZID=Europe/Berlin:20260504T091500\r
RRULE:FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR\r
CATEGORIES:work,team\r
ORGANIZER;CN=Alice:mailto:alice@example.com\r
ATTENDEE;CN=Bob;PARTSTAT=ACCEPTED:mailto:bob@example.com\r
X-CUSTOM-PROP;X-PARAM=1:keep me\r
BEGIN:VALARM\r
ACTION:DISPLAY\r
DESCRIPTION:Standup soon\r
TRIGGER:-PT10M\r
END:VALARM\r
END:VEVENT\r
END:VCALENDAR\r
"""

SIMPLE_EVENT = """\
BEGIN:VCALENDAR\r
VERSION:2.0\r
PRODID:-//Other Client//EN\r
BEGIN:VEVENT\r
UID:simple-1\r
DTSTAMP:20260101T000000Z\r
SUMMARY:Lunch\r
DTSTART:20260504T120000Z\r
DTEND:20260504T130000Z\r
END:VEVENT\r
END:VCALENDAR\r
"""

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def strip_properties(text, names):
    """Parse and re-serialize text without the named properties."""
    cal = Calendar.from_ical(text)
    for comp in cal.walk():
        for name in names:
            comp.pop(name, None)
    return cal.to_ical()


def get_event(text):
    return ICalendarFile(text).get_event()


class ICalendarFileTests(unittest.TestCase):

    def test_validate(self):
        ICalendarFile.from_text(EXAMPLE_EVENT)

    def test_invalid(self):
        fi = ICalendarFile("this is not a calendar")
        self.assertRaises(InvalidFileContents, fi.validate)

    def test_get_uid(self):
        self.assertEqual(
            "standup-1@example.com", ICalendarFile(EXAMPLE_EVENT).get_uid())

    def test_describe(self):
        self.assertEqual(
            "Standup", ICalendarFile(EXAMPLE_EVENT).describe("x.ics"))

    def test_get_attendees(self):
        self.assertEqual(["Bob"], get_attendees(get_event(EXAMPLE_EVENT)))
        self.assertEqual([], get_attendees(get_event(SIMPLE_EVENT)))


class BuildEventTests(unittest.TestCase):

    def test_timed(self):
        text = build_event(EventInput(
            title="Standup",
            start=datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc),
            end=datetime(2026, 5, 4, 9, 15, tzinfo=timezone.utc),
            description="Daily sync", location="Room 1"),
            now=NOW, uid="uid-1")
        cal = Calendar.from_ical(text)
        self.assertEqual("2.0", str(cal["VERSION"]))
        self.assertIn("Davkeeper", str(cal["PRODID"]))
        event = get_event(text)
        self.assertEqual("uid-1", str(event["UID"]))
        self.assertEqual("Standup", str(event["SUMMARY"]))
        self.assertEqual("Daily sync", str(event["DESCRIPTION"]))
        self.assertEqual("Room 1", str(event["LOCATION"]))
        self.assertEqual(
            datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc),
            event["DTSTART"].dt)
        self.assertEqual(
            datetime(2026, 5, 4, 9, 15, tzinfo=timezone.utc),
            event["DTEND"].dt)
        self.assertEqual(NOW, event["DTSTAMP"].dt)
        self.assertEqual(0, int(event["SEQUENCE"]))
        self.assertNotIn("RRULE", event)
        self.assertNotIn("ATTENDEE", event)

    def test_random_uid(self):
        input = EventInput(
            title="A", start=datetime(2026, 5, 4, 9, tzinfo=timezone.utc))
        self.assertNotEqual(
            ICalendarFile(build_event(input)).get_uid(),
            ICalendarFile(build_event(input)).get_uid())

    def test_default_end(self):
        event = get_event(build_event(EventInput(
            title="A", start=datetime(2026, 5, 4, 9, tzinfo=timezone.utc))))
        self.assertEqual(
            timedelta(hours=1), event["DTEND"].dt - event["DTSTART"].dt)

    def test_timezone(self):
        event = get_event(build_event(EventInput(
            title="A", start=datetime(2026, 5, 4, 9),
            timezone="Europe/Berlin")))
        self.assertEqual(
            datetime(2026, 5, 4, 7, tzinfo=timezone.utc), event["DTSTART"].dt)

    def test_unknown_timezone(self):
        self.assertRaises(ValidationError, build_event, EventInput(
            title="A", start=datetime(2026, 5, 4, 9),
            timezone="Nowhere/Special"))

    def test_all_day(self):
        event = get_event(build_event(EventInput(
            title="Holiday", start=date(2026, 5, 4), all_day=True)))
        self.assertEqual(date(2026, 5, 4), event["DTSTART"].dt)
        self.assertEqual(date(2026, 5, 5), event["DTEND"].dt)
        self.assertIn("VALUE=DATE", event.to_ical().decode())

    def test_recurrence(self):
        event = get_event(build_event(EventInput(
            title="A", start=datetime(2026, 5, 4, 9, tzinfo=timezone.utc),
            recurrence="RRULE:FREQ=WEEKLY;BYDAY=MO")))
        self.assertEqual(["WEEKLY"], event["RRULE"]["FREQ"])

    def test_invalid_recurrence(self):
        self.assertRaises(ValidationError, build_event, EventInput(
            title="A", start=datetime(2026, 5, 4, 9, tzinfo=timezone.utc),
            recurrence="COUNT=3"))

    def test_missing_title(self):
        with self.assertRaises(ValidationError) as cm:
            build_event(EventInput(
                start=datetime(2026, 5, 4, 9, tzinfo=timezone.utc)))
        self.assertEqual("title", cm.exception.field)

    def test_missing_start(self):
        with self.assertRaises(ValidationError) as cm:
            build_event(EventInput(title="A"))
        self.assertEqual("start", cm.exception.field)

    def test_end_before_start(self):
        with self.assertRaises(ValidationError) as cm:
            build_event(EventInput(
                title="A",
                start=datetime(2026, 5, 4, 9, tzinfo=timezone.utc),
                end=datetime(2026, 5, 4, 8, tzinfo=timezone.utc)))
        self.assertEqual("end", cm.exception.field)

    def test_attendees_need_opt_in(self):
        input = EventInput(
            title="A", start=datetime(2026, 5, 4, 9, tzinfo=timezone.utc),
            attendees=("bob@example.com", ))
        with self.assertRaises(ValidationError) as cm:
            build_event(input)
        self.assertEqual("attendees", cm.exception.field)
        event = get_event(build_event(input._replace(allow_scheduling=True)))
        self.assertEqual(["bob@example.com"], get_attendees(event))


class PatchEventTests(unittest.TestCase):

    def test_round_trip_fidelity(self):
        new = patch_event(EXAMPLE_EVENT, EventPatch(title="Daily standup"),
                          now=NOW)
        self.assertEqual("Daily standup", str(get_event(new)["SUMMARY"]))
        ignore = ["SUMMARY", "DTSTAMP", "LAST-MODIFIED", "SEQUENCE"]
        self.assertEqual(
            strip_properties(EXAMPLE_EVENT, ignore),
            strip_properties(new, ignore))

    def test_bookkeeping(self):
        event = get_event(patch_event(
            EXAMPLE_EVENT, EventPatch(location="Room 2"), now=NOW))
        self.assertEqual(5, int(event["SEQUENCE"]))
        self.assertEqual(NOW, event["DTSTAMP"].dt)
        self.assertEqual(NOW, event["LAST-MODIFIED"].dt)

    def test_no_last_modified_added(self):
        event = get_event(patch_event(
            SIMPLE_EVENT, EventPatch(title="Dinner"), now=NOW))
        self.assertNotIn("LAST-MODIFIED", event)
        self.assertEqual(1, int(event["SEQUENCE"]))

    def test_uid_stable(self):
        new = patch_event(EXAMPLE_EVENT, EventPatch(title="Other"))
        self.assertEqual(
            "standup-1@example.com", ICalendarFile(new).get_uid())

    def test_clear_field(self):
        event = get_event(patch_event(
            EXAMPLE_EVENT, EventPatch(description="")))
        self.assertNotIn("DESCRIPTION", event)
        self.assertEqual("Room 1", str(event["LOCATION"]))

    def test_keeps_recurrence(self):
        event = get_event(patch_event(
            EXAMPLE_EVENT, EventPatch(title="Other")))
        self.assertEqual(["WEEKLY"], event["RRULE"]["FREQ"])

    def test_explicit_recurrence_removal(self):
        event = get_event(patch_event(
            EXAMPLE_EVENT, EventPatch(recurrence="")))
        self.assertNotIn("RRULE", event)

    def test_replace_recurrence(self):
        event = get_event(patch_event(
            EXAMPLE_EVENT, EventPatch(recurrence="FREQ=DAILY;COUNT=2")))
        self.assertEqual(["DAILY"], event["RRULE"]["FREQ"])

    def test_keeps_tzid(self):
        event = get_event(patch_event(EXAMPLE_EVENT, EventPatch(
            start=datetime(2026, 5, 4, 10, 0),
            end=datetime(2026, 5, 4, 10, 30))))
        self.assertEqual("Europe/Berlin", event["DTSTART"].params["TZID"])
        self.assertEqual("Europe/Berlin", event["DTEND"].params["TZID"])
        self.assertEqual(10, event["DTSTART"].dt.hour)
        self.assertEqual(
            timedelta(hours=2), event["DTSTART"].dt.utcoffset())

    def test_converts_into_existing_zone(self):
        event = get_event(patch_event(EXAMPLE_EVENT, EventPatch(
            start=datetime(2026, 5, 4, 8, 0, tzinfo=timezone.utc),
            end=datetime(2026, 5, 4, 8, 30, tzinfo=timezone.utc))))
        self.assertEqual("Europe/Berlin", event["DTSTART"].params["TZID"])
        self.assertEqual(10, event["DTSTART"].dt.hour)

    def test_naive_times_in_timezone(self):
        event = get_event(patch_event(SIMPLE_EVENT, EventPatch(
            start=datetime(2026, 5, 4, 14, 0),
            end=datetime(2026, 5, 4, 15, 0), timezone="Europe/Berlin")))
        self.assertEqual(
            datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc),
            event["DTSTART"].dt)
        self.assertEqual(
            datetime(2026, 5, 4, 13, 0, tzinfo=timezone.utc),
            event["DTEND"].dt)

    def test_naive_times_without_timezone(self):
        event = get_event(patch_event(SIMPLE_EVENT, EventPatch(
            start=datetime(2026, 5, 4, 11, 0))))
        self.assertEqual(
            datetime(2026, 5, 4, 11, 0, tzinfo=timezone.utc),
            event["DTSTART"].dt)

    def test_timezone_into_existing_zone(self):
        event = get_event(patch_event(EXAMPLE_EVENT, EventPatch(
            start=datetime(2026, 5, 4, 4, 0),
            end=datetime(2026, 5, 4, 4, 30), timezone="America/New_York")))
        self.assertEqual("Europe/Berlin", event["DTSTART"].params["TZID"])
        self.assertEqual(10, event["DTSTART"].dt.hour)

    def test_unknown_patch_timezone(self):
        self.assertRaises(
            ValidationError, patch_event, SIMPLE_EVENT,
            EventPatch(start=datetime(2026, 5, 4, 11, 0), timezone="Nowhere"))

    def test_keeps_all_day(self):
        raw = build_event(EventInput(
            title="Holiday", start=date(2026, 5, 4), all_day=True))
        event = get_event(patch_event(raw, EventPatch(
            start=datetime(2026, 5, 6, 9, 0), end=date(2026, 5, 7))))
        self.assertEqual(date(2026, 5, 6), event["DTSTART"].dt)
        self.assertEqual(date(2026, 5, 7), event["DTEND"].dt)

    def test_start_after_end(self):
        self.assertRaises(
            ValidationError, patch_event, EXAMPLE_EVENT,
            EventPatch(start=datetime(2026, 5, 4, 10, 0)))

    def test_start_can_not_be_cleared(self):
        self.assertRaises(
            ValidationError, patch_event, EXAMPLE_EVENT, EventPatch(start=""))

    def test_garbage(self):
        self.assertRaises(
            InvalidFileContents, patch_event, "garbage",
            EventPatch(title="x"))

    def test_check_recurrence(self):
        fi = ICalendarFile(EXAMPLE_EVENT)
        fi.get_event().pop("RRULE")
        with self.assertRaises(RecurrenceLostError) as cm:
            check_recurrence(fi, True)
        self.assertEqual("standup-1@example.com", cm.exception.uid)
        check_recurrence(fi, True, removal_requested=True)
        check_recurrence(fi, False)


class AlarmTests(unittest.TestCase):

    def test_parse_trigger(self):
        self.assertEqual(timedelta(minutes=-15), parse_trigger("15 minutes"))
        self.assertEqual(timedelta(minutes=-15), parse_trigger("15m"))
        self.assertEqual(timedelta(hours=-1), parse_trigger("1 hour"))
        self.assertEqual(timedelta(days=-2), parse_trigger("2 days before"))
        self.assertEqual(timedelta(minutes=-30), parse_trigger("-PT30M"))
        self.assertRaises(ValidationError, parse_trigger, "eventually")

    def test_add(self):
        new = add_alarm(EXAMPLE_EVENT, "1 hour", now=NOW)
        alarms = list_alarms(new)
        self.assertEqual(2, len(alarms))
        self.assertEqual(timedelta(minutes=-10), alarms[0]["TRIGGER"].dt)
        self.assertEqual(timedelta(hours=-1), alarms[1]["TRIGGER"].dt)
        self.assertEqual("DISPLAY", str(alarms[1]["ACTION"]))
        event = get_event(new)
        self.assertEqual(5, int(event["SEQUENCE"]))
        self.assertIn("RRULE", event)

    def test_remove_one(self):
        raw = add_alarm(EXAMPLE_EVENT, "1 hour")
        alarms = list_alarms(remove_alarm(raw, 0))
        self.assertEqual(1, len(alarms))
        self.assertEqual(timedelta(hours=-1), alarms[0]["TRIGGER"].dt)

    def test_remove_all(self):
        raw = add_alarm(EXAMPLE_EVENT, "1 hour")
        new = remove_alarm(raw)
        self.assertEqual([], list_alarms(new))
        self.assertEqual("Standup", str(get_event(new)["SUMMARY"]))

    def test_remove_invalid_index(self):
        self.assertRaises(ValidationError, remove_alarm, EXAMPLE_EVENT, 1)
        self.assertRaises(ValidationError, remove_alarm, SIMPLE_EVENT)


class OccurrenceTests(unittest.TestCase):

    def test_single(self):
        event = get_event(SIMPLE_EVENT)
        self.assertEqual(
            [(datetime(2026, 5, 4, 12, tzinfo=timezone.utc),
              datetime(2026, 5, 4, 13, tzinfo=timezone.utc))],
            list(iter_occurrences(
                event, datetime(2026, 5, 4, tzinfo=timezone.utc),
                datetime(2026, 5, 5, tzinfo=timezone.utc))))
        self.assertEqual([], list(iter_occurrences(
            event, datetime(2026, 5, 5, tzinfo=timezone.utc),
            datetime(2026, 5, 6, tzinfo=timezone.utc))))

    def test_weekly(self):
        event = get_event(build_event(EventInput(
            title="Weekly", start=datetime(2026, 5, 4, 9, tzinfo=timezone.utc),
            end=datetime(2026, 5, 4, 10, tzinfo=timezone.utc),
            recurrence="FREQ=WEEKLY;COUNT=3")))
        starts = [s for (s, e) in iter_occurrences(
            event, datetime(2026, 5, 1, tzinfo=timezone.utc),
            datetime(2026, 6, 1, tzinfo=timezone.utc))]
        self.assertEqual([
            datetime(2026, 5, 4, 9, tzinfo=timezone.utc),
            datetime(2026, 5, 11, 9, tzinfo=timezone.utc),
            datetime(2026, 5, 18, 9, tzinfo=timezone.utc)], starts)

    def test_all_day(self):
        event = get_event(build_event(EventInput(
            title="Holiday", start=date(2026, 5, 4), all_day=True)))
        self.assertEqual(
            [(datetime(2026, 5, 4, tzinfo=timezone.utc),
              datetime(2026, 5, 5, tzinfo=timezone.utc))],
            list(iter_occurrences(
                event, datetime(2026, 5, 4, 12, tzinfo=timezone.utc),
                datetime(2026, 5, 4, 13, tzinfo=timezone.utc))))


OVERRIDDEN_SERIES = """\
BEGIN:VCALENDAR\r
VERSION:2.0\r
PRODID:-//Other Client//EN\r
BEGIN:VEVENT\r
UID:series-1\r
DTSTAMP:20260101T000000Z\r
SUMMARY:Sync\r
DTSTART:20260504T090000Z\r
DTEND:20260504T093000Z\r
RRULE:FREQ=DAILY;COUNT=3\r
ATTENDEE;CN=Bob:mailto:bob@example.com\r
END:VEVENT\r
BEGIN:VEVENT\r
UID:series-1\r
DTSTAMP:20260101T000000Z\r
RECURRENCE-ID:20260505T090000Z\r
SUMMARY:Sync (moved)\r
DTSTART:20260505T150000Z\r
DTEND:20260505T153000Z\r
END:VEVENT\r
END:VCALENDAR\r
"""


class InstanceTests(unittest.TestCase):

    def test_overrides_replace_instances(self):
        cal = ICalendarFile(OVERRIDDEN_SERIES).calendar
        instances = sorted(
            (s, str(comp["SUMMARY"])) for (comp, s, e) in iter_instances(
                cal, datetime(2026, 5, 1, tzinfo=timezone.utc),
                datetime(2026, 5, 10, tzinfo=timezone.utc)))
        self.assertEqual([
            (datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc), "Sync"),
            (datetime(2026, 5, 5, 15, 0, tzinfo=timezone.utc),
             "Sync (moved)"),
            (datetime(2026, 5, 6, 9, 0, tzinfo=timezone.utc), "Sync"),
        ], instances)

    def test_occurrence_from_component(self):
        comp = get_event(OVERRIDDEN_SERIES)
        start = datetime(2026, 5, 6, 9, 0, tzinfo=timezone.utc)
        end = datetime(2026, 5, 6, 9, 30, tzinfo=timezone.utc)
        occurrence = occurrence_from_component(comp, start, end)
        self.assertEqual(EventOccurrence(
            "series-1", "Sync", start, end, False, None, None, ["Bob"]),
            occurrence)

    def test_all_day_occurrence(self):
        comp = get_event(build_event(EventInput(
            title="Holiday", start=date(2026, 5, 4), all_day=True),
            uid="holiday-1"))
        start = datetime(2026, 5, 4, tzinfo=timezone.utc)
        occurrence = occurrence_from_component(
            comp, start, start + timedelta(days=1))
        self.assertTrue(occurrence.all_day)
        self.assertEqual("Holiday", occurrence.summary)
