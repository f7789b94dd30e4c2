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

import asyncio
import logging
import unittest
from datetime import datetime, timezone

from davkeeper.caldav import CalendarService
from davkeeper.errors import (
    ConflictError,
    NetworkError,
    NotFoundError,
    SchedulingSideEffectWarning,
    ValidationError,
)
from davkeeper.icalendar import (
    EventInput,
    EventPatch,
    ICalendarFile,
    build_event,
    list_alarms,
    patch_event,
)
from davkeeper.memory import MemoryDAVClient
from davkeeper.retry import RetryExecutor
from davkeeper.store import ResourceHandle, TimeRange


async def no_sleep(delay):
    pass


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


STANDUP = EventInput(
    title="Standup", start=utc(2026, 5, 4, 9, 0), end=utc(2026, 5, 4, 9, 15))


def reports(client):
    return [r for r in client.requests if r[0] == "REPORT"]


class CalendarServiceTests(unittest.TestCase):

    def setUp(self):
        super().setUp()
        logging.disable(logging.WARNING)
        self.addCleanup(logging.disable, logging.NOTSET)
        self.client = MemoryDAVClient()
        self.work = self.client.add_collection("work", displayname="Work")
        self.home = self.client.add_collection("home", displayname="Home")

    def service(self, client=None, **kwargs):
        return CalendarService(
            client or self.client,
            retry=RetryExecutor(sleep=no_sleep, jitter=False), **kwargs)

    def event(self, handle):
        return ICalendarFile(self.client.get_text(handle.url)).get_event()

    def test_standup_lifecycle(self):
        service = self.service()

        async def run_test():
            created = await service.create(STANDUP)
            handle = created.handle
            self.assertEqual([], created.warnings)
            self.assertEqual(self.work.url + handle.uid + ".ics", handle.url)
            self.assertEqual("Standup", str(self.event(handle)["SUMMARY"]))

            listing = await service.fetch_all()
            self.assertEqual([handle.uid], [h.uid for h in listing])

            updated = await service.update(
                handle.uid, EventPatch(title="Daily standup"))
            self.assertEqual(handle.uid, updated.handle.uid)
            self.assertEqual(handle.url, updated.handle.url)
            self.assertNotEqual(handle.etag, updated.handle.etag)
            event = self.event(handle)
            self.assertEqual("Daily standup", str(event["SUMMARY"]))
            self.assertEqual(handle.uid, str(event["UID"]))
            self.assertEqual(1, int(event["SEQUENCE"]))

            await service.delete(handle.uid)
            self.assertIsNone(self.client.get_text(handle.url))
            self.assertEqual([], await service.fetch_all())
            with self.assertRaises(NotFoundError):
                await service.update(handle.uid, EventPatch(title="Again"))

        asyncio.run(run_test())

    def test_collection_selection(self):
        service = self.service()

        async def run_test():
            created = await service.create(STANDUP, collection="Home")
            self.assertTrue(created.handle.url.startswith(self.home.url))
            self.assertEqual(
                1, len(await service.fetch_all(collection="home")))
            self.assertEqual(
                0, len(await service.fetch_all(collection=self.work.url)))
            self.assertEqual(
                1, len(await service.fetch_all(collection="all")))
            with self.assertRaises(NotFoundError) as cm:
                await service.fetch_all(collection="Holidays")
            self.assertIn("'Work'", cm.exception.hint)

        asyncio.run(run_test())

    def test_default_collection(self):
        service = self.service(default_collection="Home")

        async def run_test():
            created = await service.create(STANDUP)
            self.assertTrue(created.handle.url.startswith(self.home.url))
            created = await service.create(STANDUP, collection="Work")
            self.assertTrue(created.handle.url.startswith(self.work.url))

        asyncio.run(run_test())

    def test_no_calendars(self):
        service = self.service(MemoryDAVClient())

        async def run_test():
            with self.assertRaises(NotFoundError):
                await service.create(STANDUP)

        asyncio.run(run_test())

    def test_validation_before_network(self):
        service = self.service()

        async def run_test():
            with self.assertRaises(ValidationError):
                await service.create(EventInput(start=utc(2026, 5, 4, 9)))
            with self.assertRaises(ValidationError):
                await service.update("uid", EventPatch())
            self.assertEqual([], self.client.requests)

        asyncio.run(run_test())

    def test_cache_hit(self):
        service = self.service()

        async def run_test():
            await service.create(STANDUP)
            await service.fetch_all(collection="Work")
            count = len(reports(self.client))
            await service.fetch_all(collection="Work")
            self.assertEqual(count, len(reports(self.client)))

        asyncio.run(run_test())

    def test_cache_invalidated_by_own_writes(self):
        service = self.service()

        async def run_test():
            first = await service.create(STANDUP)
            self.assertEqual(1, len(await service.fetch_all()))
            second = await service.create(STANDUP._replace(title="Retro"))
            self.assertEqual(
                {first.handle.uid, second.handle.uid},
                {h.uid for h in await service.fetch_all()})
            await service.update(first.handle.uid, EventPatch(title="Sync"))
            titles = sorted(
                str(ICalendarFile(h.raw).get_event()["SUMMARY"])
                for h in await service.fetch_all())
            self.assertEqual(["Retro", "Sync"], titles)
            await service.delete(second.handle.uid)
            self.assertEqual(
                [first.handle.uid],
                [h.uid for h in await service.fetch_all()])

        asyncio.run(run_test())

    def test_cache_notices_external_changes(self):
        service = self.service()

        async def run_test():
            created = await service.create(STANDUP)
            await service.fetch_all()
            self.client.put_external(
                self.work.url + "other.ics",
                build_event(STANDUP._replace(title="Other"), uid="other"))
            uids = {h.uid for h in await service.fetch_all()}
            self.assertEqual({created.handle.uid, "other"}, uids)

        asyncio.run(run_test())

    def test_without_ctags(self):
        client = MemoryDAVClient(ctags=False)
        client.add_collection("work")
        service = self.service(client)

        async def run_test():
            await service.create(STANDUP)
            await service.fetch_all()
            count = len(reports(client))
            await service.fetch_all()
            self.assertEqual(count + 1, len(reports(client)))

        asyncio.run(run_test())

    def test_time_range(self):
        service = self.service()

        async def run_test():
            await service.create(STANDUP)
            self.assertEqual(1, len(await service.fetch_all(
                TimeRange(utc(2026, 5, 4), utc(2026, 5, 5)))))
            self.assertEqual(0, len(await service.fetch_all(
                TimeRange(utc(2026, 5, 5), utc(2026, 5, 6)))))

        asyncio.run(run_test())

    def test_concurrent_change_is_a_conflict(self):
        service = self.service()

        async def run_test():
            created = await service.create(STANDUP)
            url = created.handle.url
            external = build_event(
                STANDUP._replace(title="Moved elsewhere"),
                uid=created.handle.uid)

            def racing_transform(raw, patch):
                self.client.put_external(url, external)
                return patch_event(raw, patch)

            service.transform = racing_transform
            with self.assertRaises(ConflictError):
                await service.update(
                    created.handle.uid, EventPatch(title="Mine"))
            self.assertEqual(external, self.client.get_text(url))
            self.assertNotIn(self.work.url, service.cache)

        asyncio.run(run_test())

    def test_create_retry_does_not_duplicate(self):
        service = self.service()
        self.client.lose_next_response("create_resource")

        async def run_test():
            created = await service.create(STANDUP, collection="Work")
            listing = await service.fetch_all(collection="Work")
            self.assertEqual([created.handle.uid], [h.uid for h in listing])

        asyncio.run(run_test())

    def test_persistent_network_failure(self):
        service = self.service()
        self.client.fail_next(
            "create_resource", ConnectionResetError("reset"), times=3)

        async def run_test():
            with self.assertRaises(NetworkError) as cm:
                await service.create(STANDUP)
            self.assertEqual(3, cm.exception.attempts)
            self.assertEqual([], await service.fetch_all())

        asyncio.run(run_test())

    def test_missing_listing_etags(self):
        client = MemoryDAVClient(listing_etags=False)
        client.add_collection("work")
        service = self.service(client)

        async def run_test():
            created = await service.create(STANDUP)
            await service.update(created.handle.uid, EventPatch(location="B"))
            await service.delete(created.handle.uid)
            self.assertIsNone(client.get_text(created.handle.url))
            for method, url, headers in client.requests:
                if method in ("PUT", "DELETE") and \
                        "If-None-Match" not in headers:
                    self.assertIn("If-Match", headers)

        asyncio.run(run_test())

    def test_missing_listing_etags_fetched_once(self):
        client = MemoryDAVClient(listing_etags=False)
        client.add_collection("work")
        service = self.service(client)

        async def run_test():
            created = await service.create(STANDUP)
            del client.requests[:]
            await service.update(created.handle.uid, EventPatch(location="B"))
            self.assertEqual(
                1, len([r for r in client.requests if r[0] == "GET"]))
            self.assertEqual("PUT", client.requests[-1][0])

        asyncio.run(run_test())

    def test_update_retry_after_lost_response(self):
        service = self.service()

        async def run_test():
            created = await service.create(STANDUP)
            self.client.lose_next_response("update_resource")
            updated = await service.update(
                created.handle.uid, EventPatch(title="Daily standup"))
            self.assertEqual(
                "Daily standup", str(self.event(created.handle)["SUMMARY"]))
            self.assertEqual(
                self.client.collections[self.work.url].get(
                    created.handle.uid + ".ics")[1],
                updated.handle.etag)

        asyncio.run(run_test())

    def test_list_occurrences(self):
        service = self.service()

        async def run_test():
            await service.create(STANDUP._replace(
                title="Weekly", recurrence="FREQ=WEEKLY;BYDAY=MO",
                location="Room 1"))
            await service.create(EventInput(
                title="Lunch", start=utc(2026, 5, 5, 12, 0)), collection="Home")
            await service.create(EventInput(
                title="Later", start=utc(2026, 6, 1, 12, 0)))
            occurrences = await service.list_occurrences(
                utc(2026, 5, 1), utc(2026, 5, 15))
            self.assertEqual(
                [("Weekly", utc(2026, 5, 4, 9, 0)),
                 ("Lunch", utc(2026, 5, 5, 12, 0)),
                 ("Weekly", utc(2026, 5, 11, 9, 0))],
                [(o.summary, o.start) for o in occurrences])
            self.assertEqual("Room 1", occurrences[0].location)
            self.assertEqual(utc(2026, 5, 5, 13, 0), occurrences[1].end)
            self.assertFalse(occurrences[1].all_day)
            occurrences = await service.list_occurrences(
                utc(2026, 5, 1), utc(2026, 5, 15), collection="Home")
            self.assertEqual(["Lunch"], [o.summary for o in occurrences])

        asyncio.run(run_test())

    def test_list_occurrences_skips_invalid(self):
        service = self.service()
        fetch_all = service.fetch_all

        async def fetch_with_garbage(time_range=None, collection=None):
            handles = await fetch_all(time_range, collection)
            return handles + [ResourceHandle(
                None, self.work.url + "broken.ics", None, "not a calendar")]
        service.fetch_all = fetch_with_garbage

        async def run_test():
            await service.create(STANDUP)
            occurrences = await service.list_occurrences(
                utc(2026, 5, 4), utc(2026, 5, 5))
            self.assertEqual(["Standup"], [o.summary for o in occurrences])

        asyncio.run(run_test())

    def test_scheduling_warning(self):
        service = self.service()

        async def run_test():
            created = await service.create(STANDUP._replace(
                attendees=("bob@example.com", ), allow_scheduling=True))
            [warning] = created.warnings
            self.assertIsInstance(warning, SchedulingSideEffectWarning)
            self.assertEqual(["bob@example.com"], warning.attendees)
            updated = await service.update(
                created.handle.uid, EventPatch(location="Room 2"))
            self.assertEqual(1, len(updated.warnings))

        asyncio.run(run_test())

    def test_alarms(self):
        service = self.service()

        async def run_test():
            created = await service.create(STANDUP)
            uid = created.handle.uid
            await service.add_alarm(uid, "15 minutes")
            await service.add_alarm(uid, "1 day", "Prepare")
            alarms = list_alarms(self.client.get_text(created.handle.url))
            self.assertEqual(
                ["Standup", "Prepare"],
                [str(a["DESCRIPTION"]) for a in alarms])
            await service.remove_alarm(uid, 0)
            alarms = list_alarms(self.client.get_text(created.handle.url))
            self.assertEqual(["Prepare"], [str(a["DESCRIPTION"]) for a in alarms])
            await service.remove_alarm(uid)
            self.assertEqual(
                [], list_alarms(self.client.get_text(created.handle.url)))
            with self.assertRaises(ValidationError):
                await service.remove_alarm(uid)

        asyncio.run(run_test())

    def test_recurrence_survives_updates(self):
        service = self.service()

        async def run_test():
            created = await service.create(
                STANDUP._replace(recurrence="FREQ=WEEKLY;BYDAY=MO"))
            uid = created.handle.uid
            await service.update(uid, EventPatch(title="Weekly standup"))
            await service.add_alarm(uid, "5 minutes")
            self.assertIn("RRULE", self.event(created.handle))
            await service.update(uid, EventPatch(recurrence=""))
            self.assertNotIn("RRULE", self.event(created.handle))

        asyncio.run(run_test())
