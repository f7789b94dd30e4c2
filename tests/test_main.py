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

import argparse
import asyncio
import contextlib
import io
import os
import unittest
from unittest import mock

from davkeeper.__main__ import add_tool_parser, main, tool_arguments
from davkeeper.tools import TOOLS


class ToolParserTests(unittest.TestCase):

    def parse(self, name, argv):
        parser = argparse.ArgumentParser()
        subparsers = parser.add_subparsers(dest="subcommand")
        add_tool_parser(subparsers, TOOLS[name])
        return parser.parse_args(argv)

    def test_create_event(self):
        args = self.parse("create_event", [
            "create-event", "--title", "Review", "--start", "2026-05-04",
            "--all-day", "--attendees", "a@example.com",
            "--attendees", "b@example.com", "--allow-scheduling"])
        self.assertIs(TOOLS["create_event"], args.tool)
        kwargs = tool_arguments(args, args.tool)
        self.assertEqual("Review", kwargs["title"])
        self.assertEqual("2026-05-04", kwargs["start"])
        self.assertIsNone(kwargs["end"])
        self.assertTrue(kwargs["all_day"])
        self.assertTrue(kwargs["allow_scheduling"])
        self.assertEqual(
            ["a@example.com", "b@example.com"], kwargs["attendees"])

    def test_defaults(self):
        args = self.parse("remove_alarm", ["remove-alarm", "--uid", "x"])
        self.assertEqual(
            {"uid": "x", "index": "all", "calendar": None},
            tool_arguments(args, args.tool))


class MainTests(unittest.TestCase):

    def test_no_subcommand(self):
        with contextlib.redirect_stdout(io.StringIO()):
            self.assertEqual(1, asyncio.run(main([])))

    def test_version(self):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            with self.assertRaises(SystemExit) as cm:
                asyncio.run(main(["--version"]))
        self.assertEqual(0, cm.exception.code)
        self.assertIn("davkeeper 0.1.0", out.getvalue())

    def test_missing_config(self):
        err = io.StringIO()
        with mock.patch.dict(os.environ, {}, clear=True):
            with contextlib.redirect_stderr(err):
                self.assertEqual(1, asyncio.run(main(["check"])))
        self.assertIn("DAV_URL", err.getvalue())
        self.assertIn("Fix: ", err.getvalue())
