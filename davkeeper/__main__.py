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

"""Davkeeper command-line handling."""

import argparse
import asyncio
import inspect
import logging
import sys

from . import __version__
from .client import DAVClient, InvalidResponse
from .config import Config
from .errors import ConfigError, DavkeeperError, format_startup_error
from .tools import TOOLS, make_context

logger = logging.getLogger(__name__)


def add_tool_parser(subparsers, tool):
    """Add a subcommand with one --option per keyword argument of a verb."""
    parser = subparsers.add_parser(
        tool.name.replace("_", "-"), help=tool.description,
        description=tool.description)
    parser.set_defaults(tool=tool)
    for name, param in inspect.signature(tool.function).parameters.items():
        if param.kind != inspect.Parameter.KEYWORD_ONLY:
            continue
        option = "--" + name.replace("_", "-")
        if param.default is False:
            parser.add_argument(option, dest=name, action="store_true")
        elif name == "attendees":
            parser.add_argument(
                option, dest=name, action="append", metavar="EMAIL")
        else:
            parser.add_argument(option, dest=name, default=param.default)
    return parser


def tool_arguments(args, tool):
    return {
        name: getattr(args, name)
        for (name, param) in inspect.signature(tool.function).parameters.items()
        if param.kind == inspect.Parameter.KEYWORD_ONLY}


async def check_connection(ctx):
    """List the collections found on the server."""
    lines = []
    for service in (ctx.calendars, ctx.contacts):
        for collection in await service.list_collections():
            lines.append("%s: %s (%s)" % (
                service.collection_noun, collection.displayname or "",
                collection.url))
    return "\n".join(lines) or "No collections found."


async def main(argv=None):
    parser = argparse.ArgumentParser(prog="davkeeper")
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s " + ".".join(map(str, __version__)),
    )
    parser.add_argument(
        "--config", type=str, default=None, metavar="PATH",
        help="INI file with a [dav] section. Environment variables "
             "take precedence.")

    subparsers = parser.add_subparsers(help="Subcommands", dest="subcommand")
    subparsers.add_parser(
        "check", help="Connect to the server and list collections")
    for name in sorted(TOOLS):
        add_tool_parser(subparsers, TOOLS[name])
    args = parser.parse_args(argv)

    if args.subcommand is None:
        parser.print_help()
        return 1

    try:
        config = Config.load(path=args.config)
    except ConfigError as e:
        print(format_startup_error(e), file=sys.stderr)
        return 1

    logging.basicConfig(
        level=config.log_level_number, stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    client = DAVClient(
        config.url, config.username, config.password, timeout=config.timeout)
    ctx = make_context(client, config)
    try:
        if args.subcommand == "check":
            try:
                print(await check_connection(ctx))
            except (DavkeeperError, InvalidResponse) as e:
                print(format_startup_error(e, config.url), file=sys.stderr)
                return 1
            return 0
        result = await args.tool.function(ctx, **tool_arguments(args, args.tool))
    finally:
        await client.close()
    if result.is_error:
        print(result.text, file=sys.stderr)
        return 1
    print(result.text)
    return 0


def cli():
    sys.exit(asyncio.run(main(sys.argv[1:])))


if __name__ == "__main__":
    cli()
