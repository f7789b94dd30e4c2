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

"""Resources, collections and file type handlers.

ETags used in this file are kept exactly as the server sent them, quotes
included, so they can be echoed back in If-Match headers.
"""

import collections
import mimetypes
from typing import Optional

COLLECTION_TYPE_CALENDAR = "calendar"
COLLECTION_TYPE_ADDRESSBOOK = "addressbook"
VALID_COLLECTION_TYPES = (COLLECTION_TYPE_CALENDAR, COLLECTION_TYPE_ADDRESSBOOK)

MIMETYPES = mimetypes.MimeTypes()
MIMETYPES.add_type("text/calendar", ".ics")  # type: ignore
MIMETYPES.add_type("text/vcard", ".vcf")  # type: ignore


ResourceHandle = collections.namedtuple(
    "ResourceHandle", ["uid", "url", "etag", "raw"])
ResourceHandle.__doc__ = """A single event or contact as last seen on the server.

uid: stable identifier, assigned at creation and never changed
url: server-assigned location
etag: most recently observed version token, or None
raw: complete wire text, including properties nothing here interprets
"""


Collection = collections.namedtuple(
    "Collection", ["url", "displayname", "ctag", "kind"])


TimeRange = collections.namedtuple("TimeRange", ["start", "end"])


def collection_url_for(resource_url: str) -> str:
    """Return the URL of the collection containing a resource."""
    return resource_url[:resource_url.rindex("/") + 1]


def matches_collection(collection: Collection, selector: str) -> bool:
    """Check whether a display name or URL selects a collection."""
    if collection.url == selector or collection.url.rstrip("/") == selector.rstrip("/"):
        return True
    return (collection.displayname or "").lower() == selector.lower()


class InvalidFileContents(Exception):
    """Invalid file contents."""

    def __init__(self, content_type: str, data, error) -> None:
        self.content_type = content_type
        self.data = data
        self.error = error

    def __str__(self) -> str:
        return f"Invalid {self.content_type} file: {self.error}"


class File:
    """A file type handler.

    Wraps the grammar library for one content type behind parse, serialize
    and a handful of accessors, so the services never touch wire text.
    """

    content_type: str

    def __init__(self, content: str) -> None:
        self.content = content

    @classmethod
    def from_text(cls, text: str) -> "File":
        fi = cls(text)
        fi.validate()
        return fi

    def validate(self) -> None:
        """Verify that file contents are valid.

        :raise InvalidFileContents: Raised if a file is not valid
        """

    def serialize(self) -> str:
        """Serialize the (possibly modified) parsed tree back to text."""
        raise NotImplementedError(self.serialize)

    def get_uid(self) -> str:
        """Return UID.

        :raise KeyError: If there is no UID set on this file
        :raise InvalidFileContents: If the file is misformatted
        Returns: UID
        """
        raise NotImplementedError(self.get_uid)

    def describe(self, name: str) -> str:
        """Describe the contents of this file, e.g. for result summaries."""
        return name


def open_by_content_type(content: str, content_type: str,
                         file_handlers: dict[str, type[File]]) -> File:
    """Open a file based on content type.

    Args:
      content: text of the resource
      content_type: MIME type
    Returns: File instance
    """
    return file_handlers.get(content_type.split(";")[0].strip(), File)(content)


def guess_content_type(name: str) -> Optional[str]:
    (mime_type, _) = MIMETYPES.guess_type(name)
    return mime_type
