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

"""Address book (CardDAV) contact service.

https://tools.ietf.org/html/rfc6352
"""

import logging
import uuid
from typing import Optional

from .service import CollectionService
from .store import COLLECTION_TYPE_ADDRESSBOOK, InvalidFileContents
from .vcard import (
    ContactInput,
    ContactPatch,
    ContactSummary,
    VCardFile,
    build_contact,
    patch_contact,
    summarize_contact,
)

logger = logging.getLogger(__name__)


class AddressBookService(CollectionService):
    """Create, change and delete contacts in address book collections."""

    kind = COLLECTION_TYPE_ADDRESSBOOK
    resource_type = "contact"
    collection_noun = "address book"
    file_class = VCardFile
    extension = ".vcf"

    def build(self, input: ContactInput) -> tuple[str, str]:
        uid = str(uuid.uuid4())
        return (build_contact(input, uid=uid), uid)

    def transform(self, raw: str, patch: ContactPatch) -> str:
        return patch_contact(raw, patch)

    async def list_contacts(self, collection: Optional[str] = None
                            ) -> list[ContactSummary]:
        """List the contacts of the resolved address books by name."""
        ret = []
        for handle in await self.fetch_all(collection=collection):
            try:
                ret.append(summarize_contact(handle.raw))
            except InvalidFileContents as exc:
                logger.warning("Skipping unparsable %s: %s", handle.url, exc)
        ret.sort(key=lambda c: c.name.lower())
        return ret
