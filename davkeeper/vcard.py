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

"""VCard file handling."""

import collections
import uuid
from datetime import datetime, timezone
from typing import Optional

import vobject
import vobject.vcard

from .errors import ValidationError
from .store import File, InvalidFileContents


ContactInput = collections.namedtuple(
    "ContactInput", ["name", "email", "phone", "organization"],
    defaults=[None, None, None, None])


ContactPatch = collections.namedtuple(
    "ContactPatch", ["name", "email", "phone", "organization"],
    defaults=[None, None, None, None])
ContactPatch.__doc__ = """Changes to an existing contact.

None leaves a field untouched; an empty string removes it.
"""


class VCardFile(File):

    content_type = "text/vcard"

    def __init__(self, content) -> None:
        super().__init__(content)
        self._addressbook = None

    def validate(self) -> None:
        c = self.content.strip()
        if (not c.startswith(("BEGIN:VCARD\r\n", "BEGIN:VCARD\n"))
                or not c.endswith("\nEND:VCARD")):
            raise InvalidFileContents(
                self.content_type,
                self.content,
                "Missing header and trailer lines",
            )
        try:
            valid = self.addressbook.validate()
        except vobject.base.ValidateError as exc:
            raise InvalidFileContents(
                self.content_type, self.content, str(exc)) from exc
        if not valid:
            raise InvalidFileContents(
                self.content_type,
                self.content,
                "Invalid VCard file")

    @property
    def addressbook(self):
        if self._addressbook is None:
            try:
                self._addressbook = vobject.readOne(self.content)
            except vobject.base.ParseError as exc:
                raise InvalidFileContents(
                    self.content_type, self.content, str(exc)) from exc
        return self._addressbook

    def serialize(self) -> str:
        return self.addressbook.serialize()

    def get_uid(self) -> str:
        try:
            return self.addressbook.uid.value
        except AttributeError as exc:
            raise KeyError from exc

    def describe(self, name):
        try:
            return self.addressbook.fn.value
        except AttributeError:
            return super().describe(name)


def split_name(name: str) -> vobject.vcard.Name:
    """Derive the structured N value from a formatted name.

    The text after the last space is the family name, everything before it
    the given name(s). A single word is used as the family name.
    """
    name = name.strip()
    given, sep, family = name.rpartition(" ")
    if not sep:
        return vobject.vcard.Name(family=name)
    return vobject.vcard.Name(family=family, given=given.strip())


def _rev_now(now: Optional[datetime] = None) -> str:
    if now is None:
        now = datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def build_contact(input: ContactInput, uid: Optional[str] = None) -> str:
    """Build a new vCard 3.0.

    Raises:
      ValidationError: if the name is missing
    Returns: vCard text
    """
    if not input.name or not input.name.strip():
        raise ValidationError(
            "name", "A contact name is required.",
            "Provide the full name of the contact.")
    card = vobject.vCard()
    card.add("version").value = "3.0"
    card.add("fn").value = input.name.strip()
    card.add("n").value = split_name(input.name)
    card.add("uid").value = uid or str(uuid.uuid4())
    if input.email:
        email = card.add("email")
        email.value = input.email
        email.type_param = "INTERNET"
    if input.phone:
        card.add("tel").value = input.phone
    if input.organization:
        card.add("org").value = [input.organization]
    return card.serialize()


def _set_first(card, name: str, value, **params) -> None:
    """Replace the value of the first occurrence of a property.

    The line keeps its group and parameters; further occurrences are kept.
    An empty string removes the first occurrence.
    """
    if value is None:
        return
    lines = card.contents.get(name, [])
    if value == "":
        if lines:
            card.remove(lines[0])
        return
    if lines:
        lines[0].value = value
        return
    line = card.add(name)
    line.value = value
    for key, param in params.items():
        setattr(line, key + "_param", param)


def patch_contact(raw: str, patch: ContactPatch,
                  now: Optional[datetime] = None) -> str:
    """Apply a patch to an existing vCard, keeping everything else.

    Args:
      raw: Current vCard text as stored on the server
      patch: ContactPatch; None fields are left untouched
      now: Modification timestamp used for REV
    Raises:
      InvalidFileContents: if raw can not be parsed
      ValidationError: if the name is being cleared
    Returns: vCard text
    """
    card = VCardFile(raw).addressbook
    if patch.name is not None:
        if not patch.name.strip():
            raise ValidationError(
                "name", "A contact name can not be removed.",
                "Provide a new name instead.")
        _set_first(card, "fn", patch.name.strip())
        _set_first(card, "n", split_name(patch.name))
    _set_first(card, "email", patch.email, type="INTERNET")
    _set_first(card, "tel", patch.phone)
    if patch.organization is not None:
        _set_first(
            card, "org",
            [patch.organization] if patch.organization else "")
    if "rev" in card.contents:
        card.rev.value = _rev_now(now)
    return card.serialize()


ContactSummary = collections.namedtuple(
    "ContactSummary",
    ["uid", "name", "given", "family", "emails", "phones", "organization"])


def _join(value) -> Optional[str]:
    # Structured vCard values may be lists of parts.
    if isinstance(value, list):
        value = " ".join(part for part in value if part)
    return value or None


def _values(card, name: str) -> list[str]:
    return [str(line.value) for line in card.contents.get(name, [])
            if line.value]


def summarize_contact(raw: str) -> ContactSummary:
    """Extract the fields shown when listing or searching contacts.

    Raises:
      InvalidFileContents: if raw can not be parsed
    """
    card = VCardFile(raw).addressbook
    given = family = None
    if "n" in card.contents:
        n = card.n.value
        given = _join(n.given)
        family = _join(n.family)
    name = card.fn.value if "fn" in card.contents else ""
    if not name:
        name = " ".join(p for p in (given, family) if p) or "(No name)"
    organization = None
    if "org" in card.contents:
        organization = _join(card.org.value)
    uid = card.uid.value if "uid" in card.contents else None
    return ContactSummary(
        uid, name, given, family, _values(card, "email"),
        _values(card, "tel"), organization)
