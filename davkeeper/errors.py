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

"""Error taxonomy.

Every error carries a plain-language message and, where there is something
the caller can do about it, a hint describing the corrective action.
"""

from typing import Optional

REFETCH_HINT = "Fetch the current version and resubmit your changes."


class DavkeeperError(Exception):
    """Base class for errors surfaced to callers."""

    kind = "error"
    hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint

    def describe(self) -> str:
        """Return the message followed by the hint, if any."""
        if self.hint:
            return f"{self.message}\n\nFix: {self.hint}"
        return self.message


class ValidationError(DavkeeperError):
    """Malformed or missing input; detected before any network call."""

    kind = "validation"

    def __init__(self, field: Optional[str], message: str,
                 hint: Optional[str] = None) -> None:
        super().__init__(message, hint)
        self.field = field


class NotFoundError(DavkeeperError):
    """The target resource or collection does not exist."""

    kind = "not-found"

    def __init__(self, what: str, identifier: str,
                 hint: Optional[str] = None) -> None:
        if hint is None:
            hint = f"Search for the {what} again to obtain a current identifier."
        super().__init__(f"No {what} found with identifier {identifier!r}.", hint)
        self.what = what
        self.identifier = identifier


class ConflictError(DavkeeperError):
    """A version precondition failed: someone else changed the resource.

    The resource is never merged or retried automatically.
    """

    kind = "conflict"
    hint = REFETCH_HINT

    def __init__(self, resource_type: str, resource_url: Optional[str],
                 stale_etag: Optional[str] = None,
                 detail: Optional[str] = None,
                 hint: Optional[str] = None,
                 message: Optional[str] = None) -> None:
        if message is None:
            message = (
                f"The {resource_type} was modified by another client since "
                "you last read it.")
        if detail:
            message += " " + detail
        super().__init__(message, hint)
        self.resource_type = resource_type
        self.resource_url = resource_url
        self.stale_etag = stale_etag


class DuplicateResourceError(ConflictError):
    """A resource with the same name or UID already exists."""

    def __init__(self, resource_type: str, resource_url: Optional[str]) -> None:
        super().__init__(
            resource_type, resource_url,
            hint=f"Update the existing {resource_type} instead of "
                 "creating it again.",
            message=f"A {resource_type} with this identifier already "
                    f"exists at {resource_url}.")


class NetworkError(DavkeeperError):
    """Transport failure that persisted through every retry attempt."""

    kind = "network"
    hint = "Check that the server is reachable and try again later."

    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class RemoteError(DavkeeperError):
    """The server answered with a status that has no specific meaning here."""

    kind = "remote"

    def __init__(self, operation: str, status: int,
                 url: Optional[str] = None) -> None:
        hint = None
        if status in (401, 403):
            hint = "Verify the configured credentials and permissions."
        elif status == 507:
            hint = "The server is out of storage space."
        super().__init__(f"Failed to {operation}: HTTP {status}", hint)
        self.operation = operation
        self.status = status
        self.url = url


class RecurrenceLostError(DavkeeperError):
    """A mutation would have destroyed a recurrence rule.

    This indicates a bug; the change is aborted before anything is sent.
    """

    kind = "internal"
    hint = "The event was left unchanged. Please report this problem."

    def __init__(self, uid: Optional[str]) -> None:
        super().__init__(
            f"The recurrence rule of event {uid!r} was lost while applying "
            "changes.")
        self.uid = uid


class ConfigError(DavkeeperError):
    """Configuration is missing or invalid."""

    kind = "config"

    def __init__(self, issues) -> None:
        self.issues = list(issues)
        super().__init__(
            "Configuration validation failed:\n" +
            "\n".join("  " + issue for issue in self.issues),
            "Check your environment variables: DAV_URL, DAV_USERNAME and "
            "DAV_PASSWORD are required.")


class SchedulingSideEffectWarning(UserWarning):
    """The written record has attendees; the server may notify them.

    This is advisory and returned next to a successful result.
    """

    def __init__(self, uid: str, attendees) -> None:
        self.uid = uid
        self.attendees = list(attendees)
        super().__init__(
            "This event has attendees (%s). The server may send update "
            "notifications to all attendees." % ", ".join(self.attendees))


def format_startup_error(error: BaseException, url: Optional[str] = None) -> str:
    """Format a startup failure as "what went wrong" plus "how to fix it".

    Args:
      error: The exception raised while starting up
      url: Optional server URL for context
    Returns: Multi-line message
    """
    if isinstance(error, NetworkError) and error.__cause__ is not None:
        return format_startup_error(error.__cause__, url)
    if isinstance(error, DavkeeperError):
        return error.describe()
    text = str(error).lower()
    at_url = f" {url}" if url else ""
    if "401" in text or "unauthorized" in text or "auth" in text:
        lines = [
            "Authentication failed for the configured DAV server.",
            "",
            "Fix: Verify DAV_USERNAME and DAV_PASSWORD are correct.",
        ]
    elif "name or service not known" in text or "nodename" in text \
            or "getaddrinfo" in text or "not found" in text:
        lines = [
            f"Cannot find server{at_url}.",
            "",
            "Fix: Check DAV_URL is spelled correctly and the server exists.",
        ]
    elif "timeout" in text or "timed out" in text:
        lines = [
            f"Connection to{at_url} timed out.",
            "",
            "Fix: Check the server is running and reachable from this network.",
        ]
    elif "refused" in text:
        lines = [
            f"Connection refused by{at_url}.",
            "",
            "Fix: Check the server is running and the port is correct.",
        ]
    elif "certificate" in text or "ssl" in text or "tls" in text:
        lines = [
            f"SSL certificate error for{at_url}.",
            "",
            "Fix: The server may have an invalid or self-signed certificate.",
        ]
    else:
        lines = [
            f"Unexpected error: {error}",
            "",
            "Fix: Check DAV_URL and your credentials and try again.",
        ]
    return "\n".join(lines)
