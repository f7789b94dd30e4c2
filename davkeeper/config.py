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

"""Configuration.

Settings come from environment variables, falling back to the [dav]
section of an optional INI file:

  [dav]
  url = https://dav.example.com/
  username = alice
  password = secret
  default_calendar = Work
  timeout = 30
  timezone = Europe/Berlin
"""

import configparser
import logging
import os
import urllib.parse
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigError

SECTION = "dav"

# (environment variable, option in the [dav] section)
SETTINGS = [
    ("DAV_URL", "url"),
    ("DAV_USERNAME", "username"),
    ("DAV_PASSWORD", "password"),
    ("DAV_DEFAULT_CALENDAR", "default_calendar"),
    ("DAV_DEFAULT_ADDRESSBOOK", "default_addressbook"),
    ("DAV_TIMEOUT", "timeout"),
    ("DAV_RETRY_ATTEMPTS", "retry_attempts"),
    ("DAV_TIMEZONE", "timezone"),
    ("LOG_LEVEL", "log_level"),
]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_LOG_LEVEL = "INFO"


class Config:
    """Validated settings."""

    def __init__(self, url: str, username: str, password: str,
                 default_calendar: Optional[str] = None,
                 default_addressbook: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
                 log_level: str = DEFAULT_LOG_LEVEL,
                 timezone: Optional[str] = None) -> None:
        self.url = url
        self.username = username
        self.password = password
        self.default_calendar = default_calendar
        self.default_addressbook = default_addressbook
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.log_level = log_level
        # IANA name used for naive input times and for display.
        self.timezone = timezone

    def __repr__(self) -> str:
        return "{}(url={!r}, username={!r})".format(
            type(self).__name__, self.url, self.username)

    @property
    def log_level_number(self) -> int:
        return getattr(logging, self.log_level)

    @classmethod
    def from_file(cls, f) -> configparser.ConfigParser:
        cp = configparser.ConfigParser()
        cp.read_file(f)
        return cp

    @classmethod
    def load(cls, environ=None, path: Optional[str] = None) -> "Config":
        """Load and validate settings.

        Args:
          environ: Environment mapping (defaults to os.environ)
          path: Optional INI file; environment variables take precedence
        Raises:
          ConfigError: listing every problem found
        """
        if environ is None:
            environ = os.environ
        file_settings = {}
        if path is not None:
            try:
                with open(path) as f:
                    cp = cls.from_file(f)
            except (OSError, configparser.Error) as exc:
                raise ConfigError([f"Unable to read {path}: {exc}"]) from exc
            if cp.has_section(SECTION):
                file_settings = dict(cp[SECTION])
        raw = {}
        for (variable, option) in SETTINGS:
            value = environ.get(variable)
            if value is None or value == "":
                value = file_settings.get(option)
            raw[option] = value or None
        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw) -> "Config":
        issues = []
        url = raw.get("url")
        if not url:
            issues.append("DAV_URL: a server URL is required")
        else:
            parsed = urllib.parse.urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                issues.append(f"DAV_URL: {url!r} is not a valid URL")
            elif parsed.scheme != "https" and parsed.hostname not in LOCAL_HOSTS:
                issues.append(
                    "DAV_URL: URL must use HTTPS. HTTP is only allowed for "
                    "localhost and 127.0.0.1.")
        if not raw.get("username"):
            issues.append("DAV_USERNAME: a user name is required")
        if not raw.get("password"):
            issues.append("DAV_PASSWORD: a password is required")
        timeout = DEFAULT_TIMEOUT
        if raw.get("timeout"):
            try:
                timeout = float(raw["timeout"])
            except ValueError:
                issues.append(f"DAV_TIMEOUT: {raw['timeout']!r} is not a number")
            else:
                if timeout <= 0:
                    issues.append("DAV_TIMEOUT: must be positive")
        retry_attempts = DEFAULT_RETRY_ATTEMPTS
        if raw.get("retry_attempts"):
            try:
                retry_attempts = int(raw["retry_attempts"])
            except ValueError:
                issues.append(
                    f"DAV_RETRY_ATTEMPTS: {raw['retry_attempts']!r} is not an "
                    "integer")
            else:
                if retry_attempts < 1:
                    issues.append("DAV_RETRY_ATTEMPTS: must be at least 1")
        tz_name = raw.get("timezone")
        if tz_name:
            try:
                ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                issues.append(
                    f"DAV_TIMEZONE: {tz_name!r} is not a known IANA timezone")
        log_level = (raw.get("log_level") or DEFAULT_LOG_LEVEL).upper()
        if log_level not in LOG_LEVELS:
            issues.append(
                "LOG_LEVEL: must be one of " + ", ".join(LOG_LEVELS))
        if issues:
            raise ConfigError(issues)
        return cls(
            url, raw["username"], raw["password"],
            default_calendar=raw.get("default_calendar"),
            default_addressbook=raw.get("default_addressbook"),
            timeout=timeout, retry_attempts=retry_attempts,
            log_level=log_level, timezone=tz_name)
