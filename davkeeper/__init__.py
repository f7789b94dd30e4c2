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

"""CalDAV/CardDAV write and consistency engine.

Davkeeper mutates events and contacts on a remote DAV server without
overwriting concurrent edits or dropping properties it does not understand.
"""

__version__ = (0, 1, 0)
version_string = ".".join(map(str, __version__))

PRODID = "-//Davkeeper//Davkeeper %s//EN" % version_string
