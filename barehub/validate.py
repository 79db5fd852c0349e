# barehub, an anonymous git hosting server
# Copyright (C) 2025-present Guoxin "7Ji" Pu

# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as
# published by the Free Software Foundation, either version 3 of the
# License, or (at your option) any later version.

# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.

# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

from .errors import InvalidInput

MAX_DESCRIPTION = 500
MAX_SEARCH_QUERY = 200

def _bounded(value: str | None, limit: int, what: str) -> str:
    clean = (value or '').strip()
    if len(clean) > limit:
        raise InvalidInput(f"{what} must be {limit} characters or less")
    return clean

def clean_description(value: str | None) -> str:
    return _bounded(value, MAX_DESCRIPTION, "description")

def clean_search_query(value: str | None) -> str:
    return _bounded(value, MAX_SEARCH_QUERY, "search query")

def clean_fork_name(value: str | None) -> str:
    if not value or not value.strip():
        raise InvalidInput("fork name is required")
    return value.strip()
