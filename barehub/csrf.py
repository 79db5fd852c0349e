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

import dataclasses
import hmac
import secrets
import time
import typing

TOKEN_TTL = 24 * 3600

@dataclasses.dataclass
class CsrfEntry:
    token: str
    last_access: float

class CsrfTokens:
    entries: dict[str, CsrfEntry]
    clock: typing.Callable[[], float]

    def __init__(self, clock: typing.Callable[[], float] = time.time):
        self.entries = {}
        self.clock = clock

    def get_or_create(self, session_id: str) -> str:
        entry = self.entries.get(session_id)
        if entry is not None:
            entry.last_access = self.clock()
            return entry.token
        token = secrets.token_hex(32)
        self.entries[session_id] = CsrfEntry(token, self.clock())
        return token

    def validate(self, session_id: str | None, token: str | None) -> bool:
        if not session_id or not token:
            return False
        entry = self.entries.get(session_id)
        if entry is None:
            return False
        return hmac.compare_digest(entry.token, token)

    def sweep(self) -> int:
        now = self.clock()
        expired = [sid for sid, entry in self.entries.items() if now - entry.last_access > TOKEN_TTL]
        for sid in expired:
            del self.entries[sid]
        return len(expired)
