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

"""Abuse scoring for the anonymous, non-git write endpoints

Each write from an IP adds to a score that decays by one point per minute.
Bursts, duplicated content, shouting titles, link farms and near-empty
submissions all add points; past the block threshold writes are refused, past
the ban threshold the IP is banned for a while and its record is dropped.
"""

import dataclasses
import math
import re
import time
import typing

from aiohttp import web

from .config import SpamLimits
from .errors import deny

RE_URL = re.compile(r'https?://[^\s)]+', re.IGNORECASE)
RE_SPACE = re.compile(r'\s')

HASH_SAMPLE = 200
DUPLICATE_REPEATS = 3
SHOUTING_LENGTH = 10
MAX_URLS = 10
NEAR_EMPTY = 5

def content_hash(text: str) -> int:
    value = 0
    for char in text[:HASH_SAMPLE]:
        value = (value * 31 + ord(char)) & 0xffffffff
    return value

def count_urls(text: str) -> int:
    return len(RE_URL.findall(text))

@dataclasses.dataclass
class SpamRecord:
    score: int = 0
    last_update: float = 0
    writes: list[float] = dataclasses.field(default_factory=list)
    hashes: dict[int, int] = dataclasses.field(default_factory=dict)

    def decay(self, now: float):
        minutes = int((now - self.last_update) // 60)
        if minutes < 1:
            return
        self.score = max(0, self.score - minutes)
        self.last_update = now
        if self.score == 0:
            self.hashes.clear()

class SpamDetector:
    limits: SpamLimits
    records: dict[str, SpamRecord]
    bans: dict[str, float]
    patterns: list[re.Pattern]
    clock: typing.Callable[[], float]

    def __init__(self, limits: SpamLimits, clock: typing.Callable[[], float] = time.time):
        self.limits = limits
        self.records = {}
        self.bans = {}
        self.patterns = [re.compile(p, re.IGNORECASE) for p in limits.banned_patterns if p]
        self.clock = clock

    def is_banned(self, ip: str) -> web.Response | None:
        expiry = self.bans.get(ip)
        if expiry is None:
            return None
        now = self.clock()
        if now >= expiry:
            del self.bans[ip]
            return None
        return deny(429, "temporarily banned due to abuse", math.ceil(expiry - now))

    def check_patterns(self, *texts: str) -> web.Response | None:
        for text in texts:
            if not text:
                continue
            for pattern in self.patterns:
                if pattern.search(text):
                    return deny(400, "content matches a banned pattern")
        return None

    def score(self, ip: str, title: str = '', body: str = '', description: str = '') -> web.Response | None:
        now = self.clock()
        record = self.records.get(ip)
        if record is None:
            record = SpamRecord(last_update=now)
            self.records[ip] = record
        record.decay(now)

        record.writes = [t for t in record.writes if now - t < self.limits.window]
        record.writes.append(now)
        if len(record.writes) > self.limits.burst:
            record.score += 3

        text = ' '.join((title, body, description)).strip()
        if text:
            key = content_hash(text)
            repeats = record.hashes.get(key, 0) + 1
            record.hashes[key] = repeats
            if repeats >= DUPLICATE_REPEATS:
                record.score += 5

        if title and title == title.upper() and len(title) > SHOUTING_LENGTH:
            record.score += 3
        if count_urls(f"{title} {body}") > MAX_URLS:
            record.score += 3
        if text and len(RE_SPACE.sub('', text)) < NEAR_EMPTY:
            record.score += 1

        record.last_update = now

        if record.score >= self.limits.ban:
            print(f"[barehub] banning '{ip}' for {self.limits.ban_duration:g}s, spam score {record.score}")
            self.bans[ip] = now + self.limits.ban_duration
            del self.records[ip]
            return deny(429, "temporarily banned due to suspected automated abuse", math.ceil(self.limits.ban_duration))
        if record.score >= self.limits.block:
            return deny(429, "slow down, suspected automated abuse")
        return None

    def score_of(self, ip: str) -> int:
        record = self.records.get(ip)
        return 0 if record is None else record.score

    def sweep(self) -> int:
        now = self.clock()
        idle = [
            ip for ip, record in self.records.items()
            # kept until the score would have decayed away entirely
            if now - record.last_update > max(self.limits.window * 2, record.score * 60)
        ]
        for ip in idle:
            del self.records[ip]
        expired = [ip for ip, expiry in self.bans.items() if now >= expiry]
        for ip in expired:
            del self.bans[ip]
        return len(idle) + len(expired)
