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
import enum
import math
import time
import typing

from aiohttp import web

from .config import RateLimits
from .errors import deny

class RateCategory(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    GIT_READ = "git-read"
    GIT_WRITE = "git-write"

def classify_request(method: str, path: str) -> RateCategory:
    if '.git/' in path:
        if path.endswith('/git-receive-pack'):
            return RateCategory.GIT_WRITE
        return RateCategory.GIT_READ
    if method == 'POST':
        return RateCategory.WRITE
    return RateCategory.READ

def client_ip(request: web.Request) -> str:
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    real = request.headers.get('X-Real-IP')
    if real:
        return real.strip()
    return request.remote or 'unknown'

@dataclasses.dataclass
class Bucket:
    count: int
    window_start: float

class RateLimiter:
    """Fixed-window counter per (category, ip)"""
    limits: RateLimits
    buckets: dict[tuple[RateCategory, str], Bucket]
    clock: typing.Callable[[], float]

    def __init__(self, limits: RateLimits, clock: typing.Callable[[], float] = time.time):
        self.limits = limits
        self.buckets = {}
        self.clock = clock

    def check(self, ip: str, category: RateCategory) -> web.Response | None:
        rate = self.limits.of(category.value)
        now = self.clock()
        key = (category, ip)
        bucket = self.buckets.get(key)
        if bucket is None or now - bucket.window_start > rate.window:
            self.buckets[key] = Bucket(1, now)
            return None
        bucket.count += 1
        if bucket.count > rate.limit:
            retry_after = max(math.ceil(bucket.window_start + rate.window - now), 1)
            return deny(429, "rate limit exceeded", retry_after)
        return None

    def sweep(self) -> int:
        now = self.clock()
        stale = [
            key for key, bucket in self.buckets.items()
            if now - bucket.window_start > self.limits.of(key[0].value).window * 2
        ]
        for key in stale:
            del self.buckets[key]
        return len(stale)
