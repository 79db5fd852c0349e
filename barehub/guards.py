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

import asyncio
import os
import pathlib
import time
import typing

from aiohttp import web

from .errors import DiskSpaceLow, deny
from .ratelimit import Bucket

HOUR = 3600
MIB = 1024 * 1024

class ConcurrencyLimiter:
    ceiling: int
    counts: dict[str, int]

    def __init__(self, ceiling: int):
        self.ceiling = ceiling
        self.counts = {}

    def acquire(self, ip: str) -> web.Response | None:
        current = self.counts.get(ip, 0)
        if current >= self.ceiling:
            return deny(429, "too many concurrent git operations")
        self.counts[ip] = current + 1
        return None

    def release(self, ip: str):
        current = self.counts.get(ip, 0)
        if current <= 1:
            self.counts.pop(ip, None)
        else:
            self.counts[ip] = current - 1

    def in_flight(self, ip: str) -> int:
        return self.counts.get(ip, 0)

class CreationQuota:
    """Fixed one-hour window on new repos per IP"""
    limit: int
    buckets: dict[str, Bucket]
    clock: typing.Callable[[], float]

    def __init__(self, limit: int, clock: typing.Callable[[], float] = time.time):
        self.limit = limit
        self.buckets = {}
        self.clock = clock

    def check(self, ip: str) -> web.Response | None:
        now = self.clock()
        bucket = self.buckets.get(ip)
        if bucket is None or now - bucket.window_start > HOUR:
            self.buckets[ip] = Bucket(1, now)
            return None
        bucket.count += 1
        if bucket.count > self.limit:
            return deny(429, "repo creation limit exceeded", limit=self.limit, window="1 hour")
        return None

    def sweep(self) -> int:
        now = self.clock()
        stale = [ip for ip, bucket in self.buckets.items() if now - bucket.window_start > HOUR * 2]
        for ip in stale:
            del self.buckets[ip]
        return len(stale)

def check_push_size(content_length: int | None, ceiling: int) -> web.Response | None:
    if content_length is not None and content_length > ceiling:
        return deny(413, "push payload too large", maxMB=ceiling // MIB)
    return None

class DiskGuard:
    path: pathlib.Path
    floor: int
    statvfs: typing.Callable

    def __init__(self, path: pathlib.Path, floor: int, statvfs: typing.Callable = os.statvfs):
        self.path = path
        self.floor = floor
        self.statvfs = statvfs

    async def free_bytes(self) -> int | None:
        try:
            stat = await asyncio.to_thread(self.statvfs, self.path)
        except OSError as e:
            # a broken monitor must not block every push
            print(f"[barehub] failed to stat '{self.path}', allowing writes: {e}")
            return None
        return stat.f_bavail * stat.f_frsize

    async def low(self) -> bool:
        free = await self.free_bytes()
        return free is not None and free < self.floor

    async def check(self) -> web.Response | None:
        if await self.low():
            return deny(503, "server disk space critically low, cannot create new repos")
        return None

    async def ensure(self):
        if await self.low():
            raise DiskSpaceLow()
