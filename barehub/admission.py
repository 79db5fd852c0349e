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
import time
import typing

from aiohttp import web

from .config import Config
from .csrf import CsrfTokens
from .guards import ConcurrencyLimiter, CreationQuota, DiskGuard, check_push_size
from .ratelimit import RateLimiter
from .spam import SpamDetector

class Admission:
    """All abuse-tracking state of one process, none of it persisted"""
    rate: RateLimiter
    concurrency: ConcurrencyLimiter
    quota: CreationQuota
    disk: DiskGuard
    spam: SpamDetector
    csrf: CsrfTokens
    max_push_bytes: int

    def __init__(self, config: Config, disk: DiskGuard, clock: typing.Callable[[], float] = time.time):
        self.rate = RateLimiter(config.rate, clock)
        self.concurrency = ConcurrencyLimiter(config.guards.max_concurrent_git)
        self.quota = CreationQuota(config.guards.max_repos_per_hour, clock)
        self.disk = disk
        self.spam = SpamDetector(config.spam, clock)
        self.csrf = CsrfTokens(clock)
        self.max_push_bytes = config.guards.max_push_bytes

    async def check_push(self, ip: str, creating: bool, content_length: int | None = None) -> web.Response | None:
        """Guards after the concurrency slot for both halves of a push

        The caller holds a concurrency slot already and releases it itself.
        """
        if creating:
            denied = self.quota.check(ip)
            if denied is not None:
                return denied
        denied = check_push_size(content_length, self.max_push_bytes)
        if denied is not None:
            return denied
        return await self.disk.check()

    def check_write(self, ip: str, title: str = '', body: str = '', description: str = '') -> web.Response | None:
        denied = self.spam.is_banned(ip)
        if denied is not None:
            return denied
        denied = self.spam.check_patterns(title, body, description)
        if denied is not None:
            return denied
        return self.spam.score(ip, title, body, description)

    def sweep(self) -> int:
        return self.rate.sweep() + self.quota.sweep() + self.spam.sweep() + self.csrf.sweep()

    async def routine_sweeper(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            pruned = self.sweep()
            if pruned:
                print(f"[barehub] pruned {pruned} stale abuse-tracking entries")

    def stat(self) -> dict:
        return {
            "rate_buckets": len(self.rate.buckets),
            "git_in_flight": sum(self.concurrency.counts.values()),
            "quota_buckets": len(self.quota.buckets),
            "spam_records": len(self.spam.records),
            "bans": len(self.spam.bans),
            "csrf_sessions": len(self.csrf.entries),
        }
