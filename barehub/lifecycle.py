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

"""Bare repo lifecycle: create, create-on-push, soft delete, fork, backup

There is no transaction spanning the disk and the store, so every operation
orders its two halves to leave the safer orphan behind when only one of them
succeeds: the directory is created before the row is inserted, and moved to
trash before the row is marked deleted.
"""

import asyncio
import contextlib
import dataclasses
import io
import os
import pathlib
import shutil
import tarfile

from .db import RepoRow, RepoStore, checksum_of
from .errors import GitCommandError, InvalidSlug, RepoDataMissing, RepoExists, RepoNotFound
from .guards import DiskGuard
from .pages import PagesCache
from .paths import StorePaths, validate_slug
from .process import git_clone_bare, git_init_bare, run_async_check

def pack_repo(path: pathlib.Path) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
        tar.add(path, arcname='.')
    return buffer.getvalue()

def unpack_repo(data: bytes, path: pathlib.Path):
    # unpack next to the target and rename, a half-written repo is never visible
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_name(f".{path.name}.restore")
    if temp.exists():
        shutil.rmtree(temp)
    temp.mkdir()
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode='r:gz') as tar:
            tar.extractall(temp, filter='data')
        os.rename(temp, path)
    except BaseException:
        shutil.rmtree(temp, ignore_errors=True)
        raise

@dataclasses.dataclass
class SlugLock:
    lock: asyncio.Lock
    users: int = 0

class RepoManager:
    paths: StorePaths
    store: RepoStore
    disk: DiskGuard
    pages: PagesCache
    default_branch: str
    locks: dict[str, SlugLock]
    tasks: set[asyncio.Task]

    def __init__(self, paths: StorePaths, store: RepoStore, disk: DiskGuard,
                 pages: PagesCache, default_branch: str = 'main'):
        self.paths = paths
        self.store = store
        self.disk = disk
        self.pages = pages
        self.default_branch = default_branch
        self.locks = {}
        self.tasks = set()

    @contextlib.asynccontextmanager
    async def locked(self, slug: str):
        entry = self.locks.get(slug)
        if entry is None:
            entry = SlugLock(asyncio.Lock())
            self.locks[slug] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self.locks[slug]

    async def exists(self, slug: str) -> bool:
        return await asyncio.to_thread(self.paths.repo(slug).is_dir)

    async def init_repo(self, path: pathlib.Path):
        try:
            await git_init_bare(path, self.default_branch)
        except GitCommandError:
            # no row refers to it yet, a half-initialized repo must not pass as existing
            await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)
            raise
        print(f"[barehub] initialized bare repo '{path}'")

    async def ensure_for_push(self, slug: str) -> bool:
        """Create the repo if a push targets a name nobody used, True if created"""
        if not validate_slug(slug):
            raise InvalidSlug()
        await self.disk.ensure()
        async with self.locked(slug):
            if await self.exists(slug):
                return False
            if await self.store.find_by_slug(slug) is not None:
                # a live row without its directory is lost data, not a new repo
                raise RepoDataMissing()
            await self.init_repo(self.paths.repo(slug))
            if await self.store.create_if_absent(slug, '', 'push', default_branch=self.default_branch):
                print(f"[barehub] created repo '{slug}' by push")
            return True

    async def create(self, slug: str, description: str = '', created_via: str = 'web') -> RepoRow:
        if not validate_slug(slug):
            raise InvalidSlug()
        await self.disk.ensure()
        async with self.locked(slug):
            existing = await self.store.find_by_slug(slug)
            if await self.exists(slug):
                print(f"[barehub] found existing repo directory of '{slug}'")
            elif existing is not None:
                raise RepoDataMissing()
            else:
                await self.init_repo(self.paths.repo(slug))
            if existing is not None:
                return existing
            row = await self.store.create(slug, description, created_via, default_branch=self.default_branch)
        print(f"[barehub] created repo '{slug}' via {created_via}")
        return row

    async def soft_delete(self, slug: str) -> RepoRow:
        row = await self.store.find_by_slug(slug)
        if row is None:
            raise RepoNotFound()
        async with self.locked(slug):
            source = self.paths.repo(slug)
            if await self.exists(slug):
                target = self.paths.trash_for(slug)
                await asyncio.to_thread(os.rename, source, target)
                print(f"[barehub] moved '{source}' to '{target}'")
            await self.store.soft_delete(row.id)
        await self.pages.invalidate(slug)
        print(f"[barehub] deleted repo '{slug}'")
        return row

    async def fork(self, source_slug: str, new_slug: str) -> RepoRow:
        if not validate_slug(new_slug):
            raise InvalidSlug()
        source = await self.store.find_by_slug(source_slug)
        if source is None:
            raise RepoNotFound("source repo not found")
        await self.disk.ensure()
        async with self.locked(new_slug):
            target = self.paths.repo(new_slug)
            if await self.exists(new_slug) or await self.store.find_by_slug(new_slug) is not None:
                raise RepoExists(f"repo '{new_slug}' already exists")
            if not await self.exists(source_slug):
                raise RepoDataMissing()
            # clone next to the target and rename, a failed clone is never visible
            temp = target.with_name(f".{target.name}.fork")
            await asyncio.to_thread(shutil.rmtree, temp, ignore_errors=True)
            try:
                result = await git_clone_bare(self.paths.repo(source_slug), temp)
                if result.status:
                    raise GitCommandError("fork failed", result.stderr)
                if await run_async_check('git', '--git-dir', str(temp), 'config', 'http.receivepack', 'true'):
                    raise GitCommandError("fork failed to enable pushes")
                await asyncio.to_thread(os.rename, temp, target)
            except BaseException:
                await asyncio.to_thread(shutil.rmtree, temp, ignore_errors=True)
                raise
            row = await self.store.create(
                new_slug, f"Fork of {source_slug}", 'fork',
                forked_from=source.id, default_branch=source.default_branch
            )
        print(f"[barehub] forked '{source_slug}' into '{new_slug}'")
        return row

    async def bundle(self, slug: str) -> int:
        row = await self.store.find_by_slug(slug)
        if row is None:
            raise RepoNotFound()
        path = self.paths.repo(slug)
        if not await self.exists(slug):
            raise RepoDataMissing()
        data = await asyncio.to_thread(pack_repo, path)
        await self.store.save_bundle(row.id, data)
        print(f"[barehub] bundled '{slug}', {len(data)} bytes")
        return len(data)

    async def restore(self) -> int:
        restored = 0
        for info in await self.store.list_bundles():
            if not validate_slug(info.slug) or await self.exists(info.slug):
                continue
            data = await self.store.get_bundle(info.repo_id)
            if data is None:
                continue
            if checksum_of(data) != info.checksum:
                print(f"[barehub] bundle of '{info.slug}' fails its checksum, not restoring")
                continue
            try:
                await asyncio.to_thread(unpack_repo, data, self.paths.repo(info.slug))
            except (tarfile.TarError, OSError) as e:
                print(f"[barehub] failed to restore '{info.slug}': {e}")
                continue
            print(f"[barehub] restored '{info.slug}' from its bundle")
            restored += 1
        print(f"[barehub] restored {restored} repos from bundles")
        return restored

    async def post_push(self, slug: str):
        """Best-effort bookkeeping after a push, never raises"""
        try:
            await self.store.touch(slug)
        except Exception as e:
            print(f"[barehub] failed to touch '{slug}' after push: {e!r}")
        await self.pages.invalidate(slug)
        try:
            await self.bundle(slug)
        except Exception as e:
            print(f"[barehub] failed to bundle '{slug}' after push: {e!r}")

    def schedule_post_push(self, slug: str) -> asyncio.Task:
        task = asyncio.create_task(self.post_push(slug))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def drain(self):
        while self.tasks:
            await asyncio.gather(*tuple(self.tasks), return_exceptions=True)
