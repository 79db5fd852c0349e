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

"""Static pages served straight out of a repo's HEAD

A repo opts in with a ``.pages`` TOML file at its root::

    [pages]
    directory = "dist"
    entry = "index.html"

Files are materialized under pages-cache/[slug]/[short sha]/ on first access
and the whole per-slug cache is dropped on every push.
"""

import asyncio
import dataclasses
import os
import pathlib
import shutil
import tomllib

import aiofiles

from .paths import StorePaths, validate_slug
from .read import head_sha, show_file

MIME_TYPES = {
    'html': 'text/html; charset=utf-8',
    'htm': 'text/html; charset=utf-8',
    'css': 'text/css; charset=utf-8',
    'js': 'application/javascript; charset=utf-8',
    'mjs': 'application/javascript; charset=utf-8',
    'json': 'application/json; charset=utf-8',
    'xml': 'application/xml; charset=utf-8',
    'txt': 'text/plain; charset=utf-8',
    'md': 'text/markdown; charset=utf-8',
    'svg': 'image/svg+xml',
    'png': 'image/png',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'gif': 'image/gif',
    'webp': 'image/webp',
    'ico': 'image/x-icon',
    'woff': 'font/woff',
    'woff2': 'font/woff2',
    'ttf': 'font/ttf',
    'eot': 'application/vnd.ms-fontobject',
    'wasm': 'application/wasm',
    'map': 'application/json',
    'mp3': 'audio/mpeg',
    'mp4': 'video/mp4',
    'webm': 'video/webm',
    'pdf': 'application/pdf',
}

def mime_type(path: str) -> str:
    name = path.rsplit('/', 1)[-1]
    if '.' not in name:
        return 'application/octet-stream'
    return MIME_TYPES.get(name.rsplit('.', 1)[1].lower(), 'application/octet-stream')

@dataclasses.dataclass
class PagesConfig:
    directory: str = '.'
    entry: str = 'index.html'

    @classmethod
    def parse(cls, raw: str) -> 'PagesConfig | None':
        try:
            section = tomllib.loads(raw).get('pages')
        except tomllib.TOMLDecodeError:
            return None
        if not isinstance(section, dict):
            return None
        directory = section.get('directory', '.')
        entry = section.get('entry', 'index.html')
        if not isinstance(directory, str) or not isinstance(entry, str) or not entry:
            return None
        if '..' in directory or '..' in entry:
            return None
        return cls(directory.strip('/') or '.', entry)

    def git_path(self, path: str) -> str:
        if self.directory == '.':
            return path
        return f"{self.directory}/{path}"

def extract_pages_slug(host: str, domain: str) -> str | None:
    hostname = host.split(':', 1)[0].lower()
    suffix = f".{domain.lower()}"
    if not hostname.endswith(suffix):
        return None
    slug = hostname[:-len(suffix)]
    if not validate_slug(slug):
        return None
    return slug

@dataclasses.dataclass
class PagesFile:
    content: bytes
    mime_type: str
    sha: str

class PagesCache:
    paths: StorePaths

    def __init__(self, paths: StorePaths):
        self.paths = paths

    def cache_path(self, slug: str, sha: str, path: str) -> pathlib.Path:
        return self.paths.pages_of(slug) / sha / path

    async def read_cached(self, path: pathlib.Path) -> bytes | None:
        try:
            async with aiofiles.open(path, 'rb') as f:
                return await f.read()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None

    async def write_cached(self, path: pathlib.Path, content: bytes):
        temp = path.with_name(f".{path.name}.tmp")
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            async with aiofiles.open(temp, 'wb') as f:
                await f.write(content)
            await asyncio.to_thread(os.replace, temp, path)
        except OSError as e:
            print(f"[barehub] failed to cache pages file '{path}': {e}")

    async def config_of(self, slug: str, sha: str) -> PagesConfig | None:
        raw = await show_file(self.paths.repo(slug), sha, '.pages')
        if raw is None:
            return None
        return PagesConfig.parse(raw.decode('utf-8', errors='replace'))

    async def serve(self, slug: str, request_path: str) -> PagesFile | None:
        repo = self.paths.repo(slug)
        sha = await head_sha(repo)
        if sha is None:
            return None
        config = await self.config_of(slug, sha)
        if config is None:
            return None

        path = request_path.lstrip('/')
        if not path or path.endswith('/'):
            path += config.entry
        if '..' in path:
            return None

        cached = await self.read_cached(self.cache_path(slug, sha, path))
        if cached is not None:
            return PagesFile(cached, mime_type(path), sha)

        content = await show_file(repo, sha, config.git_path(path))
        if content is None:
            # extension-less paths fall back to their directory index
            if '.' in path.rsplit('/', 1)[-1]:
                return None
            path = f"{path}/{config.entry}"
            cached = await self.read_cached(self.cache_path(slug, sha, path))
            if cached is not None:
                return PagesFile(cached, mime_type(path), sha)
            content = await show_file(repo, sha, config.git_path(path))
            if content is None:
                return None

        await self.write_cached(self.cache_path(slug, sha, path), content)
        return PagesFile(content, mime_type(path), sha)

    async def invalidate(self, slug: str):
        path = self.paths.pages_of(slug)
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            pass
        except OSError as e:
            print(f"[barehub] failed to invalidate pages cache of '{slug}': {e}")
