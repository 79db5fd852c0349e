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
import dataclasses
import os
import re
import secrets
import time
import typing

from aiohttp import web
import xxhash

from .admission import Admission
from .cgi import backend_env, serve_backend
from .config import Config
from .db import RepoRow, RepoStore
from .errors import GitCommandError, InvalidInput, InvalidSlug, RepoDataMissing, RepoError, RepoNotFound, deny
from .guards import DiskGuard
from .lifecycle import RepoManager
from .pages import PagesCache, extract_pages_slug
from .paths import StorePaths, validate_slug
from .process import find_http_backend, run_git
from .ratelimit import classify_request, client_ip
from .read import default_branch, has_commits, list_branches, resolve_ref
from .validate import clean_description, clean_fork_name, clean_search_query

SESSION_COOKIE = 'barehub_session'
SESSION_MAX_AGE = 365 * 24 * 3600
RE_SESSION = re.compile(r'[0-9a-f]{32}')

SECURITY_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'SAMEORIGIN',
}

GIT_PREFIX = r'/{slug:[A-Za-z0-9][A-Za-z0-9._-]{0,62}}.git/'
GIT_GET_SERVICES = r'{service:(HEAD|info/refs|objects/(info/((http-)?alternates|packs)|[0-9a-f]{2}/([0-9a-f]{38}|[0-9a-f]{62})|pack/pack-([0-9a-f]{40}|[0-9a-f]{64})\.(pack|idx)))}'
GIT_POST_SERVICES = r'{service:(git-upload-pack|git-receive-pack)}'

@dataclasses.dataclass
class Hub:
    config: Config
    paths: StorePaths
    store: RepoStore
    pages: PagesCache
    manager: RepoManager
    admission: Admission
    backend: str | None = None
    sweeper: asyncio.Task | None = None

HUB = web.AppKey("hub", Hub)

def report_access(request: web.Request, route: str):
    print(f"[barehub] route {route}: '{client_ip(request)}' -> {request.method} -> '{request.rel_url}'")

def is_push(service: str, request: web.Request) -> bool:
    if service == 'git-receive-pack':
        return True
    return service == 'info/refs' and request.query.get('service') == 'git-receive-pack'

def session_of(request: web.Request) -> tuple[str, bool]:
    """Session id from the cookie, or a fresh one and True if it must be set"""
    session = request.cookies.get(SESSION_COOKIE)
    if session and RE_SESSION.fullmatch(session):
        return session, False
    return secrets.token_hex(16), True

def set_session(response: web.StreamResponse, session: str):
    response.set_cookie(
        SESSION_COOKIE, session, path='/', httponly=True, samesite='Lax', max_age=SESSION_MAX_AGE
    )

async def read_fields(request: web.Request) -> dict:
    if request.content_type == 'application/json':
        try:
            data = await request.json()
        except ValueError:
            raise InvalidInput("malformed JSON body")
        if not isinstance(data, dict):
            raise InvalidInput("JSON body must be an object")
        return data
    return dict(await request.post())

def field(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    raise InvalidInput(f"{key} must be a string")

def query_int(request: web.Request, key: str, default: int, low: int, high: int) -> int:
    raw = request.query.get(key)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidInput(f"{key} must be an integer")
    return min(max(value, low), high)

def slug_of(request: web.Request) -> str:
    slug = request.match_info['slug']
    if not validate_slug(slug):
        raise InvalidSlug()
    return slug

async def live_row(hub: Hub, slug: str) -> RepoRow:
    row = await hub.store.find_by_slug(slug)
    if row is None:
        raise RepoNotFound()
    return row

async def guarded_write(request: web.Request, **texts) -> tuple[dict, web.Response | None]:
    """Fields of a mutating API request and the denial, if any, of its CSRF and spam guards"""
    hub = request.app[HUB]
    data = await read_fields(request)
    token = request.headers.get('X-CSRF-Token') or data.get('_csrf')
    if not isinstance(token, str) or not hub.admission.csrf.validate(request.cookies.get(SESSION_COOKIE), token):
        return data, deny(403, "CSRF token invalid or missing")
    texts = {key: field(data, name) or '' for key, name in texts.items()}
    return data, hub.admission.check_write(client_ip(request), **texts)

@web.middleware
async def rate_middleware(request: web.Request, handler):
    ip = client_ip(request)
    category = classify_request(request.method, request.path)
    denied = request.app[HUB].admission.rate.check(ip, category)
    if denied is not None:
        print(f"[barehub] rate limited '{ip}' in category {category.value}")
        return denied
    return await handler(request)

@web.middleware
async def pages_middleware(request: web.Request, handler):
    hub = request.app[HUB]
    slug = extract_pages_slug(request.host, hub.config.pages_domain)
    if slug is None:
        return await handler(request)
    report_access(request, 'pages')
    if request.method not in ('GET', 'HEAD'):
        return web.Response(status=405, text="method not allowed", headers=SECURITY_HEADERS)
    if not await hub.manager.exists(slug):
        return web.Response(status=404, text="not found", headers=SECURITY_HEADERS)
    row = await hub.store.find_by_slug(slug)
    if row is None or not row.is_public:
        return web.Response(status=404, text="not found", headers=SECURITY_HEADERS)
    result = await hub.pages.serve(slug, request.path)
    if result is None:
        return web.Response(status=404, text="not found", headers=SECURITY_HEADERS)
    etag = f'"{result.sha}-{xxhash.xxh3_64_hexdigest(result.content)}"'
    headers = {
        'ETag': etag,
        'Cache-Control': 'public, max-age=60',
        **SECURITY_HEADERS,
    }
    if request.headers.get('If-None-Match') == etag:
        return web.Response(status=304, headers=headers)
    headers['Content-Type'] = result.mime_type
    return web.Response(body=result.content, headers=headers)

@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except RepoError as e:
        if e.status >= 500:
            print(f"[barehub] failed to serve {request.method} '{request.rel_url}': {e.message}")
        return e.response()

async def serve_git(request: web.Request, slug: str, service: str, ip: str) -> web.StreamResponse:
    hub = request.app[HUB]
    push = is_push(service, request)
    if push:
        creating = not await hub.manager.exists(slug)
        content_length = request.content_length if service == 'git-receive-pack' else None
        denied = await hub.admission.check_push(ip, creating, content_length)
        if denied is not None:
            print(f"[barehub] refused push from '{ip}' to '{slug}' with {denied.status}")
            return denied
        await hub.manager.ensure_for_push(slug)

    env = backend_env(
        hub.paths.repos, request.method, f"/{slug}.git/{service}", request.query_string,
        request.headers.get('Content-Type'), request.headers.get('Git-Protocol')
    )
    response = await serve_backend(
        request, hub.backend, env,
        with_body=request.method == 'POST',
        timeout=hub.config.backend_timeout,
        body_limit=hub.config.guards.max_push_bytes if service == 'git-receive-pack' else None,
    )
    if service == 'git-receive-pack' and response.status == 200:
        hub.manager.schedule_post_push(slug)
    return response

async def route_git(request: web.Request) -> web.StreamResponse:
    report_access(request, 'git')
    slug = slug_of(request)
    ip = client_ip(request)
    admission = request.app[HUB].admission
    denied = admission.concurrency.acquire(ip)
    if denied is not None:
        return denied
    try:
        return await serve_git(request, slug, request.match_info['service'], ip)
    finally:
        admission.concurrency.release(ip)

async def route_session(request: web.Request) -> web.Response:
    report_access(request, 'session')
    session, fresh = session_of(request)
    token = request.app[HUB].admission.csrf.get_or_create(session)
    response = web.json_response({"session": session, "csrfToken": token})
    if fresh:
        set_session(response, session)
    return response

async def route_repos_list(request: web.Request) -> web.Response:
    report_access(request, 'repos')
    store = request.app[HUB].store
    query = clean_search_query(request.query.get('q'))
    limit = query_int(request, 'limit', 50, 1, 100)
    offset = query_int(request, 'offset', 0, 0, 1 << 31)
    if query:
        rows = await store.search(query, limit)
    else:
        rows = await store.list_live(limit, offset)
    return web.json_response({
        "repos": [row.to_dict() for row in rows],
        "total": await store.count(),
    })

async def route_repos_create(request: web.Request) -> web.Response:
    report_access(request, 'create')
    hub = request.app[HUB]
    data, denied = await guarded_write(request, description='description')
    if denied is not None:
        return denied
    slug = field(data, 'slug') or ''
    if not validate_slug(slug):
        raise InvalidSlug()
    description = clean_description(field(data, 'description'))
    if not await hub.manager.exists(slug):
        denied = hub.admission.quota.check(client_ip(request))
        if denied is not None:
            return denied
    row = await hub.manager.create(slug, description)
    return web.json_response(row.to_dict(), status=201)

async def route_repo_get(request: web.Request) -> web.Response:
    report_access(request, 'repo')
    hub = request.app[HUB]
    slug = slug_of(request)
    row = await live_row(hub, slug)
    if not await hub.manager.exists(slug):
        raise RepoDataMissing()
    repo = hub.paths.repo(slug)
    session = request.cookies.get(SESSION_COOKIE)
    return web.json_response({
        "repo": row.to_dict(),
        "branches": [dataclasses.asdict(branch) for branch in await list_branches(repo)],
        "hasCommits": await has_commits(repo),
        "head": await resolve_ref(repo, 'HEAD'),
        "headBranch": await default_branch(repo),
        "starred": bool(session) and await hub.store.is_starred(row.id, session),
    })

async def route_repo_settings(request: web.Request) -> web.Response:
    report_access(request, 'settings')
    hub = request.app[HUB]
    slug = slug_of(request)
    data, denied = await guarded_write(request, description='description')
    if denied is not None:
        return denied
    row = await live_row(hub, slug)
    description = field(data, 'description')
    if description is not None:
        description = clean_description(description)
    branch = field(data, 'default_branch')
    if branch is not None and branch != row.default_branch:
        repo = hub.paths.repo(slug)
        if branch not in (info.name for info in await list_branches(repo)):
            raise InvalidInput(f"branch '{branch}' does not exist")
        result = await run_git(repo, 'symbolic-ref', 'HEAD', f"refs/heads/{branch}")
        if result.status:
            raise GitCommandError("failed to switch default branch", result.stderr)
        await hub.pages.invalidate(slug)
    row = await hub.store.update(row.id, description, branch)
    if row is None:
        raise RepoNotFound()
    return web.json_response(row.to_dict())

async def route_repo_star(request: web.Request) -> web.Response:
    report_access(request, 'star')
    hub = request.app[HUB]
    slug = slug_of(request)
    _, denied = await guarded_write(request)
    if denied is not None:
        return denied
    row = await live_row(hub, slug)
    session = request.cookies[SESSION_COOKIE]
    starred = await hub.store.is_starred(row.id, session)
    if starred:
        await hub.store.unstar(row.id, session)
    else:
        await hub.store.star(row.id, session)
    row = await hub.store.find_by_id(row.id)
    return web.json_response({"starred": not starred, "stars": row.star_count})

async def route_repo_fork(request: web.Request) -> web.Response:
    report_access(request, 'fork')
    hub = request.app[HUB]
    slug = slug_of(request)
    data, denied = await guarded_write(request, title='name')
    if denied is not None:
        return denied
    name = clean_fork_name(field(data, 'name'))
    if not validate_slug(name):
        raise InvalidSlug()
    denied = hub.admission.quota.check(client_ip(request))
    if denied is not None:
        return denied
    row = await hub.manager.fork(slug, name)
    return web.json_response(row.to_dict(), status=201)

async def route_repo_delete(request: web.Request) -> web.Response:
    report_access(request, 'delete')
    hub = request.app[HUB]
    slug = slug_of(request)
    _, denied = await guarded_write(request)
    if denied is not None:
        return denied
    row = await hub.manager.soft_delete(slug)
    return web.json_response({"deleted": row.slug})

async def route_stat(request: web.Request) -> web.Response:
    report_access(request, 'stat')
    hub = request.app[HUB]
    return web.json_response({
        "repos": await hub.store.count(),
        "post_push_tasks": len(hub.manager.tasks),
        "admission": hub.admission.stat(),
    })

async def on_startup(app: web.Application):
    hub = app[HUB]
    await asyncio.to_thread(hub.paths.ensure)
    await hub.store.init()
    if hub.backend is None:
        hub.backend = hub.config.git_http_backend or await find_http_backend()
    print(f"[barehub] serving repos under '{hub.paths.repos}' through '{hub.backend}'")
    await hub.manager.restore()
    hub.sweeper = asyncio.create_task(hub.admission.routine_sweeper(hub.config.sweep_interval))

async def on_cleanup(app: web.Application):
    hub = app[HUB]
    if hub.sweeper is not None:
        hub.sweeper.cancel()
        await asyncio.gather(hub.sweeper, return_exceptions=True)
    await hub.manager.drain()
    await hub.store.close()

def make_app(
    config: Config,
    clock: typing.Callable[[], float] = time.time,
    statvfs: typing.Callable = os.statvfs,
) -> web.Application:
    paths = StorePaths(config.data)
    store = RepoStore(config.db_url())
    disk = DiskGuard(paths.data, config.guards.min_free_disk_bytes, statvfs)
    pages = PagesCache(paths)
    hub = Hub(
        config=config,
        paths=paths,
        store=store,
        pages=pages,
        manager=RepoManager(paths, store, disk, pages, config.default_branch),
        admission=Admission(config, disk, clock),
    )

    app = web.Application(middlewares=[rate_middleware, pages_middleware, error_middleware])
    app[HUB] = hub
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    app.add_routes([
        web.get(GIT_PREFIX + GIT_GET_SERVICES, route_git),
        web.post(GIT_PREFIX + GIT_POST_SERVICES, route_git),
        web.get('/api/session', route_session),
        web.get('/api/repos', route_repos_list),
        web.post('/api/repos', route_repos_create),
        web.get('/api/repos/{slug}', route_repo_get),
        web.post('/api/repos/{slug}/settings', route_repo_settings),
        web.post('/api/repos/{slug}/star', route_repo_star),
        web.post('/api/repos/{slug}/fork', route_repo_fork),
        web.post('/api/repos/{slug}/delete', route_repo_delete),
        web.get('/stat', route_stat),
    ])
    return app
