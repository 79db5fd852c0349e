import asyncio
import pathlib
import shutil
import subprocess
import time
import types

import pytest

from barehub.config import RateLimit
from barehub.server import HUB, make_app

from conftest import commit_files, commit_work, git_env

def http_backend_missing() -> bool:
    if shutil.which('git') is None:
        return True
    exec_path = subprocess.run(['git', '--exec-path'], capture_output=True, text=True).stdout.strip()
    return not (pathlib.Path(exec_path) / 'git-http-backend').exists()

pytestmark = pytest.mark.skipif(http_backend_missing(), reason="git http-backend is not installed")

@pytest.fixture
def make_client(aiohttp_client, config):
    async def make(**kwds):
        return await aiohttp_client(make_app(config, **kwds))
    return make

async def csrf_token(client) -> str:
    response = await client.get('/api/session')
    assert response.status == 200
    return (await response.json())['csrfToken']

async def git(*args, cwd=None) -> str:
    proc = await asyncio.create_subprocess_exec(
        'git', *args, cwd=cwd, env=git_env(),
        stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
    )
    stdout, stderr = await proc.communicate()
    assert proc.returncode == 0, stderr.decode()
    return stdout.decode()

async def test_stat(make_client):
    client = await make_client()
    response = await client.get('/stat')
    assert response.status == 200
    data = await response.json()
    assert data['repos'] == 0
    assert data['admission']['git_in_flight'] == 0

async def test_push_advertisement_creates_repo(make_client):
    client = await make_client()
    hub = client.app[HUB]
    response = await client.get('/e2e.git/info/refs', params={'service': 'git-receive-pack'})
    assert response.status == 200
    assert response.headers['Content-Type'] == 'application/x-git-receive-pack-advertisement'
    assert (await response.read()).startswith(b'001f# service=git-receive-pack\n')
    row = await hub.store.find_by_slug('e2e')
    assert row.created_via == 'push'
    assert hub.paths.repo('e2e').is_dir()
    assert not hub.admission.concurrency.counts

async def test_push_then_clone(make_client, tmp_path):
    client = await make_client()
    hub = client.app[HUB]
    url = str(client.make_url('/e2e.git'))
    commit = commit_work(tmp_path / 'work', {'README.md': '# pushed over http'})

    await git('push', url, 'HEAD:refs/heads/main', cwd=tmp_path / 'work')
    # the client may see the end of the response before the handler schedules the bundle
    bundles = []
    for _ in range(100):
        await hub.manager.drain()
        bundles = await hub.store.list_bundles()
        if bundles:
            break
        await asyncio.sleep(0.05)
    (bundle,) = bundles
    assert bundle.slug == 'e2e'
    assert bundle.size > 0

    await git('clone', '-q', url, str(tmp_path / 'clone'))
    assert (tmp_path / 'clone' / 'README.md').read_text() == '# pushed over http'
    assert (await git('rev-parse', 'HEAD', cwd=tmp_path / 'clone')).strip() == commit

async def test_fetch_unknown_repo(make_client):
    client = await make_client()
    hub = client.app[HUB]
    response = await client.get('/nothing.git/info/refs', params={'service': 'git-upload-pack'})
    assert response.status == 404
    assert not hub.paths.repo('nothing').exists()
    assert await hub.store.find_by_slug('nothing') is None

async def test_invalid_slug(make_client):
    client = await make_client()
    response = await client.get('/a..b.git/info/refs', params={'service': 'git-upload-pack'})
    assert response.status == 400
    assert (await response.json())['error'] == 'invalid repository name'

async def test_push_too_large(make_client, config):
    config.guards.max_push_bytes = 1024
    client = await make_client()
    response = await client.post(
        '/big.git/git-receive-pack', data=b'0' * 2048,
        headers={'Content-Type': 'application/x-git-receive-pack-request'}
    )
    assert response.status == 413
    assert not client.app[HUB].paths.repo('big').exists()

async def test_disk_low_refuses_push(make_client):
    low = lambda path: types.SimpleNamespace(f_bavail=1, f_frsize=4096)
    client = await make_client(statvfs=low)
    response = await client.get('/e2e.git/info/refs', params={'service': 'git-receive-pack'})
    assert response.status == 503
    response = await client.get('/stat')
    assert response.status == 200

async def test_creation_quota(make_client, config):
    config.guards.max_repos_per_hour = 1
    client = await make_client()
    response = await client.get('/one.git/info/refs', params={'service': 'git-receive-pack'})
    assert response.status == 200
    response = await client.get('/two.git/info/refs', params={'service': 'git-receive-pack'})
    assert response.status == 429
    assert (await response.json())['error'] == 'repo creation limit exceeded'
    response = await client.get('/one.git/info/refs', params={'service': 'git-receive-pack'})
    assert response.status == 200

async def test_concurrency_guard(make_client, config):
    client = await make_client()
    hub = client.app[HUB]
    hub.admission.concurrency.counts['127.0.0.1'] = config.guards.max_concurrent_git
    response = await client.get('/any.git/info/refs', params={'service': 'git-upload-pack'})
    assert response.status == 429
    assert hub.admission.concurrency.counts['127.0.0.1'] == config.guards.max_concurrent_git

async def test_rate_limit(make_client, config):
    config.rate.read = RateLimit(2, 60)
    client = await make_client()
    for _ in range(2):
        assert (await client.get('/stat')).status == 200
    response = await client.get('/stat')
    assert response.status == 429
    assert int(response.headers['Retry-After']) >= 1
    assert (await response.json())['retryAfter'] >= 1

async def test_create_requires_csrf(make_client):
    client = await make_client()
    response = await client.post('/api/repos', json={'slug': 'web-repo'})
    assert response.status == 403
    await csrf_token(client)
    response = await client.post('/api/repos', json={'slug': 'web-repo'}, headers={'X-CSRF-Token': 'f' * 64})
    assert response.status == 403

async def test_create_get_list(make_client):
    client = await make_client()
    token = await csrf_token(client)
    response = await client.post(
        '/api/repos', json={'slug': 'web-repo', 'description': 'made on the web'},
        headers={'X-CSRF-Token': token}
    )
    assert response.status == 201
    assert (await response.json())['created_via'] == 'web'

    response = await client.post('/api/repos', data={'slug': 'form-repo', '_csrf': token})
    assert response.status == 201

    response = await client.get('/api/repos/web-repo')
    assert response.status == 200
    data = await response.json()
    assert data['repo']['description'] == 'made on the web'
    assert data['branches'] == []
    assert data['hasCommits'] is False
    assert data['starred'] is False

    data = await (await client.get('/api/repos')).json()
    assert data['total'] == 2
    assert {repo['slug'] for repo in data['repos']} == {'web-repo', 'form-repo'}
    data = await (await client.get('/api/repos', params={'q': 'WEB'})).json()
    assert [repo['slug'] for repo in data['repos']] == ['web-repo']

async def test_create_validation(make_client):
    client = await make_client()
    token = await csrf_token(client)
    headers = {'X-CSRF-Token': token}
    response = await client.post('/api/repos', json={'slug': '../etc'}, headers=headers)
    assert response.status == 400
    response = await client.post('/api/repos', json={'slug': 'ok', 'description': 'x' * 501}, headers=headers)
    assert response.status == 400
    response = await client.get('/api/repos', params={'q': 'q' * 201})
    assert response.status == 400

async def test_missing_data_is_not_missing_repo(make_client):
    client = await make_client()
    hub = client.app[HUB]
    await hub.manager.create('fragile')
    shutil.rmtree(hub.paths.repo('fragile'))
    response = await client.get('/api/repos/fragile')
    assert response.status == 500
    assert (await response.json())['error'] == 'repository data missing from disk'
    assert (await client.get('/api/repos/nothing')).status == 404

    response = await client.get('/fragile.git/info/refs', params={'service': 'git-receive-pack'})
    assert response.status == 500
    assert (await response.json())['error'] == 'repository data missing from disk'
    assert not hub.paths.repo('fragile').exists()
    assert not hub.admission.concurrency.counts

async def test_settings_and_star(make_client, tmp_path):
    client = await make_client()
    hub = client.app[HUB]
    await hub.manager.create('demo')
    commit_files(tmp_path / 'work', hub.paths.repo('demo'), {'a.txt': 'a'}, branch='trunk')
    headers = {'X-CSRF-Token': await csrf_token(client)}

    response = await client.post(
        '/api/repos/demo/settings', json={'description': 'updated text', 'default_branch': 'trunk'},
        headers=headers
    )
    assert response.status == 200
    data = await response.json()
    assert data['description'] == 'updated text'
    assert data['default_branch'] == 'trunk'
    assert (hub.paths.repo('demo') / 'HEAD').read_text().strip() == 'ref: refs/heads/trunk'

    response = await client.post('/api/repos/demo/settings', json={'default_branch': 'nope'}, headers=headers)
    assert response.status == 400

    response = await client.post('/api/repos/demo/star', headers=headers)
    assert await response.json() == {'starred': True, 'stars': 1}
    assert (await (await client.get('/api/repos/demo')).json())['starred'] is True
    response = await client.post('/api/repos/demo/star', headers=headers)
    assert await response.json() == {'starred': False, 'stars': 0}

async def test_fork_and_delete(make_client):
    client = await make_client()
    hub = client.app[HUB]
    source = await hub.manager.create('origin')
    headers = {'X-CSRF-Token': await csrf_token(client)}

    response = await client.post('/api/repos/origin/fork', json={'name': 'copy'}, headers=headers)
    assert response.status == 201
    assert (await response.json())['forked_from_repo_id'] == source.id
    response = await client.post('/api/repos/origin/fork', json={}, headers=headers)
    assert response.status == 400
    response = await client.post('/api/repos/origin/fork', json={'name': 'copy'}, headers=headers)
    assert response.status == 409

    response = await client.post('/api/repos/origin/delete', headers=headers)
    assert await response.json() == {'deleted': 'origin'}
    assert (await client.get('/api/repos/origin')).status == 404
    assert len(list(hub.paths.trash.iterdir())) == 1

async def test_banned_ip(make_client):
    client = await make_client()
    hub = client.app[HUB]
    headers = {'X-CSRF-Token': await csrf_token(client)}
    hub.admission.spam.bans['127.0.0.1'] = time.time() + 100
    response = await client.post('/api/repos', json={'slug': 'spam'}, headers=headers)
    assert response.status == 429
    assert 90 <= int(response.headers['Retry-After']) <= 100
    assert await hub.store.find_by_slug('spam') is None

async def test_banned_pattern(make_client, config):
    config.spam.banned_patterns = ['casino']
    client = await make_client()
    headers = {'X-CSRF-Token': await csrf_token(client)}
    response = await client.post('/api/repos', json={'slug': 'ok', 'description': 'Best CASINO'}, headers=headers)
    assert response.status == 400
    assert (await response.json())['error'] == 'content matches a banned pattern'

async def test_pages(make_client, tmp_path):
    client = await make_client()
    hub = client.app[HUB]
    await hub.manager.create('site')
    commit_files(tmp_path / 'work', hub.paths.repo('site'), {
        '.pages': '[pages]\n',
        'index.html': '<h1>site</h1>',
    })
    host = {'Host': 'site.pages.localhost'}

    response = await client.get('/', headers=host)
    assert response.status == 200
    assert await response.text() == '<h1>site</h1>'
    assert response.headers['Content-Type'] == 'text/html; charset=utf-8'
    assert response.headers['Cache-Control'] == 'public, max-age=60'
    assert response.headers['X-Content-Type-Options'] == 'nosniff'
    assert response.headers['X-Frame-Options'] == 'SAMEORIGIN'

    etag = response.headers['ETag']
    response = await client.get('/', headers={**host, 'If-None-Match': etag})
    assert response.status == 304

    assert (await client.post('/', headers=host)).status == 405
    assert (await client.get('/missing.css', headers=host)).status == 404
    assert (await client.get('/', headers={'Host': 'nothing.pages.localhost'})).status == 404
