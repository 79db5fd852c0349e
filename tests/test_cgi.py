import os
import sys

import aiohttp
import pytest
from aiohttp import web

from barehub.cgi import MAX_HEADER, CgiError, CgiHeaderParser, backend_env, serve_backend

def test_parser_split_boundary():
    parser = CgiHeaderParser()
    assert parser.feed(b"Status: 404 Not Found\r\nContent-Type: text/plain\r") is None
    assert parser.feed(b"\n\r") is None
    assert parser.feed(b"\nbody bytes") == b"body bytes"
    assert parser.done
    assert parser.status == 404
    assert parser.reason == 'Not Found'
    assert parser.headers == [('Content-Type', 'text/plain')]

def test_parser_bare_newlines():
    parser = CgiHeaderParser()
    assert parser.feed(b"Status: 304\nExpires: never\n\n") == b""
    assert parser.status == 304
    assert parser.reason is None
    assert parser.headers == [('Expires', 'never')]

def test_parser_byte_by_byte():
    output = b"Cache-Control: no-cache\r\nContent-Type: application/x-git-upload-pack-advertisement\r\n\r\n001e# service"
    parser = CgiHeaderParser()
    rest = None
    for index in range(len(output)):
        rest = parser.feed(output[index:index + 1])
        if rest is not None:
            break
    assert rest == b""
    assert index == output.index(b"001e") - 1
    assert parser.status == 200
    assert dict(parser.headers)['Cache-Control'] == 'no-cache'

def test_parser_limits():
    parser = CgiHeaderParser()
    with pytest.raises(CgiError):
        parser.feed(b'x' * (MAX_HEADER + 1))
    parser = CgiHeaderParser()
    parser.feed(b"\r\n\r\n")
    with pytest.raises(CgiError):
        parser.feed(b"more")

def test_backend_env(tmp_path):
    env = backend_env(tmp_path, 'POST', '/demo.git/git-upload-pack', '', 'application/x-git-upload-pack-request', 'version=2')
    assert env['GIT_PROJECT_ROOT'] == str(tmp_path)
    assert env['GIT_HTTP_EXPORT_ALL'] == '1'
    assert env['PATH_INFO'] == '/demo.git/git-upload-pack'
    assert env['REQUEST_METHOD'] == 'POST'
    assert env['SERVER_PROTOCOL'] == 'HTTP/1.1'
    assert env['CONTENT_TYPE'] == 'application/x-git-upload-pack-request'
    assert env['GIT_PROTOCOL'] == 'version=2'
    assert 'CONTENT_TYPE' not in backend_env(tmp_path, 'GET', '/demo.git/HEAD', '')

SPLIT_ECHO = b'''
import sys, time
out = sys.stdout.buffer
out.write(b"Status: 201 Created\\r\\nX-Backend: fa")
out.flush()
time.sleep(0.05)
out.write(b"ke\\r\\n\\r\\necho:")
out.flush()
while True:
    chunk = sys.stdin.buffer.read1(65536)
    if not chunk:
        break
    out.write(chunk)
    out.flush()
'''

SILENT = b'''
import sys
sys.stdin.buffer.read()
'''

HANGING = b'''
import sys, time
sys.stdout.buffer.write(b"Content-Type: text/plain\\r\\n\\r\\npartial")
sys.stdout.buffer.flush()
time.sleep(30)
'''

def script(tmp_path, name: str, body: bytes) -> str:
    path = tmp_path / name
    path.write_bytes(f"#!{sys.executable}\n".encode() + body)
    path.chmod(0o755)
    return str(path)

def backend_app(backend: str, timeout: float = 10, body_limit: int | None = None) -> web.Application:
    async def handler(request):
        return await serve_backend(
            request, backend, {'PATH': os.environ.get('PATH', '')},
            with_body=request.method == 'POST', timeout=timeout, body_limit=body_limit
        )
    app = web.Application()
    app.add_routes([web.route('*', '/', handler)])
    return app

async def test_streams_both_ways(aiohttp_client, tmp_path):
    client = await aiohttp_client(backend_app(script(tmp_path, 'echo', SPLIT_ECHO)))
    payload = os.urandom(128 * 1024)
    response = await client.post('/', data=payload)
    assert response.status == 201
    assert response.reason == 'Created'
    assert response.headers['X-Backend'] == 'fake'
    assert await response.read() == b'echo:' + payload

async def test_body_limit_cuts_input(aiohttp_client, tmp_path):
    client = await aiohttp_client(backend_app(script(tmp_path, 'echo', SPLIT_ECHO), body_limit=4))
    response = await client.post('/', data=b'0123456789')
    assert response.status == 201
    assert await response.read() == b'echo:'

async def test_silent_backend(aiohttp_client, tmp_path):
    client = await aiohttp_client(backend_app(script(tmp_path, 'silent', SILENT)))
    response = await client.post('/', data=b'ignored')
    assert response.status == 500

async def test_missing_backend(aiohttp_client, tmp_path):
    client = await aiohttp_client(backend_app(str(tmp_path / 'nowhere')))
    response = await client.get('/')
    assert response.status == 500

async def test_timeout_breaks_body(aiohttp_client, tmp_path):
    client = await aiohttp_client(backend_app(script(tmp_path, 'hang', HANGING), timeout=0.5))
    response = await client.get('/')
    assert response.status == 200
    with pytest.raises(aiohttp.ClientPayloadError):
        await response.read()
