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

"""Bridge between aiohttp and a CGI program, i.e. git http-backend

The backend answers with a pseudo-HTTP header block (an optional
``Status: <code> [reason]`` line, ``Key: Value`` lines, a blank line) and then
the raw body. Request body and response body are both streamed, the request
body is piped in a separate task so a backend that starts answering before it
has consumed all of its input never deadlocks against us.
"""

import asyncio
import os
import pathlib

from aiohttp import web

READ_SIZE = 0x100000
MAX_HEADER = 0x10000

class CgiError(Exception):
    pass

class CgiHeaderParser:
    status: int
    reason: str | None
    headers: list[tuple[str, str]]
    done: bool

    def __init__(self):
        self.status = 200
        self.reason = None
        self.headers = []
        self.done = False
        self._buffer = bytearray()

    @staticmethod
    def find_boundary(buffer: bytearray) -> tuple[int, int]:
        found = []
        for separator in (b'\r\n\r\n', b'\n\n'):
            index = buffer.find(separator)
            if index >= 0:
                found.append((index, len(separator)))
        if not found:
            return (-1, 0)
        return min(found)

    def feed(self, chunk: bytes) -> bytes | None:
        """Feed one read of backend output

        Returns None while the header block is still incomplete, otherwise the
        body bytes that followed the blank line in the data seen so far (maybe
        empty). Must not be fed again once it returned bytes.
        """
        if self.done:
            raise CgiError("header block already complete")
        # the separator may straddle two reads, so search the whole buffer
        self._buffer += chunk
        index, length = self.find_boundary(self._buffer)
        if index < 0:
            if len(self._buffer) > MAX_HEADER:
                raise CgiError("CGI header block too large")
            return None
        self.parse_block(bytes(self._buffer[:index]))
        rest = bytes(self._buffer[index + length:])
        self._buffer.clear()
        self.done = True
        return rest

    def parse_block(self, block: bytes):
        for line in block.decode('latin-1').splitlines():
            if not line:
                continue
            key, sep, value = line.partition(':')
            key = key.strip()
            if not sep or not key:
                continue
            value = value.strip()
            if key.lower() == 'status':
                code, _, reason = value.partition(' ')
                try:
                    self.status = int(code)
                except ValueError:
                    continue
                self.reason = reason.strip() or None
            else:
                self.headers.append((key, value))

def backend_env(
    project_root: pathlib.Path,
    method: str,
    path_info: str,
    query_string: str,
    content_type: str | None = None,
    git_protocol: str | None = None,
) -> dict:
    env = {
        "GIT_PROJECT_ROOT": str(project_root),
        "GIT_HTTP_EXPORT_ALL": "1",
        "PATH_INFO": path_info,
        "QUERY_STRING": query_string,
        "REQUEST_METHOD": method,
        "SERVER_PROTOCOL": "HTTP/1.1",
        "PATH": os.environ.get('PATH', ''),
    }
    if content_type:
        env["CONTENT_TYPE"] = content_type
    if git_protocol:
        env["GIT_PROTOCOL"] = git_protocol
    return env

def kill(proc: asyncio.subprocess.Process):
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass

async def request_to_proc(content, proc: asyncio.subprocess.Process, limit: int | None = None):
    total = 0
    try:
        async for buffer in content.iter_chunked(0x10000):
            total += len(buffer)
            if limit is not None and total > limit:
                print(f"[barehub] request body exceeded {limit} bytes, cutting it off")
                break
            proc.stdin.write(buffer)
            await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        # the backend stopped reading, its own output tells the client why
        print("[barehub] git backend closed its input early")
    finally:
        proc.stdin.close()

async def proc_to_response(proc: asyncio.subprocess.Process, request: web.Request, response: web.StreamResponse):
    while True:
        buffer = await proc.stdout.read(READ_SIZE)
        if not buffer:
            break
        await response.write(buffer)

    if await proc.wait() < 0:
        # killed by a signal, drop the connection so the truncated body does not end cleanly
        print(f"[barehub] git backend killed by signal {-proc.returncode}, dropping the connection")
        response.force_close()
        if request.transport is not None:
            request.transport.close()
        return
    await response.write_eof()

async def serve_backend(
    request: web.Request,
    backend: str,
    env: dict,
    with_body: bool,
    timeout: float,
    body_limit: int | None = None,
) -> web.StreamResponse:
    try:
        proc = await asyncio.create_subprocess_exec(
            backend,
            env=env,
            stdin=asyncio.subprocess.PIPE if with_body else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        print(f"[barehub] failed to spawn git backend '{backend}': {e}")
        return web.Response(status=500, text="git backend failed")

    killer = asyncio.get_running_loop().call_later(timeout, kill, proc)
    pump = None
    if with_body:
        pump = asyncio.create_task(request_to_proc(request.content, proc, body_limit))
    try:
        parser = CgiHeaderParser()
        rest = None
        while rest is None:
            buffer = await proc.stdout.read(READ_SIZE)
            if not buffer:
                break
            rest = parser.feed(buffer)
        if rest is None:
            return web.Response(status=500, text="git backend failed")

        response = web.StreamResponse(status=parser.status, reason=parser.reason)
        for key, value in parser.headers:
            response.headers.add(key, value)
        await response.prepare(request)
        if rest:
            await response.write(rest)
        await proc_to_response(proc, request, response)
        return response
    except CgiError as e:
        print(f"[barehub] bad output from git backend: {e}")
        return web.Response(status=500, text="git backend failed")
    finally:
        killer.cancel()
        kill(proc)
        if pump is not None:
            if not pump.done():
                pump.cancel()
            (result,) = await asyncio.gather(pump, return_exceptions=True)
            if isinstance(result, Exception):
                print(f"[barehub] failed to pipe request body to git backend: {result!r}")
        await proc.wait()
