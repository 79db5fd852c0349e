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
import enum
import os
import pathlib

from .errors import GitCommandError

TIMEOUT = 30
MAX_OUTPUT = 10 * 1024 * 1024

class WorkStatus(int, enum.Enum):
    OK = 0
    BAD = 1

@dataclasses.dataclass
class GitResult:
    stdout: bytes
    stderr: bytes
    exit_code: int

    @property
    def status(self) -> WorkStatus:
        return WorkStatus.OK if self.exit_code == 0 else WorkStatus.BAD

    @property
    def text(self) -> str:
        return self.stdout.decode('utf-8', errors='replace')

def git_env() -> dict:
    env = dict(os.environ)
    env['GIT_TERMINAL_PROMPT'] = '0'
    return env

async def read_capped(stream: asyncio.StreamReader, limit: int) -> bytes:
    # keep draining past the cap so the child never blocks on a full pipe
    chunks = []
    size = 0
    while True:
        buffer = await stream.read(0x10000)
        if not buffer:
            break
        if size < limit:
            chunks.append(buffer[:limit - size])
        size += len(buffer)
    return b''.join(chunks)

async def run_async(
    program, *args, timeout: float = TIMEOUT, max_output: int = MAX_OUTPUT, **kwds
) -> GitResult:
    proc = await asyncio.create_subprocess_exec(
        program, *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        **kwds
    )

    async def collect():
        outputs = await asyncio.gather(
            read_capped(proc.stdout, max_output),
            proc.stderr.read()
        )
        await proc.wait()
        return outputs

    try:
        stdout, stderr = await asyncio.wait_for(collect(), timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        print(f"[barehub] child {program} {args} killed after {timeout}s")
        return GitResult(b'', f"timed out after {timeout}s".encode(), proc.returncode)
    return GitResult(stdout, stderr, proc.returncode)

async def run_git(
    repo: pathlib.Path, *args, timeout: float = TIMEOUT, max_output: int = MAX_OUTPUT
) -> GitResult:
    return await run_async(
        'git', '--git-dir', str(repo), *args,
        timeout=timeout, max_output=max_output, env=git_env()
    )

async def run_async_check(program, *args, **kwds) -> WorkStatus:
    result = await run_async(program, *args, **kwds)
    if result.status:
        print(f"[barehub] child {program} {args} failed: {result.stderr.decode('utf-8', errors='replace').strip()}")
    return result.status

async def git_init_bare(path: pathlib.Path, default_branch: str):
    result = await run_async('git', 'init', '--bare', str(path), env=git_env())
    if result.status:
        raise GitCommandError("git init failed", result.stderr)
    for args in (
        ('config', 'http.receivepack', 'true'),
        ('symbolic-ref', 'HEAD', f"refs/heads/{default_branch}"),
    ):
        result = await run_git(path, *args)
        if result.status:
            raise GitCommandError(f"git {args[0]} failed", result.stderr)

async def git_clone_bare(source: pathlib.Path, target: pathlib.Path, timeout: float = 300) -> GitResult:
    return await run_async(
        'git', 'clone', '--bare', str(source), str(target),
        timeout=timeout, env=git_env()
    )

async def find_http_backend() -> str:
    result = await run_async('git', '--exec-path', env=git_env())
    if result.status:
        raise GitCommandError("failed to locate git exec path", result.stderr)
    return str(pathlib.Path(result.text.strip()) / 'git-http-backend')
