import os
import pathlib
import shutil
import subprocess

import pytest

from barehub.config import Config
from barehub.db import RepoStore
from barehub.guards import DiskGuard
from barehub.lifecycle import RepoManager
from barehub.pages import PagesCache
from barehub.paths import StorePaths

requires_git = pytest.mark.skipif(shutil.which('git') is None, reason="git is not installed")

GIT_IDENTITY = {
    'GIT_AUTHOR_NAME': 'tester',
    'GIT_AUTHOR_EMAIL': 'tester@example.com',
    'GIT_COMMITTER_NAME': 'tester',
    'GIT_COMMITTER_EMAIL': 'tester@example.com',
    'GIT_TERMINAL_PROMPT': '0',
}

def git_env() -> dict:
    return {**os.environ, **GIT_IDENTITY}

class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

def commit_work(work: pathlib.Path, files: dict[str, str | bytes], branch: str = 'main') -> str:
    """Commit files in a scratch work tree, returns the commit"""
    if not (work / '.git').exists():
        work.mkdir(parents=True, exist_ok=True)
        subprocess.run(['git', 'init', '-q', str(work)], check=True, env=git_env())
        subprocess.run(['git', '-C', str(work), 'symbolic-ref', 'HEAD', f"refs/heads/{branch}"], check=True, env=git_env())
    for name, content in files.items():
        path = work / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode()
        path.write_bytes(content)
    subprocess.run(['git', '-C', str(work), 'add', '-A'], check=True, env=git_env())
    subprocess.run(['git', '-C', str(work), 'commit', '-q', '-m', 'update'], check=True, env=git_env())
    return subprocess.run(
        ['git', '-C', str(work), 'rev-parse', 'HEAD'],
        check=True, env=git_env(), capture_output=True, text=True
    ).stdout.strip()

def commit_files(work: pathlib.Path, bare: pathlib.Path, files: dict[str, str | bytes], branch: str = 'main') -> str:
    """Commit files in a scratch work tree and push them into a bare repo, returns the commit"""
    commit = commit_work(work, files, branch)
    subprocess.run(
        ['git', '-C', str(work), 'push', '-q', str(bare), f"HEAD:refs/heads/{branch}"],
        check=True, env=git_env()
    )
    return commit

def refs_of(bare: pathlib.Path) -> str:
    return subprocess.run(
        ['git', '--git-dir', str(bare), 'show-ref'],
        env=git_env(), capture_output=True, text=True
    ).stdout

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

@pytest.fixture
def config(tmp_path) -> Config:
    return Config(data=tmp_path / 'data')

@pytest.fixture
def paths(config) -> StorePaths:
    paths = StorePaths(config.data)
    paths.ensure()
    return paths

@pytest.fixture
async def store(tmp_path):
    store = RepoStore(f"sqlite+aiosqlite:///{tmp_path / 'barehub-test.db'}")
    await store.init()
    yield store
    await store.close()

@pytest.fixture
def manager(paths, store) -> RepoManager:
    return RepoManager(paths, store, DiskGuard(paths.data, 0), PagesCache(paths))
