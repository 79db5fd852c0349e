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

import dataclasses
import pathlib

from .process import run_git

@dataclasses.dataclass
class BranchInfo:
    name: str
    hash: str
    date: str
    subject: str

async def list_branches(repo: pathlib.Path) -> list[BranchInfo]:
    result = await run_git(
        repo, 'for-each-ref',
        '--format=%(refname:short)\t%(objectname:short)\t%(committerdate:iso8601)\t%(subject)',
        'refs/heads'
    )
    if result.status or not result.text.strip():
        return []
    branches = []
    for line in result.text.strip().split('\n'):
        name, hash, date, subject = (line.split('\t', 3) + ['', '', ''])[:4]
        branches.append(BranchInfo(name, hash, date, subject))
    return branches

async def default_branch(repo: pathlib.Path) -> str:
    result = await run_git(repo, 'symbolic-ref', '--short', 'HEAD')
    if not result.status and result.text.strip():
        return result.text.strip()
    branches = await list_branches(repo)
    if branches:
        return branches[0].name
    return 'main'

async def has_commits(repo: pathlib.Path) -> bool:
    result = await run_git(repo, 'rev-list', '-n', '1', '--all')
    return not result.status and bool(result.text.strip())

async def resolve_ref(repo: pathlib.Path, ref: str) -> str | None:
    result = await run_git(repo, 'rev-parse', '--verify', '--quiet', f"{ref}^{{commit}}")
    if result.status:
        return None
    return result.text.strip()

async def head_sha(repo: pathlib.Path) -> str | None:
    result = await run_git(repo, 'rev-parse', '--short=7', 'HEAD')
    if result.status:
        return None
    return result.text.strip()

async def show_file(repo: pathlib.Path, rev: str, path: str) -> bytes | None:
    # a tree path is a miss here, not a listing
    result = await run_git(repo, 'cat-file', 'blob', f"{rev}:{path}")
    if result.status:
        return None
    return result.stdout
