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

from aiohttp import web

class RepoError(Exception):
    status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def response(self) -> web.Response:
        return web.json_response({"error": self.message}, status=self.status)

class InvalidSlug(RepoError):
    status = 400

    def __init__(self, message: str = "invalid repository name"):
        super().__init__(message)

class InvalidInput(RepoError):
    status = 400

class DiskSpaceLow(RepoError):
    status = 503

    def __init__(self, message: str = "server disk space critically low"):
        super().__init__(message)

class RepoNotFound(RepoError):
    status = 404

    def __init__(self, message: str = "repo not found"):
        super().__init__(message)

class RepoExists(RepoError):
    status = 409

    def __init__(self, message: str = "repo already exists"):
        super().__init__(message)

class GitCommandError(RepoError):
    status = 500

    # keep messages readable when git dumps a lot on stderr
    EXCERPT = 500

    def __init__(self, what: str, stderr: bytes | str = b''):
        if isinstance(stderr, bytes):
            stderr = stderr.decode('utf-8', errors='replace')
        stderr = stderr.strip()[:self.EXCERPT]
        super().__init__(f"{what}: {stderr}" if stderr else what)

class RepoDataMissing(RepoError):
    status = 500

    def __init__(self, message: str = "repository data missing from disk"):
        super().__init__(message)

def deny(status: int, error: str, retry_after: int | None = None, **extra) -> web.Response:
    """Admission-control denial, JSON body with an optional Retry-After hint"""
    body = {"error": error}
    headers = {}
    if retry_after is not None:
        body["retryAfter"] = retry_after
        headers["Retry-After"] = str(retry_after)
    body.update(extra)
    return web.json_response(body, status=status, headers=headers)
