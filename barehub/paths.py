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

import pathlib
import re
import time

RE_SLUG = re.compile(r'[A-Za-z0-9][A-Za-z0-9._-]{0,62}')

def validate_slug(slug: str) -> bool:
    if not isinstance(slug, str) or RE_SLUG.fullmatch(slug) is None:
        return False
    # the class already excludes '/', '..' is rejected anywhere regardless
    return slug not in ('.', '..') and '..' not in slug

class StorePaths:
    data: pathlib.Path
    repos: pathlib.Path # bare repos, repos/[slug].git
    trash: pathlib.Path # soft-deleted repos, trash/[slug]-[millis].git
    pages: pathlib.Path # materialized pages files, pages-cache/[slug]/[sha]/...

    def __init__(self, data: str | pathlib.Path):
        self.data = pathlib.Path(data)
        self.repos = self.data / 'repos'
        self.trash = self.data / 'trash'
        self.pages = self.data / 'pages-cache'

    def ensure(self):
        for path in (self.repos, self.trash, self.pages):
            path.mkdir(parents=True, exist_ok=True)

    def repo(self, slug: str) -> pathlib.Path:
        return self.repos / f"{slug}.git"

    def trash_for(self, slug: str, millis: int | None = None) -> pathlib.Path:
        if millis is None:
            millis = int(time.time() * 1000)
        return self.trash / f"{slug}-{millis}.git"

    def pages_of(self, slug: str) -> pathlib.Path:
        return self.pages / slug
