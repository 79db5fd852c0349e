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

"""Relational store for repo rows, stars and backup bundles

The store is the source of truth for which repos exist, the bare repos on disk
are a cache of it that can be rebuilt from the bundles.
"""

import dataclasses
import datetime

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
import xxhash

# sqlite only auto-increments a plain INTEGER PRIMARY KEY
BigId = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')

metadata = sa.MetaData()

repos = sa.Table(
    'repos', metadata,
    sa.Column('id', BigId, primary_key=True, autoincrement=True),
    sa.Column('slug', sa.Text, nullable=False),
    sa.Column('description', sa.Text, nullable=False, default=''),
    sa.Column('is_public', sa.Boolean, nullable=False, default=True),
    sa.Column('default_branch', sa.Text, nullable=False, default='main'),
    sa.Column('created_via', sa.Text, nullable=False, default='web'),
    sa.Column('forked_from_repo_id', BigId, sa.ForeignKey('repos.id'), nullable=True),
    sa.Column('star_count', sa.Integer, nullable=False, default=0),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
)

# a slug is unique among live repos only, so a deleted name can be pushed to again
LIVE_SLUG = repos.c.deleted_at.is_(None)
sa.Index(
    'ix_repos_live_slug', repos.c.slug, unique=True,
    sqlite_where=LIVE_SLUG, postgresql_where=LIVE_SLUG
)

repo_stars = sa.Table(
    'repo_stars', metadata,
    sa.Column('id', BigId, primary_key=True, autoincrement=True),
    sa.Column('repo_id', BigId, sa.ForeignKey('repos.id', ondelete='CASCADE'), nullable=False),
    sa.Column('session_id', sa.Text, nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint('repo_id', 'session_id'),
)

repo_bundles = sa.Table(
    'repo_bundles', metadata,
    sa.Column('repo_id', BigId, sa.ForeignKey('repos.id', ondelete='CASCADE'), primary_key=True),
    sa.Column('data', sa.LargeBinary, nullable=False),
    sa.Column('size', sa.BigInteger, nullable=False),
    sa.Column('checksum', sa.String(16), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
)

def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

def checksum_of(data: bytes) -> str:
    return xxhash.xxh3_64_hexdigest(data)

@dataclasses.dataclass
class RepoRow:
    id: int
    slug: str
    description: str
    is_public: bool
    default_branch: str
    created_via: str
    forked_from_repo_id: int | None
    star_count: int
    created_at: datetime.datetime
    updated_at: datetime.datetime
    deleted_at: datetime.datetime | None

    @classmethod
    def from_row(cls, row) -> 'RepoRow':
        return cls(**{field.name: row._mapping[field.name] for field in dataclasses.fields(cls)})

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        for key in ('created_at', 'updated_at', 'deleted_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

@dataclasses.dataclass
class BundleInfo:
    repo_id: int
    slug: str
    size: int
    checksum: str

UPSERT_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}

class RepoStore:
    engine: AsyncEngine

    def __init__(self, url: str, **kwds):
        backend = sa.engine.make_url(url).get_backend_name()
        if backend not in UPSERT_INSERTS:
            raise ValueError(f"unsupported database '{backend}', only sqlite and postgresql are supported")
        self.engine = create_async_engine(url, **kwds)

    async def init(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    def insert(self, table: sa.Table):
        return UPSERT_INSERTS[self.engine.dialect.name](table)

    # repos

    async def find_by_slug(self, slug: str) -> RepoRow | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                sa.select(repos).where(repos.c.slug == slug, LIVE_SLUG).limit(1)
            )
            row = result.first()
        return None if row is None else RepoRow.from_row(row)

    async def find_by_id(self, repo_id: int) -> RepoRow | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(sa.select(repos).where(repos.c.id == repo_id))
            row = result.first()
        return None if row is None else RepoRow.from_row(row)

    async def list_live(self, limit: int = 50, offset: int = 0) -> list[RepoRow]:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                sa.select(repos).where(LIVE_SLUG)
                .order_by(repos.c.updated_at.desc(), repos.c.id.desc())
                .limit(limit).offset(offset)
            )
            return [RepoRow.from_row(row) for row in result]

    async def search(self, query: str, limit: int = 50) -> list[RepoRow]:
        pattern = f"%{query}%"
        async with self.engine.connect() as conn:
            result = await conn.execute(
                sa.select(repos).where(
                    LIVE_SLUG,
                    sa.or_(repos.c.slug.ilike(pattern), repos.c.description.ilike(pattern))
                )
                .order_by(repos.c.star_count.desc(), repos.c.updated_at.desc())
                .limit(limit)
            )
            return [RepoRow.from_row(row) for row in result]

    async def count(self) -> int:
        async with self.engine.connect() as conn:
            result = await conn.execute(sa.select(sa.func.count()).select_from(repos).where(LIVE_SLUG))
            return result.scalar_one()

    def _new_repo(self, slug: str, description: str, created_via: str,
                  forked_from: int | None, default_branch: str) -> dict:
        now = utcnow()
        return {
            'slug': slug,
            'description': description,
            'is_public': True,
            'default_branch': default_branch,
            'created_via': created_via,
            'forked_from_repo_id': forked_from,
            'star_count': 0,
            'created_at': now,
            'updated_at': now,
        }

    async def create(self, slug: str, description: str = '', created_via: str = 'web',
                     forked_from: int | None = None, default_branch: str = 'main') -> RepoRow:
        async with self.engine.begin() as conn:
            result = await conn.execute(
                sa.insert(repos)
                .values(self._new_repo(slug, description, created_via, forked_from, default_branch))
                .returning(repos)
            )
            return RepoRow.from_row(result.one())

    async def create_if_absent(self, slug: str, description: str = '', created_via: str = 'web',
                               forked_from: int | None = None, default_branch: str = 'main') -> bool:
        """Insert-or-ignore on the live slug, True if this call inserted the row"""
        statement = self.insert(repos).values(
            self._new_repo(slug, description, created_via, forked_from, default_branch)
        ).on_conflict_do_nothing(index_elements=['slug'], index_where=LIVE_SLUG)
        async with self.engine.begin() as conn:
            result = await conn.execute(statement)
            return result.rowcount == 1

    async def update(self, repo_id: int, description: str | None = None,
                     default_branch: str | None = None) -> RepoRow | None:
        values = {'updated_at': utcnow()}
        if description is not None:
            values['description'] = description
        if default_branch is not None:
            values['default_branch'] = default_branch
        async with self.engine.begin() as conn:
            result = await conn.execute(
                sa.update(repos).where(repos.c.id == repo_id, LIVE_SLUG)
                .values(values).returning(repos)
            )
            row = result.first()
        return None if row is None else RepoRow.from_row(row)

    async def soft_delete(self, repo_id: int):
        async with self.engine.begin() as conn:
            await conn.execute(
                sa.update(repos).where(repos.c.id == repo_id).values(deleted_at=utcnow())
            )

    async def touch(self, slug: str):
        async with self.engine.begin() as conn:
            await conn.execute(
                sa.update(repos).where(repos.c.slug == slug, LIVE_SLUG).values(updated_at=utcnow())
            )

    # stars

    async def _recount_stars(self, conn, repo_id: int):
        stars = sa.select(sa.func.count()).select_from(repo_stars) \
            .where(repo_stars.c.repo_id == repo_id).scalar_subquery()
        await conn.execute(sa.update(repos).where(repos.c.id == repo_id).values(star_count=stars))

    async def star(self, repo_id: int, session_id: str):
        async with self.engine.begin() as conn:
            await conn.execute(
                self.insert(repo_stars)
                .values(repo_id=repo_id, session_id=session_id, created_at=utcnow())
                .on_conflict_do_nothing(index_elements=['repo_id', 'session_id'])
            )
            await self._recount_stars(conn, repo_id)

    async def unstar(self, repo_id: int, session_id: str):
        async with self.engine.begin() as conn:
            await conn.execute(
                sa.delete(repo_stars).where(
                    repo_stars.c.repo_id == repo_id, repo_stars.c.session_id == session_id
                )
            )
            await self._recount_stars(conn, repo_id)

    async def is_starred(self, repo_id: int, session_id: str) -> bool:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                sa.select(repo_stars.c.id).where(
                    repo_stars.c.repo_id == repo_id, repo_stars.c.session_id == session_id
                ).limit(1)
            )
            return result.first() is not None

    # bundles

    async def save_bundle(self, repo_id: int, data: bytes):
        values = {
            'repo_id': repo_id,
            'data': data,
            'size': len(data),
            'checksum': checksum_of(data),
            'updated_at': utcnow(),
        }
        statement = self.insert(repo_bundles).values(values)
        statement = statement.on_conflict_do_update(
            index_elements=['repo_id'],
            set_={key: statement.excluded[key] for key in ('data', 'size', 'checksum', 'updated_at')}
        )
        async with self.engine.begin() as conn:
            await conn.execute(statement)

    async def get_bundle(self, repo_id: int) -> bytes | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                sa.select(repo_bundles.c.data).where(repo_bundles.c.repo_id == repo_id)
            )
            return result.scalar_one_or_none()

    async def list_bundles(self) -> list[BundleInfo]:
        """Bundles of live repos, without their data"""
        async with self.engine.connect() as conn:
            result = await conn.execute(
                sa.select(repo_bundles.c.repo_id, repos.c.slug, repo_bundles.c.size, repo_bundles.c.checksum)
                .join(repos, repos.c.id == repo_bundles.c.repo_id)
                .where(LIVE_SLUG)
                .order_by(repos.c.slug)
            )
            return [BundleInfo(row.repo_id, row.slug, row.size, row.checksum) for row in result]
