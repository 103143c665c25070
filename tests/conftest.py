from __future__ import annotations

import os
import re
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from sqla_relgraph import Graph, init_graph, relgraph_cache_clear

from .models import registry


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "mysql", "mariadb", "sqlite"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_graph() -> None:
    """Install the test schema as the default graph.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    init_graph(registry)


@pytest.fixture
def graph() -> Graph:
    return Graph.default()


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "mysql":
            from testcontainers.mysql import MySqlContainer

            my = MySqlContainer(image="mysql:8.0")
            if os.name == "nt":
                my.get_container_host_ip = lambda: "127.0.0.1"
            with my:
                host = my.get_container_host_ip()
                port = my.get_exposed_port(my.port)
                yield f"mysql+asyncmy://{my.username}:{my.password}@{host}:{port}/{my.dbname}"

        case "mariadb":
            from testcontainers.mysql import MySqlContainer as MariaDBContainer

            ma = MariaDBContainer(image="mariadb:latest")
            if os.name == "nt":
                ma.get_container_host_ip = lambda: "127.0.0.1"
            with ma:
                host = ma.get_container_host_ip()
                port = ma.get_exposed_port(ma.port)
                yield f"mysql+asyncmy://{ma.username}:{ma.password}@{host}:{port}/{ma.dbname}"

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(registry.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(registry.metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def session(connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    sess = AsyncSession(bind=connection, expire_on_commit=False)
    yield sess
    await sess.close()


SEED: dict[str, list[dict[str, Any]]] = {
    "companies": [
        {"id": 1, "name": "Acme"},
        {"id": 2, "name": "Globex"},
    ],
    "people": [
        {"id": 10, "name": "Ada", "email": "ada@acme.test", "company_id": 1},
        {"id": 11, "name": "Grace", "email": "grace@globex.test", "company_id": 2},
        {"id": 12, "name": "Linus", "email": "linus@example.test", "company_id": None},
    ],
    "articles": [
        {"id": 1, "title": "Graphs", "body": "b1", "author_id": 10},
        {"id": 2, "title": "Joins", "body": "b2", "author_id": 10},
        {"id": 3, "title": "Indexes", "body": "b3", "author_id": 11},
        {"id": 4, "title": "Drafts", "body": "b4", "author_id": None},
    ],
    "comments": [
        {"id": 1, "body": "nice", "article_id": 1, "author_id": 11},
        {"id": 2, "body": "agreed", "article_id": 1, "author_id": 12},
        {"id": 3, "body": "thanks", "article_id": 3, "author_id": 10},
    ],
    "tags": [
        {"id": 1, "name": "python"},
        {"id": 2, "name": "sql"},
        {"id": 3, "name": "unused"},
    ],
    "article_tags": [
        {"id": 1, "article_id": 1, "tag_id": 1},
        {"id": 2, "article_id": 1, "tag_id": 2},
        {"id": 3, "article_id": 3, "tag_id": 1},
    ],
    "attachments": [
        {"id": 1, "url": "a1.png", "attachable_type": "articles", "attachable_id": 1},
        {"id": 2, "url": "a2.png", "attachable_type": "articles", "attachable_id": 1},
        {"id": 3, "url": "c1.pdf", "attachable_type": "comments", "attachable_id": 1},
        {"id": 4, "url": "p10.png", "attachable_type": "people", "attachable_id": 10},
        {"id": 5, "url": "orphan.png", "attachable_type": None, "attachable_id": None},
    ],
    "categories": [
        {"id": 1, "name": "root", "parent_id": None},
        {"id": 2, "name": "child_1", "parent_id": 1},
        {"id": 3, "name": "child_2", "parent_id": 1},
        {"id": 4, "name": "grandchild", "parent_id": 2},
    ],
}


@pytest.fixture
async def seed_data(connection: AsyncConnection) -> dict[str, list[dict[str, Any]]]:
    for type_name, rows in SEED.items():
        await connection.execute(registry.get_table(type_name).insert(), rows)

    return SEED


class StatementRecorder:
    """Collects every statement sent to the database while attached."""

    def __init__(self) -> None:
        self.statements: list[tuple[str, Any]] = []

    def __call__(
        self,
        conn: Any,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        self.statements.append((statement, parameters))

    def clear(self) -> None:
        self.statements.clear()

    def __len__(self) -> int:
        return len(self.statements)

    def selects_from(self, table_name: str) -> list[tuple[str, Any]]:
        """SELECT statements reading *table_name* (directly or in a subquery)."""
        pattern = re.compile(rf"\bFROM {re.escape(table_name)}\b")
        return [
            (statement, parameters)
            for statement, parameters in self.statements
            if statement.lstrip().upper().startswith("SELECT")
            and pattern.search(" ".join(statement.replace('"', "").replace("`", "").split()))
        ]


@pytest.fixture
def statements(engine: AsyncEngine, seed_data: dict[str, Any]) -> Iterator[StatementRecorder]:
    recorder = StatementRecorder()
    sa.event.listen(engine.sync_engine, "before_cursor_execute", recorder)
    yield recorder
    sa.event.remove(engine.sync_engine, "before_cursor_execute", recorder)


FetchRows = Callable[..., Awaitable[list[Any]]]


@pytest.fixture
def fetch_rows(connection: AsyncConnection, seed_data: dict[str, Any]) -> FetchRows:
    """Load root records of a type, ordered by id, optionally restricted to ids."""

    async def fetch(type_name: str, *ids: int) -> list[Any]:
        table = registry.get_table(type_name)
        query = sa.select(table).order_by(table.c.id)
        if ids:
            query = query.where(table.c.id.in_(ids))
        result = await connection.execute(query)
        return list(result.mappings().all())

    return fetch


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    relgraph_cache_clear()


@pytest.fixture
def reset_graph_default() -> Iterator[None]:
    saved = Graph._default  # noqa: SLF001
    yield
    Graph._default = saved  # noqa: SLF001
