"""Basic sqla-relgraph usage examples.

Demonstrates initialization, include loading, sparse fields,
cross-table filters and index tooling.

NOTE: This file is illustrative, it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from sqla_relgraph import (
    IncludeResult,
    apply_join_plan,
    create_required_indexes,
    init_graph,
    required_indexes,
    resolve_includes,
    resolve_join_chain,
)

from .models import registry


# ── 1. Initialize once at startup ────────────────────────────────────

engine = create_async_engine("sqlite+aiosqlite:///:memory:")


async def setup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(registry.metadata.create_all)

    # Call once, builds the shared relationship graph
    init_graph(registry)


async def _rows(conn: AsyncConnection, query: sa.Select[Any]) -> list[Any]:
    result = await conn.execute(query)
    return list(result.mappings().all())


# ── 2. Includes ──────────────────────────────────────────────────────


async def get_posts_with_authors(conn: AsyncConnection) -> IncludeResult:
    posts = registry.get_table("posts")
    rows = await _rows(conn, sa.select(posts))
    # one query for all authors, however many posts there are
    return await resolve_includes(conn, rows, "posts", "author.organization")


async def get_users_with_everything(conn: AsyncConnection) -> IncludeResult:
    users = registry.get_table("users")
    rows = await _rows(conn, sa.select(users))
    return await resolve_includes(
        conn,
        rows,
        "users",
        ["recent_posts.labels", "recent_posts.images", "organization"],
    )


# ── 3. Sparse fields ─────────────────────────────────────────────────


async def get_posts_light(conn: AsyncConnection) -> list[dict[str, Any]]:
    posts = registry.get_table("posts")
    rows = await _rows(conn, sa.select(posts))
    result = await resolve_includes(conn, rows, "posts", "author", fields={"users": ["name"]})
    return [resource.to_dict() for resource in (*result.records, *result.included)]


# ── 4. Cross-table filters ──────────────────────────────────────────


async def get_posts_by_organization(conn: AsyncConnection, name: str) -> list[Any]:
    posts = registry.get_table("posts")
    plan = resolve_join_chain("posts", "organizations.name")
    query = apply_join_plan(sa.select(posts), plan)
    query = query.where(plan.target_column(query) == name)
    return await _rows(conn, query)


async def get_posts_by_label(conn: AsyncConnection, label: str) -> list[Any]:
    posts = registry.get_table("posts")
    plan = resolve_join_chain("posts", "labels.name")
    query = apply_join_plan(sa.select(posts), plan).distinct()
    query = query.where(plan.target_column(query) == label)
    return await _rows(conn, query)


# ── 5. Index tooling ─────────────────────────────────────────────────

SEARCH_SCHEMA = {
    "organization": {"actual_field": "organizations.name"},
    "anything": {"one_of": ["title", "users.name", "users.email"]},
}


async def ensure_search_indexes() -> list[str]:
    async with engine.begin() as conn:
        return await create_required_indexes(conn, required_indexes("posts", SEARCH_SCHEMA))
