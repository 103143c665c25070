from __future__ import annotations

from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from sqla_relgraph import apply_join_plan, resolve_col, resolve_join_chain

from ..models import registry

pytestmark = pytest.mark.anyio


async def _ids(executor: AsyncConnection | AsyncSession, query: sa.Select) -> list[int]:
    result = await executor.execute(query)
    return list(result.scalars().all())


class TestJoinPlanQueries:
    async def test_filter_two_hops_away(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        articles = registry.get_table("articles")
        plan = resolve_join_chain("articles", "companies.name")
        query = apply_join_plan(sa.select(articles.c.id), plan)
        query = query.where(plan.target_column(query) == "Acme").order_by(articles.c.id)

        assert await _ids(connection, query) == [1, 2]

    async def test_unmatched_rows_kept_by_outer_join(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        articles = registry.get_table("articles")
        plan = resolve_join_chain("articles", "people.name")
        query = apply_join_plan(sa.select(articles.c.id), plan).order_by(articles.c.id)

        assert await _ids(connection, query) == [1, 2, 3, 4]

    async def test_many_to_many_filter(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        articles = registry.get_table("articles")
        plan = resolve_join_chain("articles", "tags.name")
        query = apply_join_plan(sa.select(articles.c.id), plan)
        query = query.where(plan.target_column(query) == "python").distinct().order_by(articles.c.id)

        assert await _ids(connection, query) == [1, 3]

    async def test_reverse_polymorphic_filter(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        comments = registry.get_table("comments")
        plan = resolve_join_chain("comments", "attachments.url")
        query = apply_join_plan(sa.select(comments.c.id), plan)
        query = query.where(resolve_col(query, plan.qualified_field) == "c1.pdf")

        # attachment 1 has attachable_id 1 too, but is owned by an article
        assert await _ids(connection, query) == [1]

    async def test_polymorphic_filter(
        self, session: AsyncSession, seed_data: dict[str, Any]
    ) -> None:
        attachments = registry.get_table("attachments")
        plan = resolve_join_chain("attachments", "comments.body")
        query = apply_join_plan(sa.select(attachments.c.id), plan)
        query = query.where(plan.target_column(query) == "nice")

        assert await _ids(session, query) == [3]

    async def test_two_plans_share_prefix(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        articles = registry.get_table("articles")
        by_author = resolve_join_chain("articles", "people.name")
        by_company = resolve_join_chain("articles", "companies.name")

        query = apply_join_plan(sa.select(articles.c.id), by_author)
        query = apply_join_plan(query, by_company)
        query = query.where(
            by_author.target_column(query) == "Grace",
            by_company.target_column(query) == "Globex",
        )

        assert await _ids(connection, query) == [3]
