from __future__ import annotations

import logging

import pytest
from sqlalchemy.ext.asyncio import AsyncConnection

from sqla_relgraph import resolve_includes

from ..conftest import FetchRows, StatementRecorder

pytestmark = pytest.mark.anyio


class TestPolymorphic:
    async def test_one_query_per_type(
        self,
        connection: AsyncConnection,
        fetch_rows: FetchRows,
        statements: StatementRecorder,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        rows = await fetch_rows("attachments")
        statements.clear()

        with caplog.at_level(logging.WARNING, logger="sqla_relgraph"):
            result = await resolve_includes(connection, rows, "attachments", "attachable")

        assert len(statements) == 2
        assert len(statements.selects_from("articles")) == 1
        assert len(statements.selects_from("comments")) == 1
        assert statements.selects_from("people") == []
        assert {r.key for r in result.included} == {("articles", "1"), ("comments", "1")}
        assert "'people'" in caplog.text

    async def test_linkage(
        self, connection: AsyncConnection, fetch_rows: FetchRows, statements: StatementRecorder
    ) -> None:
        rows = await fetch_rows("attachments")
        result = await resolve_includes(connection, rows, "attachments", "attachable")
        linkage = {r.id: r.relationships["attachable"]["data"] for r in result.records}

        assert linkage == {
            "1": {"type": "articles", "id": "1"},
            "2": {"type": "articles", "id": "1"},
            "3": {"type": "comments", "id": "1"},
            "4": None,
            "5": None,
        }

    async def test_nested_per_target_type(
        self, connection: AsyncConnection, fetch_rows: FetchRows, statements: StatementRecorder
    ) -> None:
        rows = await fetch_rows("attachments", 1, 3)
        result = await resolve_includes(connection, rows, "attachments", "attachable.author")
        keys = {r.key for r in result.included}

        # article 1 is by Ada, comment 1 by Grace
        assert {("people", "10"), ("people", "11")} <= keys


class TestReversePolymorphic:
    async def test_owner_side(
        self, connection: AsyncConnection, fetch_rows: FetchRows, statements: StatementRecorder
    ) -> None:
        rows = await fetch_rows("articles")
        statements.clear()

        result = await resolve_includes(connection, rows, "articles", "attachments")
        by_id = {r.id: r for r in result.records}

        ((_, params),) = statements.selects_from("attachments")
        assert "articles" in list(params)
        assert sorted(a["id"] for a in by_id["1"].relationships["attachments"]["data"]) == ["1", "2"]
        assert by_id["2"].relationships["attachments"] == {"data": []}

    async def test_discriminator_scopes_ids(
        self, connection: AsyncConnection, fetch_rows: FetchRows, statements: StatementRecorder
    ) -> None:
        # comment 1 and article 1 share an id; only attachment 3 belongs to the comment
        rows = await fetch_rows("comments", 1)
        result = await resolve_includes(connection, rows, "comments", "attachments")

        assert result.records[0].relationships["attachments"]["data"] == [
            {"type": "attachments", "id": "3"}
        ]

    async def test_nested_from_has_many(
        self, connection: AsyncConnection, fetch_rows: FetchRows, statements: StatementRecorder
    ) -> None:
        rows = await fetch_rows("articles", 1)
        statements.clear()

        result = await resolve_includes(connection, rows, "articles", "comments.attachments")

        assert len(statements) == 2
        assert ("attachments", "3") in {r.key for r in result.included}
