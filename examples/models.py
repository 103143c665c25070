"""Example schema for sqla-relgraph usage examples."""

from __future__ import annotations

from sqla_relgraph import (
    BelongsToPolymorphic,
    EntityType,
    Field,
    HasMany,
    IncludeConfig,
    Registry,
)


registry = Registry(
    EntityType(
        "organizations",
        fields=(Field("name", indexed=True),),
        relationships={"members": HasMany("users", foreign_key="organization_id")},
    ),
    EntityType(
        "users",
        fields=(
            Field("name", indexed=True),
            Field("email"),
            Field("organization_id", "integer", belongs_to="organizations", alias="organization"),
        ),
        relationships={
            "posts": HasMany("posts", foreign_key="author_id"),
            "recent_posts": HasMany(
                "posts",
                foreign_key="author_id",
                include=IncludeConfig(order_by=("-published_at",), limit=3, strategy="window"),
            ),
        },
    ),
    EntityType(
        "posts",
        fields=(
            Field("title", indexed=True),
            Field("published_at", "datetime"),
            Field("author_id", "integer", belongs_to="users", alias="author"),
        ),
        relationships={
            "labels": HasMany(
                "labels", through="post_labels", foreign_key="post_id", other_key="label_id"
            ),
            "images": HasMany("images", via="imageable"),
        },
    ),
    EntityType("labels", fields=(Field("name", indexed=True),)),
    EntityType(
        "post_labels",
        fields=(
            Field("post_id", "integer", belongs_to="posts"),
            Field("label_id", "integer", belongs_to="labels"),
        ),
    ),
    EntityType(
        "images",
        fields=(Field("url"),),
        relationships={"imageable": BelongsToPolymorphic(types=("posts", "users"))},
    ),
)
