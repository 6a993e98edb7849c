"""Tests for batched relation preloading."""

from __future__ import annotations

import pytest
from conftest import SCHEMA, FakeExecutor

from slintorm import PreloadContext, QueryBuilder, RelationDescriptor, RelationKind, Schema
from slintorm.relationships import (
    ManyToManyLoader,
    OneToManyLoader,
    OwnerSideLoader,
    ReverseLoader,
    loader_for,
    parent_owns_foreign_key,
)


def query(execute, model: str, schema) -> QueryBuilder:
    return QueryBuilder(schema[model].table, execute, model, schema)


class TestOneToMany:
    async def test_posts_attached_to_user(self, recorder, schema):
        """A user with two posts gets both, each pointing back at the user."""
        rows = await query(recorder, "User", schema).where("id", "=", 1).preload("posts").get()

        assert len(rows) == 1
        posts = rows[0]["posts"]
        assert len(posts) == 2
        assert all(p["userId"] == 1 for p in posts)

    async def test_user_without_posts_gets_empty_list(self, recorder, schema):
        rows = await query(recorder, "User", schema).where("id", "=", 2).preload("posts").get()
        assert rows[0]["posts"] == []

    async def test_one_query_for_whole_batch(self, recorder, schema):
        rows = await query(recorder, "User", schema).preload("posts").get()

        assert len(rows) == 3
        assert len(recorder.selects_from("posts")) == 1
        assert {r["name"]: len(r["posts"]) for r in rows} == {"Alice": 2, "Bob": 0, "Carol": 1}

    async def test_empty_result_issues_no_preload_query(self, recorder, schema):
        rows = await query(recorder, "User", schema).where("id", "=", 999).preload("posts").get()
        assert rows == []
        assert recorder.selects_from("posts") == []

    async def test_related_booleans_are_normalised(self, recorder, schema):
        rows = await query(recorder, "User", schema).where("id", "=", 1).preload("posts").get()
        assert sorted(p["published"] for p in rows[0]["posts"]) == [False, True]


class TestSingleValued:
    async def test_many_to_one_parent_owns_key(self, recorder, schema):
        rows = await query(recorder, "Post", schema).order_by("id").preload("user").get()

        assert [r["user"]["name"] for r in rows] == ["Alice", "Alice", "Carol"]
        user_queries = recorder.selects_from("users")
        assert len(user_queries) == 1
        assert 'WHERE "id" IN (?, ?)' in user_queries[0]

    async def test_one_to_one_child_owns_key(self, recorder, schema):
        rows = await query(recorder, "User", schema).order_by("id").preload("profile").get()

        assert rows[0]["profile"]["bio"] == "Alice bio"
        assert rows[1]["profile"] is None
        assert rows[2]["profile"] is None
        assert 'WHERE "userId" IN (?, ?, ?)' in recorder.selects_from("profiles")[0]

    async def test_null_foreign_keys_skip_query(self):
        schema = Schema.from_dict(SCHEMA)
        fake = FakeExecutor([('FROM "posts"', [{"id": 1, "userId": None}, {"id": 2, "userId": None}])])

        rows = await query(fake, "Post", schema).preload("user").get()

        assert [r["user"] for r in rows] == [None, None]
        assert len(fake.statements) == 1


class TestManyToMany:
    async def test_tags_through_junction_deduplicated(self, recorder, schema):
        rows = await query(recorder, "Post", schema).order_by("id").preload("tags").get()

        assert [t["name"] for t in rows[0]["tags"]] == ["python", "sql"]
        assert rows[1]["tags"] == []
        assert [t["name"] for t in rows[2]["tags"]] == ["async"]
        # One junction query and one target query
        assert len(recorder.selects_from("post_tags")) == 1
        assert len(recorder.selects_from("tags")) == 1


class TestNestedPreload:
    async def test_two_levels(self, recorder, schema):
        rows = await query(recorder, "User", schema).where("id", "=", 1).preload("posts.tags").get()
        first = next(p for p in rows[0]["posts"] if p["id"] == 1)
        assert [t["name"] for t in first["tags"]] == ["python", "sql"]

    async def test_sibling_roots_share_one_query_each(self, recorder, schema):
        rows = await (
            query(recorder, "User", schema)
            .preload("posts.tags")
            .preload("posts.user")
            .preload("profile")
            .get()
        )
        assert len(recorder.selects_from("posts")) == 1
        assert rows[0]["posts"][0]["user"]["name"] == "Alice"

    async def test_cycle_resolves_from_cache(self, recorder, schema):
        """user -> profile -> user -> profile terminates and the last hop reuses fetched rows."""
        rows = await query(recorder, "User", schema).where("id", "=", 1).preload("profile.user.profile").get()

        profile = rows[0]["profile"]
        assert profile["user"]["name"] == "Alice"
        assert profile["user"]["profile"]["id"] == profile["id"]
        assert len(recorder.selects_from("profiles")) == 1
        assert len(recorder.selects_from("users")) == 2

    async def test_revisited_relation_issues_no_query(self, recorder, schema):
        rows = await query(recorder, "Post", schema).where("id", "=", 1).preload("user.posts.user").get()

        assert rows[0]["user"]["posts"][0]["user"]["name"] == "Alice"
        # The base query plus one for "user" and one for "posts"; the second "user" hop is cached
        assert len(recorder.selects_from("users")) == 1
        assert len(recorder.selects_from("posts")) == 2

    async def test_shared_context_across_builders(self, seeded, schema):
        context = PreloadContext()
        qb = query(seeded, "Post", schema).preload("user")
        rows = await query(seeded, "Post", schema).get()

        await qb.apply_preloads(rows, context)
        assert context.visited(schema["Post"].relation("user"))
        assert rows[0]["user"]["id"] == 1

    async def test_related_rows_are_independent_copies(self, recorder, schema):
        rows = await query(recorder, "Post", schema).where("userId", "=", 1).preload("user").get()
        rows[0]["user"]["name"] = "changed"
        assert rows[1]["user"]["name"] == "Alice"


class TestUndeclaredRelations:
    async def test_unknown_root_is_skipped(self, recorder, schema):
        rows = await query(recorder, "User", schema).where("id", "=", 1).preload("comments").get()
        assert "comments" not in rows[0]
        assert len(recorder.statements) == 1

    async def test_missing_target_model_is_skipped(self):
        schema = Schema.from_dict(
            {
                "User": {
                    "table": "users",
                    "fields": {"name": {"type": "string"}},
                    "relations": [
                        {"fieldName": "posts", "kind": "onetomany", "targetModel": "Post", "foreignKey": "userId"}
                    ],
                }
            }
        )
        fake = FakeExecutor([('FROM "users"', [{"id": 1, "name": "Alice"}])])
        rows = await query(fake, "User", schema).preload("posts").get()
        assert rows == [{"id": 1, "name": "Alice"}]

    async def test_failing_relation_query_propagates(self, schema):
        fake = FakeExecutor([('FROM "users"', [{"id": 1}])], failures=['FROM "posts"'])
        with pytest.raises(RuntimeError):
            await query(fake, "User", schema).preload("posts").get()


class TestLoaderSelection:
    def test_loader_per_kind(self, schema):
        user, post, profile = schema["User"], schema["Post"], schema["Profile"]
        fake = FakeExecutor()

        assert isinstance(loader_for(user.relation("posts"), user, post, fake, None), OneToManyLoader)
        assert isinstance(loader_for(post.relation("tags"), post, schema["Tag"], fake, None), ManyToManyLoader)
        assert isinstance(loader_for(post.relation("user"), post, user, fake, None), OwnerSideLoader)
        assert isinstance(loader_for(user.relation("profile"), user, profile, fake, None), ReverseLoader)

    def test_ownership_comes_from_declared_fields(self, schema):
        """Rows missing the key do not flip ownership when the schema declares it."""
        post, user = schema["Post"], schema["User"]
        rows = [{"id": 1}, {"id": 2, "userId": 1}]
        assert parent_owns_foreign_key(post.relation("user"), post, user, rows) is True
        assert parent_owns_foreign_key(user.relation("profile"), user, schema["Profile"], rows) is False

    def test_undeclared_key_falls_back_to_rows(self):
        schema = Schema.from_dict({"A": {"fields": {}}, "B": {"fields": {}}})
        rel = RelationDescriptor("A", "b", RelationKind.MANY_TO_ONE, "B", "bId")
        assert parent_owns_foreign_key(rel, schema["A"], schema["B"], [{"id": 1, "bId": 2}]) is True
        assert parent_owns_foreign_key(rel, schema["A"], schema["B"], [{"id": 1}]) is False
