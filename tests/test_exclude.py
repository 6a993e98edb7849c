"""Tests for field exclusion, including dotted paths into preloads."""

from __future__ import annotations

import copy

import pytest

from slintorm import QueryBuilder, remove_excluded

ROW = {
    "id": 1,
    "name": "Alice",
    "password": "secret",
    "profile": {"id": 3, "bio": "hi", "user": {"id": 1, "password": "secret"}},
    "posts": [
        {"id": 1, "title": "First", "body": "..."},
        {"id": 2, "title": "Second", "body": "..."},
    ],
}


class TestRemoveExcluded:
    def test_top_level_key(self):
        assert "password" not in remove_excluded(ROW, ["password"])

    def test_nested_mapping(self):
        result = remove_excluded(ROW, ["profile.bio"])
        assert result["profile"] == {"id": 3, "user": {"id": 1, "password": "secret"}}

    def test_nested_list_elementwise(self):
        result = remove_excluded(ROW, ["posts.body"])
        assert result["posts"] == [{"id": 1, "title": "First"}, {"id": 2, "title": "Second"}]

    def test_deep_path(self):
        result = remove_excluded(ROW, ["profile.user.password"])
        assert result["profile"]["user"] == {"id": 1}

    def test_missing_paths_are_ignored(self):
        assert remove_excluded(ROW, ["nope", "profile.nope.deeper", "id.x"]) == ROW

    def test_input_is_not_mutated(self):
        before = copy.deepcopy(ROW)
        remove_excluded(ROW, ["password", "posts.body", "profile.user.password"])
        assert ROW == before

    def test_scalars_pass_through(self):
        assert remove_excluded(5, ["a"]) == 5
        assert remove_excluded([{"a": 1, "b": 2}], ["a"]) == [{"b": 2}]


@pytest.mark.parametrize(
    ("first", "second"),
    [
        (["password"], ["posts.body"]),
        (["posts.body"], ["posts"]),
        (["profile.user.password"], ["profile.bio", "name"]),
        ([], ["profile"]),
        (["profile.user"], ["profile.user.password"]),
    ],
)
def test_exclusion_composes_as_union(first, second):
    """Excluding A then B equals excluding A and B together, in either order."""
    combined = remove_excluded(ROW, first + second)
    assert remove_excluded(remove_excluded(ROW, first), second) == combined
    assert remove_excluded(remove_excluded(ROW, second), first) == combined


class TestQueryExclude:
    async def test_top_level_exclude(self, seeded, schema):
        rows = await QueryBuilder("users", seeded, "User", schema).exclude("password").get()
        assert rows
        assert all("password" not in r and "name" in r for r in rows)

    async def test_nested_exclude_on_preload(self, seeded, schema):
        """Excluding ``user.lastname`` trims only the preloaded user."""
        rows = await (
            QueryBuilder("posts", seeded, "Post", schema)
            .where("id", "=", 1)
            .preload("user")
            .exclude("user.lastname")
            .get()
        )
        user = rows[0]["user"]
        assert "lastname" not in user
        assert {"id", "name", "password", "active"} <= set(user)
        assert "userId" in rows[0]

    async def test_exclude_reaches_nested_chain(self, seeded, schema):
        rows = await (
            QueryBuilder("users", seeded, "User", schema)
            .where("id", "=", 1)
            .preload("posts.tags")
            .exclude("posts.title", "posts.tags.id")
            .get()
        )
        for post in rows[0]["posts"]:
            assert "title" not in post
            assert all(set(tag) >= {"name"} and "id" not in tag for tag in post["tags"])

    async def test_excluding_preloaded_relation_removes_it(self, seeded, schema):
        rows = await (
            QueryBuilder("users", seeded, "User", schema).where("id", "=", 1).preload("posts").exclude("posts").get()
        )
        assert "posts" not in rows[0]
