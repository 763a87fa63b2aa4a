"""Tests for the Conduit sample reducers."""

from __future__ import annotations

from typing import Any

from reducer_sync import Snapshot, SyncContext
from reducer_sync.backends import InMemorySnapshotStore
from reducer_sync.conduit import (
    UNAUTHORIZED,
    article_tags_channel,
    article_tags_reducer,
    comments_channel,
    comments_reducer,
    create_comment,
    delete_comment,
    favorites_channel,
    favorites_count,
    favorites_reducer,
    followers_channel,
    followers_reducer,
    is_following,
    unique_tags,
    users_channel,
    users_reducer,
)


class Recorder:
    """Collects every value passed to resolve."""

    def __init__(self) -> None:
        self.calls: list[Any] = []

    def __call__(self, message: Any) -> None:
        self.calls.append(message)


class TestComments:
    """Tests for comments_reducer."""

    def test_create_appends(self) -> None:
        resolve = Recorder()
        action = create_comment("u1", "Nice post")

        comments = comments_reducer([], action, resolve)

        assert comments == [{"uid": "u1", "commentId": action["commentId"], "body": "Nice post"}]
        assert resolve.calls == []

    def test_create_requires_uid(self) -> None:
        resolve = Recorder()
        state: list[dict] = []

        assert comments_reducer(state, create_comment(None, "anon"), resolve) is state
        assert resolve.calls == [{"errors": UNAUTHORIZED}]

    def test_emitters_choose_distinct_ids(self) -> None:
        assert create_comment("u1", "a")["commentId"] != create_comment("u1", "a")["commentId"]

    def test_delete_by_owner(self) -> None:
        state = [
            {"uid": "u1", "commentId": "c1", "body": "a"},
            {"uid": "u2", "commentId": "c2", "body": "b"},
        ]

        assert comments_reducer(state, delete_comment("u1", "c1"), Recorder()) == [state[1]]

    def test_delete_by_other_user_rejected(self) -> None:
        resolve = Recorder()
        state = [{"uid": "u1", "commentId": "c1", "body": "a"}]

        assert comments_reducer(state, delete_comment("u2", "c1"), resolve) is state
        assert resolve.calls == [{"errors": UNAUTHORIZED}]

    def test_delete_unknown_comment_rejected(self) -> None:
        resolve = Recorder()

        comments_reducer([], delete_comment("u1", "missing"), resolve)

        assert resolve.calls == [{"errors": UNAUTHORIZED}]

    def test_input_not_mutated(self) -> None:
        state: list[dict] = []

        comments_reducer(state, create_comment("u1", "x"), Recorder())

        assert state == []


class TestUsers:
    """Tests for users_reducer."""

    def test_sign_up(self) -> None:
        resolve = Recorder()
        user = {"uid": "u1", "username": "jake"}

        assert users_reducer([], {"type": "SIGN_UP", "user": user}, resolve) == [user]
        assert resolve.calls == [{}]

    def test_duplicate_username(self) -> None:
        resolve = Recorder()
        state = [{"uid": "u1", "username": "jake"}]
        action = {"type": "SIGN_UP", "user": {"uid": "u2", "username": "jake"}}

        assert users_reducer(state, action, resolve) == state
        assert resolve.calls == [{"username": "already in use"}]

    def test_update(self) -> None:
        state = [{"uid": "u1", "username": "jake"}, {"uid": "u2", "username": "anna"}]
        new_user = {"uid": "u1", "username": "jacob"}

        result = users_reducer(state, {"type": "UPDATE", "uid": "u1", "newUser": new_user}, Recorder())

        assert result == [new_user, state[1]]

    def test_update_requires_uid(self) -> None:
        resolve = Recorder()

        users_reducer([], {"type": "UPDATE", "newUser": {}}, resolve)

        assert resolve.calls == [{"unauthorized": "to perform update to user"}]


class TestFollowers:
    """Tests for followers_reducer."""

    def test_follow_and_unfollow(self) -> None:
        follow = {"type": "FollowAction", "uid": "u1", "follower": "u1", "leader": "u2"}
        unfollow = {**follow, "type": "UnfollowAction"}

        followers = followers_reducer([], follow, Recorder())
        assert is_following(followers, "u1", "u2")
        assert not is_following(followers, "u2", "u1")

        followers = followers_reducer(followers, unfollow, Recorder())
        assert followers == []

    def test_follow_twice_keeps_one_pair(self) -> None:
        follow = {"type": "FollowAction", "uid": "u1", "follower": "u1", "leader": "u2"}

        followers = followers_reducer(followers_reducer([], follow, Recorder()), follow, Recorder())

        assert followers == [{"follower": "u1", "leader": "u2"}]

    def test_cannot_follow_on_behalf_of_others(self) -> None:
        resolve = Recorder()
        action = {"type": "FollowAction", "uid": "u3", "follower": "u1", "leader": "u2"}

        assert followers_reducer([], action, resolve) == []
        assert resolve.calls == [{"errors": UNAUTHORIZED}]


class TestFavorites:
    """Tests for favorites_reducer."""

    def test_favorite_indexes_both_ways(self) -> None:
        action = {"type": "FavoriteAction", "userId": "u1", "slug": "hello"}

        favorites = favorites_reducer({"articles": {}, "users": {}}, action, Recorder())

        assert favorites == {"articles": {"hello": {"u1": True}}, "users": {"u1": {"hello": True}}}

    def test_count(self) -> None:
        favorites: dict = {"articles": {}, "users": {}}
        for user in ("u1", "u2", "u3"):
            action = {"type": "FavoriteAction", "userId": user, "slug": "hello"}
            favorites = favorites_reducer(favorites, action, Recorder())
        action = {"type": "UnfavoriteAction", "userId": "u2", "slug": "hello"}
        favorites = favorites_reducer(favorites, action, Recorder())

        assert favorites_count(favorites, "hello") == 2
        assert favorites_count(favorites, "other") == 0

    def test_requires_user_and_slug(self) -> None:
        resolve = Recorder()
        state = {"articles": {}, "users": {}}

        assert favorites_reducer(state, {"type": "FavoriteAction", "slug": "x"}, resolve) is state
        assert resolve.calls == [{"errors": UNAUTHORIZED}]


class TestArticleTags:
    """Tests for article_tags_reducer."""

    def test_update_replaces_slug_tags(self) -> None:
        resolve = Recorder()
        state = [
            {"slug": "a", "tag": "python"},
            {"slug": "b", "tag": "python"},
            {"slug": "a", "tag": "async"},
        ]
        action = {"type": "UpdateArticleTags", "slug": "a", "tagList": ["async", "sync"]}

        tags = article_tags_reducer(state, action, resolve)

        assert tags == [
            {"slug": "b", "tag": "python"},
            {"slug": "a", "tag": "async"},
            {"slug": "a", "tag": "sync"},
        ]
        assert resolve.calls == [{}]

    def test_unique_tags(self) -> None:
        tags = [{"slug": "a", "tag": "x"}, {"slug": "b", "tag": "y"}, {"slug": "c", "tag": "x"}]

        assert unique_tags(tags) == ["x", "y"]


class TestChannelFactories:
    """Tests for the ready-made channel definitions."""

    def test_names(self) -> None:
        assert comments_channel().name == "comments"
        assert users_channel().name == "conduit-users-111"
        assert followers_channel().name == "conduit-followers-111"
        assert favorites_channel().name == "conduit-favorites-32"
        assert article_tags_channel().name == "conduit-tags-32"

    def test_plain_initial_values(self) -> None:
        assert users_channel().initial == []
        assert favorites_channel().initial == {"articles": {}, "users": {}}

    async def test_seeded_from_previous_version(
        self, context: SyncContext, snapshots: InMemorySnapshotStore
    ) -> None:
        jake = {"uid": "u1", "username": "jake"}
        await snapshots.write("conduit-users-110", Snapshot([jake], 7))

        async with await context.open(users_channel(context)) as users:
            assert await users.wait_settled() == [jake]

    async def test_seed_falls_back_to_default(self, context: SyncContext) -> None:
        async with await context.open(article_tags_channel(context)) as tags:
            assert await tags.wait_settled() == []
