"""
Sample reducers from the Conduit blogging application.

Each reducer takes ``(state, action, resolve)`` and returns the new
state without mutating the old one. Authorization and validation
failures are reported cooperatively through ``resolve({"errors": ...})``
and leave the state unchanged.

The ``*_channel`` factories build ready-to-attach channel definitions.
When given a :class:`SyncContext`, versioned channels seed their
initial value from the previous version's latest snapshot.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from .id_utils import channel_name, previous_channel_name
from .protocol import ChannelDefinition, Resolve

if TYPE_CHECKING:
    from .context import SyncContext

DOMAIN = "conduit"
USERS_VERSION = 111
ARTICLES_VERSION = 32

UNAUTHORIZED = {"unauthorized": "to perform this action"}


# =============================================================================
# Comments
# =============================================================================


def comments_reducer(comments: list[dict], action: dict, resolve: Resolve) -> list[dict]:
    """CreateComment appends a comment; DeleteComment removes the author's own.

    Comment shape: ``{"uid", "commentId", "body"}``.
    """
    uid = action.get("uid")
    if not uid:
        resolve({"errors": UNAUTHORIZED})
        return comments

    kind = action.get("type")
    if kind == "CreateComment":
        comment_id = action.get("commentId") or uuid.uuid4().hex
        return [*comments, {"uid": uid, "commentId": comment_id, "body": action.get("body", "")}]

    if kind == "DeleteComment":
        comment_id = action.get("commentId")
        comment = next((c for c in comments if c["commentId"] == comment_id), None)
        if comment is None or comment["uid"] != uid:
            resolve({"errors": UNAUTHORIZED})
            return comments
        return [c for c in comments if c["commentId"] != comment_id]

    return comments


def create_comment(uid: str | None, body: str) -> dict[str, Any]:
    """CreateComment action; the ID is chosen by the emitter so every replica agrees."""
    return {"type": "CreateComment", "uid": uid, "body": body, "commentId": uuid.uuid4().hex}


def delete_comment(uid: str | None, comment_id: str) -> dict[str, Any]:
    return {"type": "DeleteComment", "uid": uid, "commentId": comment_id}


def comments_channel() -> ChannelDefinition:
    return ChannelDefinition(
        name="comments", reducer=comments_reducer, initial=[], loading=None, version="1"
    )


# =============================================================================
# Users and followers
# =============================================================================


def users_reducer(users: list[dict], action: dict, resolve: Resolve) -> list[dict]:
    """SIGN_UP adds a user with a unique username; UPDATE replaces a user.

    Always resolves with an errors dict, empty on success.
    """
    errors: dict[str, str] = {}
    kind = action.get("type")

    if kind == "SIGN_UP":
        user = action["user"]
        if any(u.get("username") == user.get("username") for u in users):
            errors["username"] = "already in use"
        else:
            users = [*users, user]
    elif kind == "UPDATE":
        uid = action.get("uid")
        if uid:
            users = [action["newUser"] if u.get("uid") == uid else u for u in users]
        else:
            errors["unauthorized"] = "to perform update to user"

    resolve(errors)
    return users


def followers_reducer(followers: list[dict], action: dict, resolve: Resolve) -> list[dict]:
    """FollowAction / UnfollowAction on ``{"follower", "leader"}`` pairs.

    Only the follower can follow or unfollow on their own behalf.
    """
    follower = action.get("follower")
    leader = action.get("leader")
    if not follower or action.get("uid") != follower:
        resolve({"errors": UNAUTHORIZED})
        return followers

    pair = {"follower": follower, "leader": leader}
    remaining = [f for f in followers if f != pair]
    if action.get("type") == "FollowAction":
        return [*remaining, pair]
    return remaining


def is_following(followers: list[dict], follower: str, leader: str) -> bool:
    return {"follower": follower, "leader": leader} in followers


def users_channel(context: SyncContext | None = None) -> ChannelDefinition:
    name = channel_name(DOMAIN, "users", USERS_VERSION)
    return ChannelDefinition(
        name=name,
        reducer=users_reducer,
        initial=_seed(context, name, []),
        loading=None,
        version="1",
    )


def followers_channel(context: SyncContext | None = None) -> ChannelDefinition:
    name = channel_name(DOMAIN, "followers", USERS_VERSION)
    return ChannelDefinition(
        name=name,
        reducer=followers_reducer,
        initial=_seed(context, name, []),
        loading=None,
        version="1",
    )


# =============================================================================
# Articles: favorites and tags
# =============================================================================


def favorites_reducer(favorites: dict, action: dict, resolve: Resolve) -> dict:
    """FavoriteAction / UnfavoriteAction, indexed by article and by user.

    State shape: ``{"articles": {slug: {user: bool}}, "users": {user: {slug: bool}}}``.
    """
    user_id = action.get("userId")
    slug = action.get("slug")
    if not user_id or not slug:
        resolve({"errors": UNAUTHORIZED})
        return favorites

    favorite = action.get("type") == "FavoriteAction"
    articles = favorites.get("articles", {})
    users = favorites.get("users", {})
    return {
        "articles": {**articles, slug: {**articles.get(slug, {}), user_id: favorite}},
        "users": {**users, user_id: {**users.get(user_id, {}), slug: favorite}},
    }


def favorites_count(favorites: dict, slug: str) -> int:
    return sum(1 for v in favorites.get("articles", {}).get(slug, {}).values() if v)


def article_tags_reducer(tags: list[dict], action: dict, resolve: Resolve) -> list[dict]:
    """UpdateArticleTags makes a slug's ``{"slug", "tag"}`` rows match ``tagList``.

    Rows of other slugs keep their order; new tags are appended.
    """
    if action.get("type") == "UpdateArticleTags":
        slug = action["slug"]
        tag_list = action.get("tagList", [])
        kept = [t for t in tags if t["slug"] != slug or t["tag"] in tag_list]
        existing = {t["tag"] for t in kept if t["slug"] == slug}
        tags = kept + [{"slug": slug, "tag": tag} for tag in tag_list if tag not in existing]
    resolve({})
    return tags


def unique_tags(tags: list[dict]) -> list[str]:
    """Distinct tag names in first-seen order."""
    return list(dict.fromkeys(t["tag"] for t in tags))


def favorites_channel(context: SyncContext | None = None) -> ChannelDefinition:
    name = channel_name(DOMAIN, "favorites", ARTICLES_VERSION)
    empty = {"articles": {}, "users": {}}
    return ChannelDefinition(
        name=name,
        reducer=favorites_reducer,
        initial=_seed(context, name, empty),
        loading=None,
        version="1",
    )


def article_tags_channel(context: SyncContext | None = None) -> ChannelDefinition:
    name = channel_name(DOMAIN, "tags", ARTICLES_VERSION)
    return ChannelDefinition(
        name=name,
        reducer=article_tags_reducer,
        initial=_seed(context, name, []),
        loading=None,
        version="1",
    )


def _seed(context: SyncContext | None, name: str, default: Any) -> Any:
    if context is None:
        return default
    return context.seed_from(previous_channel_name(name), default=default)
