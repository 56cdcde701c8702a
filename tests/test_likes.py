import asyncio

import pytest
from sqlalchemy import func, select

from campus_feed.core.errors import GatewayError
from campus_feed.models import PostLike
from campus_feed.reconcile.likes import (
    FAILURE_MESSAGE,
    SIGN_IN_MESSAGE,
    LikeReconciler,
    LikeState,
    apply_like_event,
    pending_key,
)
from campus_feed.reconcile.pending import PendingOperations
from campus_feed.services.gateway import POST_LIKES, Query, eq
from campus_feed.services.realtime import ChangeEvent, ChangeKind, RealtimeHub
from campus_feed.services.sql_gateway import SqlGateway

from conftest import FRIEND, STRANGER, VIEWER, add_like, add_post


def _event(kind: ChangeKind, user_id: str, post_id: str = "p1") -> ChangeEvent:
    row = {"id": f"like-{user_id}", "post_id": post_id, "user_id": user_id}
    if kind is ChangeKind.DELETE:
        return ChangeEvent(kind, POST_LIKES, old=row)
    return ChangeEvent(kind, POST_LIKES, new=row)


def _like_rows(db, post_id: str) -> int:
    db.expire_all()
    return db.execute(
        select(func.count()).select_from(PostLike).where(PostLike.post_id == post_id)
    ).scalar_one()


# ---------- pure merge ----------

def test_other_users_events_move_the_count():
    state = LikeState(liked=False, count=1)

    state = apply_like_event(state, _event(ChangeKind.INSERT, "someone"), "viewer")
    assert state.count == 2
    state = apply_like_event(state, _event(ChangeKind.DELETE, "someone"), "viewer")
    assert state.count == 1
    assert state.liked is False


def test_count_never_goes_negative():
    state = LikeState(liked=False, count=0)

    state = apply_like_event(state, _event(ChangeKind.DELETE, "someone"), "viewer")

    assert state.count == 0


def test_echo_of_pending_operation_is_consumed():
    key = pending_key("insert", "viewer", "p1")
    state = LikeState(liked=True, count=1, pending=PendingOperations().add(key))

    merged = apply_like_event(state, _event(ChangeKind.INSERT, "viewer"), "viewer")

    assert merged.count == 1
    assert merged.liked is True
    assert key not in merged.pending


def test_own_change_from_elsewhere_flips_once():
    state = LikeState(liked=False, count=3)

    once = apply_like_event(state, _event(ChangeKind.INSERT, "viewer"), "viewer")
    twice = apply_like_event(once, _event(ChangeKind.INSERT, "viewer"), "viewer")

    assert once == LikeState(liked=True, count=4)
    assert twice == once


def test_update_events_are_ignored():
    state = LikeState(liked=False, count=3)

    assert apply_like_event(state, _event(ChangeKind.UPDATE, "x"), "viewer") is state


# ---------- reconciler ----------

@pytest.fixture
def post(db, people):
    return add_post(db, FRIEND)


@pytest.mark.asyncio
async def test_toggle_like_inserts_and_absorbs_its_echo(gateway, session, db, post):
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=False, count=0))
    likes.open()

    state = await likes.toggle_like()

    assert (state.liked, state.count, state.busy) == (True, 1, False)
    assert len(state.pending) == 1
    assert _like_rows(db, post.id) == 1

    await likes.sync()
    assert (likes.state.liked, likes.state.count) == (True, 1)
    assert len(likes.state.pending) == 0
    await likes.close()


@pytest.mark.asyncio
async def test_toggle_unlike_deletes_row(gateway, session, db, post):
    add_like(db, post, VIEWER)
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=True, count=1))
    likes.open()

    state = await likes.toggle_like()
    await likes.sync()

    assert (state.liked, state.count) == (False, 0)
    assert (likes.state.liked, likes.state.count) == (False, 0)
    assert _like_rows(db, post.id) == 0
    await likes.close()


@pytest.mark.asyncio
async def test_double_toggle_creates_one_like(gateway, session, db, post):
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=False, count=2))
    likes.open()

    await asyncio.gather(likes.toggle_like(), likes.toggle_like())
    await likes.sync()

    assert _like_rows(db, post.id) == 1
    assert likes.state.liked is True
    assert likes.state.count == 3
    await likes.close()


@pytest.mark.asyncio
async def test_duplicate_like_is_benign(gateway, session, db, post):
    # Liked from another device; this view has not heard about it yet.
    add_like(db, post, VIEWER)
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=False, count=0))
    likes.open()

    state = await likes.toggle_like()

    assert state.liked is True
    assert state.error is None
    assert len(state.pending) == 0
    assert _like_rows(db, post.id) == 1
    await likes.close()


@pytest.mark.asyncio
async def test_unlike_of_missing_row_keeps_unliked(gateway, session, db, post):
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=True, count=1))
    likes.open()

    state = await likes.toggle_like()

    assert (state.liked, state.count, state.error) == (False, 0, None)
    assert len(state.pending) == 0
    await likes.close()


@pytest.mark.asyncio
async def test_failed_write_reverts(gateway, session, db, post, mocker):
    mocker.patch.object(gateway, "insert", side_effect=GatewayError("offline"))
    changes = []
    likes = LikeReconciler(
        gateway, session, post.id, LikeState(liked=False, count=4), on_change=changes.append
    )
    likes.open()

    state = await likes.toggle_like()

    assert (state.liked, state.count) == (False, 4)
    assert state.error == FAILURE_MESSAGE
    assert len(state.pending) == 0
    # Optimistic value was shown before the revert.
    assert any(change.liked and change.count == 5 for change in changes)
    assert _like_rows(db, post.id) == 0
    await likes.close()


@pytest.mark.asyncio
async def test_signed_out_viewer_is_asked_to_sign_in(gateway, signed_out, db, post, mocker):
    insert = mocker.spy(gateway, "insert")
    likes = LikeReconciler(gateway, signed_out, post.id, LikeState(liked=False, count=0))

    state = await likes.toggle_like()

    assert state.error == SIGN_IN_MESSAGE
    assert state.count == 0
    assert insert.call_count == 0


@pytest.mark.asyncio
async def test_realtime_likes_from_others(gateway, session, db, post):
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=False, count=0))
    likes.open()

    await gateway.insert(POST_LIKES, {"post_id": post.id, "user_id": FRIEND.id})
    await gateway.insert(POST_LIKES, {"post_id": post.id, "user_id": STRANGER.id})
    await likes.sync()
    assert (likes.state.liked, likes.state.count) == (False, 2)

    await gateway.delete(POST_LIKES, [eq("post_id", post.id), eq("user_id", FRIEND.id)])
    await likes.sync()
    assert likes.state.count == 1
    await likes.close()


@pytest.mark.asyncio
async def test_liked_parity_follows_successful_toggles(gateway, session, db, post):
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=False, count=0))
    likes.open()

    for n in range(1, 6):
        await likes.toggle_like()
        if n % 2:
            await likes.sync()
        assert likes.state.liked is (n % 2 == 1)
        assert likes.state.count >= 0

    await likes.sync()
    assert likes.state.count == _like_rows(db, post.id) == 1
    await likes.close()


@pytest.mark.asyncio
async def test_lagged_subscription_resyncs(session_factory, session, db, post):
    gateway = SqlGateway(session_factory, RealtimeHub(queue_size=1))
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=False, count=0))
    subscription = likes.open()

    await gateway.insert(POST_LIKES, {"post_id": post.id, "user_id": FRIEND.id})
    await gateway.insert(POST_LIKES, {"post_id": post.id, "user_id": STRANGER.id})
    await gateway.insert(POST_LIKES, {"post_id": post.id, "user_id": VIEWER.id})
    await likes.sync()

    assert (likes.state.liked, likes.state.count) == (True, 3)
    assert subscription.drain() == []
    await likes.close()


@pytest.mark.asyncio
async def test_closed_reconciler_ignores_toggles(gateway, session, db, post):
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=False, count=0))
    likes.open()
    await likes.close()

    state = await likes.toggle_like()

    assert state.liked is False
    assert _like_rows(db, post.id) == 0


@pytest.mark.asyncio
async def test_reseed_skips_queued_events_already_in_the_fetch(gateway, session, db, post):
    likes = LikeReconciler(gateway, session, post.id, LikeState(liked=False, count=0))
    likes.open()
    await likes.toggle_like()
    await gateway.insert(POST_LIKES, {"post_id": post.id, "user_id": FRIEND.id})

    fetched = await gateway.select(POST_LIKES, Query().where("post_id", "eq", post.id))
    await gateway.insert(POST_LIKES, {"post_id": post.id, "user_id": STRANGER.id})

    likes.reseed(True, len(fetched), [row["id"] for row in fetched])

    assert (likes.state.liked, likes.state.count) == (True, 3)
    assert len(likes.state.pending) == 0
    await likes.sync()
    assert likes.state.count == _like_rows(db, post.id) == 3
    await likes.close()
