import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from campus_feed.core.errors import GatewayError
from campus_feed.reconcile.comments import (
    EMPTY_MESSAGE,
    LOAD_FAILED_MESSAGE,
    SIGN_IN_MESSAGE,
    SUBMIT_FAILED_MESSAGE,
    CommentThread,
    CommentThreadState,
    CommentView,
    ThreadPhase,
    append_page,
    merge_comment,
    remove_comment,
)
from campus_feed.reconcile.read_model import UNKNOWN_AUTHOR_EMAIL
from campus_feed.schemas import CommentRow
from campus_feed.services.gateway import POST_COMMENTS, Query, eq
from campus_feed.services.sql_gateway import SqlGateway

from conftest import FRIEND, STRANGER, VIEWER, add_comment, add_post

T0 = datetime(2024, 9, 1, tzinfo=UTC)


def _view(comment_id: str, seconds: int = 0, email: str = "a@x.edu") -> CommentView:
    return CommentView(
        comment=CommentRow(
            id=comment_id,
            post_id="p1",
            user_id="a",
            content=f"comment {comment_id}",
            created_at=T0 + timedelta(seconds=seconds),
        ),
        author_email=email,
    )


# ---------- pure merges ----------

def test_merge_is_idempotent_by_id():
    state = CommentThreadState(phase=ThreadPhase.READY)

    once = merge_comment(state, _view("c1"))
    twice = merge_comment(once, _view("c1"))

    assert [view.id for view in twice.comments] == ["c1"]
    assert twice.total == 1
    assert twice is once


def test_out_of_band_comment_waits_in_tail_until_paging_reaches_it():
    state = CommentThreadState(
        phase=ThreadPhase.READY, loaded=(_view("c1", 1),), total=3
    )

    state = merge_comment(state, _view("c9", 9))
    assert [view.id for view in state.tail] == ["c9"]
    assert state.total == 4
    assert state.has_more

    state = append_page(state, [_view("c2", 2), _view("c3", 3), _view("c9", 9)])
    assert [view.id for view in state.comments] == ["c1", "c2", "c3", "c9"]
    assert state.tail == ()
    assert not state.has_more


def test_remove_comment_and_repeated_delete():
    state = CommentThreadState(
        phase=ThreadPhase.READY, loaded=(_view("c1"), _view("c2")), total=2
    )

    state = remove_comment(state, "c1")
    again = remove_comment(state, "c1")

    assert [view.id for view in again.comments] == ["c2"]
    assert again.total == 1
    # A late insert for a deleted id does not resurrect it.
    assert merge_comment(again, _view("c1")) is again


# ---------- thread against the local gateway ----------

@pytest.fixture
def post(db, people):
    return add_post(db, FRIEND)


@pytest.fixture
def seeded(db, post):
    """25 comments alternating between the viewer and a friend."""
    return [
        add_comment(db, post, VIEWER if i % 2 else FRIEND, f"comment {i}", seconds=i)
        for i in range(25)
    ]


@pytest.mark.asyncio
async def test_first_page_counts_and_resolves_emails(gateway, session, post, seeded):
    thread = CommentThread(gateway, session, post.id, page_size=20)

    state = await thread.load_first_page()

    assert state.phase is ThreadPhase.READY
    assert state.total == 25
    assert state.has_more
    assert [view.id for view in state.comments] == [c.id for c in seeded[:20]]
    assert {view.author_email for view in state.comments} == {VIEWER.email, FRIEND.email}


@pytest.mark.asyncio
async def test_paging_to_the_end_matches_one_ordered_fetch(gateway, session, post, seeded):
    thread = CommentThread(gateway, session, post.id, page_size=20)
    thread.open()
    await thread.load_first_page()

    await gateway.insert(
        POST_COMMENTS, {"post_id": post.id, "user_id": FRIEND.id, "content": "late arrival"}
    )
    await thread.sync()
    mine = await thread.submit_comment("  my own  ")
    await thread.sync()

    assert mine is not None
    assert mine.comment.content == "my own"
    assert mine.author_email == VIEWER.email
    assert [view.id for view in thread.state.tail][-1] == mine.id

    while thread.state.has_more:
        await thread.load_next_page()

    everything = await gateway.select(
        POST_COMMENTS,
        Query().where("post_id", "eq", post.id).order_by("created_at").order_by("id"),
    )
    assert [view.id for view in thread.comments] == [row["id"] for row in everything]
    assert thread.state.total == 27
    assert thread.state.tail == ()
    await thread.close()


@pytest.mark.asyncio
async def test_next_page_is_a_no_op_at_the_end(gateway, session, post, seeded, mocker):
    thread = CommentThread(gateway, session, post.id, page_size=20)
    await thread.load_first_page()
    await thread.load_next_page()
    assert len(thread.comments) == 25

    select = mocker.spy(gateway, "select")
    count = mocker.spy(gateway, "count")
    before = thread.state

    after = await thread.load_next_page()

    assert after is before
    assert select.call_count == 0
    assert count.call_count == 0


@pytest.mark.asyncio
async def test_empty_comment_makes_no_calls(session):
    gateway = AsyncMock(spec=SqlGateway)
    thread = CommentThread(gateway, session, "p1")

    assert await thread.submit_comment("   \n ") is None

    assert thread.state.error == EMPTY_MESSAGE
    assert gateway.mock_calls == []


@pytest.mark.asyncio
async def test_signed_out_viewer_cannot_comment(signed_out):
    gateway = AsyncMock(spec=SqlGateway)
    thread = CommentThread(gateway, signed_out, "p1")

    assert await thread.submit_comment("hi") is None

    assert thread.state.error == SIGN_IN_MESSAGE
    assert gateway.mock_calls == []


@pytest.mark.asyncio
async def test_failed_submit_leaves_list_unchanged(gateway, session, post, seeded, mocker):
    thread = CommentThread(gateway, session, post.id, page_size=5)
    await thread.load_first_page()
    before = thread.comments
    mocker.patch.object(gateway, "insert", side_effect=GatewayError("offline"))

    assert await thread.submit_comment("hello") is None

    assert thread.state.phase is ThreadPhase.READY
    assert thread.state.error == SUBMIT_FAILED_MESSAGE
    assert thread.comments == before


@pytest.mark.asyncio
async def test_submit_during_page_load_leaves_thread_ready(gateway, session, post, seeded):
    thread = CommentThread(gateway, session, post.id, page_size=10)
    await thread.load_first_page()

    _, mine = await asyncio.gather(thread.load_next_page(), thread.submit_comment("hi"))

    assert mine is not None
    assert thread.state.phase is ThreadPhase.READY
    assert len(thread.state.loaded) == 20

    await thread.load_next_page()
    assert thread.state.phase is ThreadPhase.READY
    assert not thread.state.has_more
    assert thread.comments[-1].id == mine.id
    assert thread.state.total == 26


@pytest.mark.asyncio
async def test_second_submit_while_one_is_in_flight_is_ignored(gateway, session, post):
    thread = CommentThread(gateway, session, post.id)
    await thread.load_first_page()

    first, second = await asyncio.gather(
        thread.submit_comment("one"), thread.submit_comment("two")
    )

    assert first is not None
    assert second is None
    assert [c.comment.content for c in thread.comments] == ["one"]
    assert thread.state.phase is ThreadPhase.READY


@pytest.mark.asyncio
async def test_own_comment_and_its_echo_appear_once(gateway, session, post):
    thread = CommentThread(gateway, session, post.id)
    thread.open()
    await thread.load_first_page()

    view = await thread.submit_comment("first!")
    await thread.sync()

    assert [c.id for c in thread.comments] == [view.id]
    assert thread.state.total == 1
    await thread.close()


@pytest.mark.asyncio
async def test_realtime_insert_and_delete(gateway, session, post, seeded):
    thread = CommentThread(gateway, session, post.id, page_size=30)
    thread.open()
    await thread.load_first_page()

    row = await gateway.insert(
        POST_COMMENTS, {"post_id": post.id, "user_id": STRANGER.id, "content": "hey"}
    )
    await thread.sync()
    assert thread.comments[-1].id == row["id"]
    assert thread.comments[-1].author_email == STRANGER.email

    await gateway.delete(POST_COMMENTS, [eq("id", seeded[0].id)])
    await thread.sync()
    assert seeded[0].id not in {view.id for view in thread.comments}
    assert thread.state.total == 25
    await thread.close()


@pytest.mark.asyncio
async def test_comments_on_other_posts_are_not_delivered(gateway, session, db, post):
    other = add_post(db, FRIEND, content="other post")
    thread = CommentThread(gateway, session, post.id)
    thread.open()
    await thread.load_first_page()

    await gateway.insert(
        POST_COMMENTS, {"post_id": other.id, "user_id": FRIEND.id, "content": "elsewhere"}
    )

    assert await thread.sync() == 0
    assert thread.comments == ()
    await thread.close()


@pytest.mark.asyncio
async def test_unknown_commenter_when_lookup_fails(gateway, session, post, mocker):
    thread = CommentThread(gateway, session, post.id)
    thread.open()
    await thread.load_first_page()

    await gateway.insert(
        POST_COMMENTS, {"post_id": post.id, "user_id": STRANGER.id, "content": "boo"}
    )
    mocker.patch.object(gateway, "select", side_effect=GatewayError("offline"))
    await thread.sync()

    assert [view.author_email for view in thread.comments] == [UNKNOWN_AUTHOR_EMAIL]
    await thread.close()


@pytest.mark.asyncio
async def test_load_failure_surfaces_error(gateway, session, post, mocker):
    mocker.patch.object(gateway, "count", side_effect=GatewayError("offline"))
    thread = CommentThread(gateway, session, post.id)

    state = await thread.load_first_page()

    assert state.phase is ThreadPhase.READY
    assert state.error == LOAD_FAILED_MESSAGE
    assert state.comments == ()
