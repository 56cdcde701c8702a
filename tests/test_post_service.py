from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from campus_feed.core.errors import UploadFailedError
from campus_feed.models import Post
from campus_feed.reconcile.feed import FeedReconciler
from campus_feed.services.post_service import (
    EMPTY_MESSAGE,
    SIGN_IN_MESSAGE,
    UPLOAD_FAILED_MESSAGE,
    ImageUpload,
    SubmissionStatus,
    create_post,
    image_object_path,
)
from campus_feed.services.storage import LocalStorage, ObjectStorage

from conftest import COLLEGE, VIEWER, add_user


def _post_count(db) -> int:
    db.expire_all()
    return db.execute(select(func.count()).select_from(Post)).scalar_one()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(root=tmp_path, bucket="post-images")


def test_image_object_path():
    assert image_object_path("u1", "cat.png", now_ms=1700000000000) == "u1/1700000000000_cat.png"
    assert image_object_path("u1", "../../etc/pass wd", now_ms=5) == "u1/5_pass_wd"


@pytest.mark.asyncio
async def test_create_text_post(gateway, session, db, storage, people):
    result = await create_post(gateway, storage, session, "  hello campus  ")

    assert result.status is SubmissionStatus.CREATED
    assert result.post.content == "hello campus"
    assert result.post.college == COLLEGE
    assert result.post.image_url is None
    assert result.post.anonymous is False
    assert _post_count(db) == 1


@pytest.mark.asyncio
async def test_create_post_with_image(gateway, session, db, storage, people, tmp_path):
    image = ImageUpload(filename="cat.png", data=b"\x89PNG...")

    result = await create_post(gateway, storage, session, "look", image, anonymous=True)

    assert result.status is SubmissionStatus.CREATED
    assert result.post.anonymous is True
    assert result.post.image_url.startswith("file://")
    stored = list((tmp_path / "post-images" / VIEWER.id).iterdir())
    assert len(stored) == 1
    assert stored[0].name.endswith("_cat.png")
    assert stored[0].read_bytes() == b"\x89PNG..."


@pytest.mark.asyncio
async def test_failed_upload_creates_no_post(gateway, session, db, people):
    storage = AsyncMock(spec=ObjectStorage)
    storage.upload.side_effect = UploadFailedError("bucket unavailable")
    feed = FeedReconciler(gateway, session)
    before = await feed.load_feed()

    result = await create_post(
        gateway, storage, session, "with picture", ImageUpload("cat.png", b"...")
    )

    assert result.status is SubmissionStatus.FAILED
    assert result.error == UPLOAD_FAILED_MESSAGE
    assert result.post is None
    assert _post_count(db) == 0
    assert (await feed.load_feed()).posts == before.posts


@pytest.mark.asyncio
async def test_viewer_without_college_uploads_nothing(gateway, session, db):
    add_user(db, VIEWER, college=None)
    storage = AsyncMock(spec=ObjectStorage)

    result = await create_post(gateway, storage, session, "hi", ImageUpload("a.png", b"."))

    assert result.status is SubmissionStatus.NEEDS_ONBOARDING
    storage.upload.assert_not_called()
    assert _post_count(db) == 0


@pytest.mark.asyncio
async def test_empty_and_signed_out_are_rejected_locally(gateway, session, signed_out, mocker):
    insert = mocker.spy(gateway, "insert")
    storage = AsyncMock(spec=ObjectStorage)

    empty = await create_post(gateway, storage, session, "   ")
    anonymous_viewer = await create_post(gateway, storage, signed_out, "hello")

    assert (empty.status, empty.error) == (SubmissionStatus.REJECTED, EMPTY_MESSAGE)
    assert anonymous_viewer.status is SubmissionStatus.SIGNED_OUT
    assert anonymous_viewer.error == SIGN_IN_MESSAGE
    assert insert.call_count == 0
    assert storage.mock_calls == []
