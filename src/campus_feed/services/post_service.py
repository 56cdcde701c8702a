"""Post creation with an optional image attachment."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath

from campus_feed.core.errors import GatewayError, UploadFailedError
from campus_feed.core.settings import settings
from campus_feed.schemas import PostCreate, PostRow
from campus_feed.services.auth import SessionContext
from campus_feed.services.gateway import POSTS, Gateway
from campus_feed.services.storage import ObjectStorage, UploadOptions
from campus_feed.services.user_service import fetch_profile

logger = logging.getLogger(__name__)

EMPTY_MESSAGE = "Post cannot be empty"
SIGN_IN_MESSAGE = "Please sign in to post"
ONBOARDING_MESSAGE = "Please select your college before posting"
UPLOAD_FAILED_MESSAGE = "Failed to upload image. Please try again."
CREATE_FAILED_MESSAGE = "Failed to create post. Please try again."


class SubmissionStatus(Enum):
    CREATED = "created"
    REJECTED = "rejected"
    SIGNED_OUT = "signed_out"
    NEEDS_ONBOARDING = "needs_onboarding"
    FAILED = "failed"


@dataclass(frozen=True)
class ImageUpload:
    filename: str
    data: bytes
    content_type: str | None = None


@dataclass(frozen=True)
class PostSubmission:
    status: SubmissionStatus
    post: PostRow | None = None
    error: str | None = None


def image_object_path(user_id: str, filename: str, now_ms: int | None = None) -> str:
    """Storage path ``{user_id}/{epoch_ms}_{filename}`` with a sanitised file name."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    name = re.sub(r"[^A-Za-z0-9._-]", "_", PurePath(filename).name) or "image"
    return f"{user_id}/{stamp}_{name}"


async def create_post(
    gateway: Gateway,
    storage: ObjectStorage,
    session: SessionContext,
    content: str,
    image: ImageUpload | None = None,
    anonymous: bool = False,
) -> PostSubmission:
    """Publish a post in the author's college.

    The author's profile is checked before any upload so that no image is
    stored for someone who cannot post yet. A failed upload aborts the post.
    """
    content = content.strip()
    if not content:
        return PostSubmission(SubmissionStatus.REJECTED, error=EMPTY_MESSAGE)

    viewer = session.identity
    if viewer is None:
        return PostSubmission(SubmissionStatus.SIGNED_OUT, error=SIGN_IN_MESSAGE)

    try:
        profile = await fetch_profile(gateway, viewer.id)
    except GatewayError as e:
        logger.warning("Profile lookup for %s failed: %s", viewer.email, e)
        return PostSubmission(SubmissionStatus.FAILED, error=CREATE_FAILED_MESSAGE)
    if profile is None or not profile.college:
        return PostSubmission(SubmissionStatus.NEEDS_ONBOARDING, error=ONBOARDING_MESSAGE)

    image_url: str | None = None
    if image is not None:
        path = image_object_path(viewer.id, image.filename)
        try:
            stored = await storage.upload(
                path,
                image.data,
                UploadOptions(
                    cache_control_seconds=settings.image_cache_control_seconds,
                    upsert=False,
                    content_type=image.content_type,
                ),
            )
        except UploadFailedError as e:
            logger.warning("Image upload for %s failed: %s", viewer.email, e)
            return PostSubmission(SubmissionStatus.FAILED, error=UPLOAD_FAILED_MESSAGE)
        image_url = storage.get_public_url(stored)

    payload = PostCreate(
        user_id=viewer.id,
        content=content,
        image_url=image_url,
        college=profile.college,
        anonymous=anonymous,
    )
    try:
        row = await gateway.insert(POSTS, payload.model_dump())
    except GatewayError as e:
        logger.warning("Creating post for %s failed: %s", viewer.email, e)
        return PostSubmission(SubmissionStatus.FAILED, error=CREATE_FAILED_MESSAGE)

    post = PostRow.model_validate(row)
    logger.info("Post %s created in %s", post.id, post.college)
    return PostSubmission(SubmissionStatus.CREATED, post=post)
