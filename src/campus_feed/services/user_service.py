"""Profile bootstrap and one-time college onboarding."""

from __future__ import annotations

import logging

from campus_feed.core.errors import CampusFeedError, InputValidationError
from campus_feed.core.settings import settings
from campus_feed.schemas import UserProfile, UserUpsert
from campus_feed.services.auth import AuthClient, Identity, SessionContext
from campus_feed.services.gateway import USERS, Gateway, Query, eq

logger = logging.getLogger(__name__)


async def fetch_profile(gateway: Gateway, user_id: str) -> UserProfile | None:
    """Return the ``users`` row for ``user_id`` or None if there is none yet."""
    rows = await gateway.select(USERS, Query().where("id", "eq", user_id).range(0, 0))
    if not rows:
        return None
    return UserProfile.model_validate(rows[0])


async def create_profile(gateway: Gateway, identity: Identity) -> UserProfile:
    """Upsert a profile row with no college for a freshly signed-up identity."""
    payload = UserUpsert(id=identity.id, email=identity.email, college=None)
    row = await gateway.upsert(USERS, payload.model_dump())
    logger.info("Created profile for %s", identity.email)
    return UserProfile.model_validate(row)


async def ensure_profile(gateway: Gateway, identity: Identity) -> UserProfile:
    profile = await fetch_profile(gateway, identity.id)
    if profile is not None:
        return profile
    return await create_profile(gateway, identity)


async def select_college(
    gateway: Gateway,
    auth: AuthClient | None,
    session: SessionContext,
    college: str,
) -> UserProfile:
    """Assign the viewer's college.

    A college can only be chosen once. After the row is updated the session
    is refreshed (when an identity service is available) so row-level
    security policies evaluate against the new profile.
    """
    identity = session.require_identity()
    college = college.strip()
    if college not in settings.colleges:
        raise InputValidationError(f"Unknown college: {college}")

    profile = await ensure_profile(gateway, identity)
    if profile.college:
        raise InputValidationError(f"College already set to {profile.college}")

    rows = await gateway.update(USERS, [eq("id", identity.id)], {"college": college})
    if not rows:
        raise InputValidationError("Profile could not be updated")

    if auth is not None:
        # The row is already written; a failed refresh only delays the new claims.
        try:
            await auth.refresh_session()
        except CampusFeedError as e:
            logger.warning("Session refresh after choosing %s failed: %s", college, e)
    logger.info("%s joined %s", identity.email, college)
    return UserProfile.model_validate(rows[0])
