# tests/conftest.py
from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from itertools import count

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from campus_feed.db.session import Base
from campus_feed.models import Post, PostComment, PostLike, User
from campus_feed.services.auth import AuthSession, Identity, SessionContext
from campus_feed.services.realtime import RealtimeHub
from campus_feed.services.sql_gateway import SqlGateway

TEST_DB_URL = "sqlite://"
COLLEGE = "Stanford"
OTHER_COLLEGE = "MIT"

# Seeded rows sit well before anything the gateway stamps with the current time.
BASE_TIME = datetime(2024, 9, 1, 12, 0, tzinfo=UTC)

_ROW_COUNTER = count(1)


def _uuid(prefix: int, n: int) -> str:
    return f"{prefix:08x}-0000-4000-8000-{n:012x}"


VIEWER = Identity(id=_uuid(1, 1), email="viewer@stanford.edu")
FRIEND = Identity(id=_uuid(1, 2), email="friend@stanford.edu")
STRANGER = Identity(id=_uuid(1, 3), email="stranger@mit.edu")


@pytest.fixture()
def engine() -> Iterator[Engine]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def hub() -> RealtimeHub:
    return RealtimeHub(queue_size=64)


@pytest.fixture()
def gateway(session_factory: sessionmaker[Session], hub: RealtimeHub) -> SqlGateway:
    return SqlGateway(session_factory, hub)


@pytest.fixture()
def viewer() -> Identity:
    return VIEWER


@pytest.fixture()
def session(viewer: Identity) -> SessionContext:
    return SessionContext(
        AuthSession(access_token="test-token", refresh_token="refresh", identity=viewer)
    )


@pytest.fixture()
def signed_out() -> SessionContext:
    return SessionContext()


def add_user(db: Session, identity: Identity, college: str | None = COLLEGE) -> User:
    user = User(id=identity.id, email=identity.email, college=college, created_at=BASE_TIME)
    db.add(user)
    db.commit()
    return user


def add_post(
    db: Session,
    author: Identity,
    content: str = "hello",
    college: str = COLLEGE,
    minutes: int | None = None,
    anonymous: bool = False,
) -> Post:
    n = next(_ROW_COUNTER)
    post = Post(
        id=_uuid(2, n),
        user_id=author.id,
        content=content,
        college=college,
        anonymous=anonymous,
        created_at=BASE_TIME + timedelta(minutes=minutes if minutes is not None else n),
    )
    db.add(post)
    db.commit()
    return post


def add_like(db: Session, post: Post, liker: Identity) -> PostLike:
    like = PostLike(id=_uuid(3, next(_ROW_COUNTER)), post_id=post.id, user_id=liker.id)
    db.add(like)
    db.commit()
    return like


def add_comment(
    db: Session, post: Post, author: Identity, content: str, seconds: int
) -> PostComment:
    comment = PostComment(
        id=_uuid(4, next(_ROW_COUNTER)),
        post_id=post.id,
        user_id=author.id,
        content=content,
        created_at=BASE_TIME + timedelta(seconds=seconds),
    )
    db.add(comment)
    db.commit()
    return comment


@pytest.fixture()
def people(db: Session) -> dict[str, User]:
    """Viewer and a friend in the same college, a stranger elsewhere."""
    return {
        "viewer": add_user(db, VIEWER),
        "friend": add_user(db, FRIEND),
        "stranger": add_user(db, STRANGER, OTHER_COLLEGE),
    }
