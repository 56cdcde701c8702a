"""Command line front end for the Campus Feed client.

Typical usage:
  campus-feed --email me@uni.edu --password secret feed
  CAMPUS_FEED_BACKEND=local campus-feed --email me@uni.edu post "hello"
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from campus_feed.core.errors import CampusFeedError
from campus_feed.core.settings import settings
from campus_feed.db.session import SessionLocal, create_tables
from campus_feed.reconcile import CommentThread, FeedReconciler, FeedStatus, PostView
from campus_feed.scripts.migrate import run_upgrade_head
from campus_feed.services.auth import AuthClient, AuthSession, Identity, SessionContext
from campus_feed.services.gateway import Gateway, RestGateway
from campus_feed.services.post_service import ImageUpload, create_post
from campus_feed.services.realtime import ChangeStreamWorker
from campus_feed.services.sql_gateway import SqlGateway
from campus_feed.services.storage import LocalStorage, ObjectStorage, RestStorage
from campus_feed.services.user_service import ensure_profile, select_college

logger = logging.getLogger(__name__)


@dataclass
class Client:
    """Everything one command needs, wired for the configured backend."""

    session: SessionContext
    gateway: Gateway
    storage: ObjectStorage
    auth: AuthClient | None = None
    worker: ChangeStreamWorker | None = None


def local_identity(email: str) -> Identity:
    """Stable identity for the local backend, derived from the email."""
    return Identity(id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"mailto:{email}")), email=email)


@contextlib.asynccontextmanager
async def open_client(args: argparse.Namespace) -> AsyncIterator[Client]:
    session = SessionContext()
    if settings.uses_local_backend:
        create_tables()
        client = Client(
            session=session,
            gateway=SqlGateway(SessionLocal),
            storage=LocalStorage(),
        )
        if args.email:
            session.set(
                AuthSession(
                    access_token="local",
                    refresh_token=None,
                    identity=local_identity(args.email),
                )
            )
            await ensure_profile(client.gateway, session.require_identity())
    else:
        gateway = RestGateway(session)
        client = Client(
            session=session,
            gateway=gateway,
            storage=RestStorage(session),
            auth=AuthClient(session),
            worker=ChangeStreamWorker(gateway),
        )
        if args.email and args.command != "signup":
            if not args.password:
                raise CampusFeedError("--password is required with the hosted backend")
            await client.auth.sign_in(args.email, args.password)

    try:
        yield client
    finally:
        if client.worker is not None:
            await client.worker.stop()
        for closable in (client.gateway, client.storage, client.auth):
            close = getattr(closable, "close", None)
            if close is not None:
                await close()


def print_post(view: PostView) -> None:
    heart = "♥" if view.liked_by_viewer else "♡"
    stamp = view.post.created_at.strftime("%Y-%m-%d %H:%M")
    print(f"[{view.id}] {view.author_label} · {stamp}")
    print(f"  {view.post.content}")
    if view.post.image_url:
        print(f"  image: {view.post.image_url}")
    print(f"  {heart} {view.like_count}")


def print_feed(feed: FeedReconciler) -> int:
    state = feed.state
    if state.status is FeedStatus.SIGNED_OUT:
        print("Please sign in to see the feed.")
        return 1
    if state.status is FeedStatus.NEEDS_ONBOARDING:
        print("Select your college first (campus-feed colleges / select-college).")
        return 1
    if state.status is FeedStatus.UNAVAILABLE:
        print(state.error, file=sys.stderr)
        return 1
    if not state.posts:
        print(f"No posts in {state.college} yet.")
    for view in state.posts:
        print_post(view)
    return 0


def print_thread(thread: CommentThread) -> None:
    for view in thread.comments:
        print(f"  {view.author_email}: {view.comment.content}")
    state = thread.state
    print(f"  ({len(state.comments)} of {state.total} comments)")


async def cmd_signup(client: Client, args: argparse.Namespace) -> int:
    if client.auth is None:
        print("Local backend: pass --email to any command instead.")
        return 0
    auth_session = await client.auth.sign_up(args.email, args.password)
    if auth_session is None:
        print("Check your inbox to confirm the account, then sign in.")
        return 0
    await ensure_profile(client.gateway, auth_session.identity)
    print(f"Signed up as {auth_session.identity.email}")
    return 0


async def cmd_colleges(client: Client, args: argparse.Namespace) -> int:
    for name in settings.colleges:
        print(name)
    return 0


async def cmd_select_college(client: Client, args: argparse.Namespace) -> int:
    profile = await select_college(client.gateway, client.auth, client.session, args.college)
    print(f"College set to {profile.college}")
    return 0


async def cmd_feed(client: Client, args: argparse.Namespace) -> int:
    async with FeedReconciler(client.gateway, client.session) as feed:
        return print_feed(feed)


async def cmd_post(client: Client, args: argparse.Namespace) -> int:
    image = None
    if args.image:
        path = Path(args.image)
        image = ImageUpload(filename=path.name, data=path.read_bytes())
    result = await create_post(
        client.gateway, client.storage, client.session, args.content, image, args.anonymous
    )
    if result.post is None:
        print(result.error, file=sys.stderr)
        return 1
    print(f"Posted {result.post.id}")
    return 0


async def cmd_like(client: Client, args: argparse.Namespace) -> int:
    async with FeedReconciler(client.gateway, client.session) as feed:
        if feed.state.status is not FeedStatus.READY:
            return print_feed(feed)
        try:
            likes = await feed.likes_for(args.post_id)
        except KeyError:
            print(f"Post {args.post_id} is not in your feed", file=sys.stderr)
            return 1
        state = await likes.toggle_like()
        if state.error:
            print(state.error, file=sys.stderr)
            return 1
        print(f"{'Liked' if state.liked else 'Unliked'} ({state.count})")
        return 0


async def cmd_comments(client: Client, args: argparse.Namespace) -> int:
    async with CommentThread(client.gateway, client.session, args.post_id) as thread:
        await thread.load_first_page()
        while args.all and thread.state.has_more and not thread.state.error:
            await thread.load_next_page()
        if thread.state.error:
            print(thread.state.error, file=sys.stderr)
            return 1
        print_thread(thread)
        return 0


async def cmd_comment(client: Client, args: argparse.Namespace) -> int:
    async with CommentThread(client.gateway, client.session, args.post_id) as thread:
        view = await thread.submit_comment(args.text)
        if view is None:
            print(thread.state.error, file=sys.stderr)
            return 1
        print(f"Commented {view.id}")
        return 0


async def cmd_watch(client: Client, args: argparse.Namespace) -> int:
    """Print the feed again every time it changes, for ``--seconds`` seconds."""
    if client.worker is not None:
        await client.worker.start()
    async with FeedReconciler(client.gateway, client.session) as feed:
        shown = None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + args.seconds
        while loop.time() < deadline:
            if feed.state is not shown:
                shown = feed.state
                print(f"--- {len(shown.posts)} posts ---")
                if print_feed(feed):
                    return 1
            await asyncio.sleep(0.2)
    return 0


COMMANDS = {
    "signup": cmd_signup,
    "colleges": cmd_colleges,
    "select-college": cmd_select_college,
    "feed": cmd_feed,
    "post": cmd_post,
    "like": cmd_like,
    "comments": cmd_comments,
    "comment": cmd_comment,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="campus-feed", description=settings.app_name)
    parser.add_argument("--email", default=None, help="Account email")
    parser.add_argument("--password", default=None, help="Account password (hosted backend)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("migrate", help="Upgrade the local database to the latest schema")
    sub.add_parser("signup", help="Create an account")
    sub.add_parser("colleges", help="List the colleges that can be selected")
    p = sub.add_parser("select-college", help="Choose your college (once)")
    p.add_argument("college")
    sub.add_parser("feed", help="Show your college feed")
    p = sub.add_parser("post", help="Publish a post")
    p.add_argument("content")
    p.add_argument("--image", default=None, help="Path of an image to attach")
    p.add_argument("--anonymous", action="store_true", help="Hide your email")
    p = sub.add_parser("like", help="Toggle your like on a post")
    p.add_argument("post_id")
    p = sub.add_parser("comments", help="Show a post's comments")
    p.add_argument("post_id")
    p.add_argument("--all", action="store_true", help="Load every page")
    p = sub.add_parser("comment", help="Comment on a post")
    p.add_argument("post_id")
    p.add_argument("text")
    p = sub.add_parser("watch", help="Follow the feed live")
    p.add_argument("--seconds", type=float, default=60.0)
    return parser


async def run(args: argparse.Namespace) -> int:
    async with open_client(args) as client:
        return await COMMANDS[args.command](client, args)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "migrate":
        run_upgrade_head()
        print(f"Migrated {settings.local_database_url}")
        return 0
    try:
        return asyncio.run(run(args))
    except CampusFeedError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
