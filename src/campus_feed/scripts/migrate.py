# src/campus_feed/scripts/migrate.py
from __future__ import annotations

import os

from alembic import command
from alembic.config import Config

from campus_feed.core.settings import settings

MIGRATIONS_DIR = os.path.abspath(
    os.path.join(os.path.dirname(__file__), "..", "..", "..", "migrations")
)


def alembic_config(url: str | None = None) -> Config:
    """Build an Alembic config pointing at the migrations folder."""
    cfg = Config()
    cfg.set_main_option("script_location", MIGRATIONS_DIR)
    cfg.set_main_option("sqlalchemy.url", url or settings.local_database_url)
    return cfg


def run_upgrade_head(url: str | None = None) -> None:
    command.upgrade(alembic_config(url), "head")


if __name__ == "__main__":
    run_upgrade_head()
