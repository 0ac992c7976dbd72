"""Run the idem-guard Alembic migrations against a SQLite key store."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

# src/idem_guard/storage -> project root holding alembic.ini
_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path, *, revision: str = "head") -> None:
    """Bring the key store schema at ``db_path`` up to ``revision``."""

    logger.debug("Upgrading idempotency schema at %s to %s", db_path, revision)
    command.upgrade(_alembic_config(db_path), revision)
