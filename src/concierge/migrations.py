"""Alembic schema migrations, run in-process by the daemon at startup."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# The repository's alembic/ directory, next to src/.
ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"

_CHAINS = ("core",)


def get_all_chains() -> list[str]:
    """Known chains that have a ``versions/<chain>`` directory."""
    versions = ALEMBIC_DIR / "versions"
    return [chain for chain in _CHAINS if (versions / chain).is_dir()]


def _build_alembic_config(db_url: str) -> Config:
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Config values go through configparser interpolation.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    return config


async def run_migrations(db_url: str, chain: str = "core") -> None:
    """Upgrade *chain* (or every chain, for ``"all"``) to head.

    Alembic is synchronous, so the upgrade runs in a worker thread.
    Already-applied revisions are skipped, so repeated runs are harmless.
    """
    config = _build_alembic_config(db_url)
    for name in get_all_chains() if chain == "all" else [chain]:
        logger.info("Upgrading migration chain %s to head", name)
        await asyncio.to_thread(command.upgrade, config, f"{name}@head")
