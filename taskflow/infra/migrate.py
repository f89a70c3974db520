from __future__ import annotations

import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

from taskflow.infra.logging_setup import get_logger, setup_logging

PROJECT_ROOT = Path(__file__).resolve().parents[2]

logger = get_logger(__name__)


def alembic_config() -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "infra" / "migrations"))
    return config


def run_upgrade(revision: str = "head") -> None:
    logger.info("upgrading schema to %s", revision)
    command.upgrade(alembic_config(), revision)


if __name__ == "__main__":
    setup_logging()
    run_upgrade(sys.argv[1] if len(sys.argv) > 1 else "head")
