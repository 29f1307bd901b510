#!/usr/bin/env python3
"""
Database migration helper around Alembic.

    python migrate.py create "add transfer notes"
    python migrate.py upgrade
    python migrate.py downgrade
    python migrate.py history | current
"""
import sys
from pathlib import Path

root_dir = Path(__file__).parent
sys.path.insert(0, str(root_dir))

from alembic.config import Config
from alembic import command
from app.core.config import settings


def get_alembic_config() -> Config:
    alembic_cfg = Config(str(root_dir / "alembic.ini"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    return alembic_cfg


def create_migration(message: str):
    """Autogenerate a revision from app.database.models metadata."""
    command.revision(get_alembic_config(), autogenerate=True, message=message)
    print(f"Migration created: {message}")


def run_migrations(revision: str = "head"):
    command.upgrade(get_alembic_config(), revision)
    print(f"Database upgraded to {revision}")


def rollback_migration(revision: str = "-1"):
    command.downgrade(get_alembic_config(), revision)
    print(f"Database downgraded to {revision}")


USAGE = """Usage:
  python migrate.py create 'message'     # autogenerate a revision
  python migrate.py upgrade [revision]   # default: head
  python migrate.py downgrade [revision] # default: -1
  python migrate.py history
  python migrate.py current"""


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(1)

    action = sys.argv[1]
    argument = sys.argv[2] if len(sys.argv) > 2 else None

    if action == "create":
        if not argument:
            print("Error: a message is required to create a migration")
            sys.exit(1)
        create_migration(argument)
    elif action == "upgrade":
        run_migrations(argument or "head")
    elif action == "downgrade":
        rollback_migration(argument or "-1")
    elif action == "history":
        command.history(get_alembic_config())
    elif action == "current":
        command.current(get_alembic_config())
    else:
        print(f"Unknown action: {action}")
        print(USAGE)
        sys.exit(1)
