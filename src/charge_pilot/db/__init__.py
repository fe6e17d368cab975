"""Database engine and repository for Charge Pilot."""

from charge_pilot.db.engine import close_db, init_db
from charge_pilot.db.repository import Repository

__all__ = ["close_db", "init_db", "Repository"]
