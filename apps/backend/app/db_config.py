"""
Database configuration module.
Prefers SUPABASE_DB_URL (direct PostgreSQL connection string), falls back to DATABASE_URL.
With neither set, the service runs on the in-memory store.
"""

import os
import logging
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class DBConfig:
    """Database configuration with Supabase-first logic"""

    def __init__(self):
        self.supabase_db_url = os.getenv("SUPABASE_DB_URL")
        self.database_url = os.getenv("DATABASE_URL")

        if self.supabase_db_url and self.database_url:
            logger.info("[db_config] Both SUPABASE_DB_URL and DATABASE_URL are set; using SUPABASE_DB_URL.")

        db_url = self.get_db_url()
        if db_url:
            logger.info(f"[db_config] Database configured: {self.masked_url(db_url)}")
        else:
            logger.warning("[db_config] No database URL set - jobs will be kept in memory only")

    @property
    def is_db_enabled(self) -> bool:
        """Check if a PostgreSQL connection string is configured"""
        return bool(self.get_db_url())

    def get_db_url(self) -> str | None:
        # Square brackets around the hostname (copied from some dashboards) break libpq
        url = self.supabase_db_url or self.database_url
        if not url:
            return None
        return url.replace('[', '').replace(']', '')

    @staticmethod
    def masked_url(url: str) -> str:
        """Connection string with the password masked, for logging."""
        try:
            parsed = urlparse(url)
            return f"{parsed.scheme}://{parsed.username}:***@{parsed.hostname}:{parsed.port or 5432}{parsed.path}"
        except ValueError as e:
            return f"<unparseable database url: {e}>"


# Global instance
db_config = DBConfig()
