"""
Schema migrations applied at startup.

Each migration is a named block of SQL statements separated by ``;``. A row in
the ``migration`` table marks a block as applied so it never runs twice.
"""

from datetime import datetime, timezone
from typing import List, Optional, Set
import logging

from sqlmodel import SQLModel, Field, create_engine, text, Session, select

from . import config

logger = logging.getLogger(__name__)


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    ("001_attempt_indexes", """
    -- best-attempt lookups by user and question count
    CREATE INDEX IF NOT EXISTS idx_attempt_user_total ON testattempt(user_test_id, total_questions);
    -- leaderboard scans only scored attempts
    CREATE INDEX IF NOT EXISTS idx_attempt_percentage ON testattempt(percentage)
    """),
    ("002_listing_indexes", """
    CREATE INDEX IF NOT EXISTS idx_advising_created_at ON advising(created_at);
    CREATE INDEX IF NOT EXISTS idx_news_published_at ON news(published_at)
    """),
]


def get_engine():
    connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}
    return create_engine(config.DATABASE_URL, echo=False, connect_args=connect_args)


def split_statements(sql: str) -> List[str]:
    """Split a migration block into executable statements, dropping ``--`` comment lines."""
    statements = []
    for chunk in sql.split(';'):
        body = "\n".join(ln for ln in chunk.splitlines() if not ln.strip().startswith('--')).strip()
        if body:
            statements.append(body)
    return statements


def applied_migrations(engine) -> Set[str]:
    SQLModel.metadata.create_all(engine, tables=[Migration.__table__])
    with Session(engine) as session:
        return set(session.exec(select(Migration.name)).all())


def has_migration_been_applied(engine, migration_name: str) -> bool:
    return migration_name in applied_migrations(engine)


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Run one migration block and record it. Returns False if it had already run."""
    if has_migration_been_applied(engine, migration_name):
        logger.info("migration_skipped", extra={"key": migration_name})
        return False

    with Session(engine) as session:
        try:
            for statement in split_statements(migration_sql):
                session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("migration_failed", extra={"key": migration_name, "error": str(e)})
            raise
    logger.info("migration_applied", extra={"key": migration_name})
    return True


def run_migrations(engine=None) -> List[str]:
    """Apply pending migrations in order; return the names applied by this call."""
    engine = engine or get_engine()
    applied = [name for name, sql in MIGRATIONS if apply_migration(engine, name, sql)]
    logger.info("migrations_completed", extra={"key": ",".join(applied) or None})
    return applied
