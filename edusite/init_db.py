import os
import sys

from sqlmodel import Session, SQLModel

from . import crud, models
from .logging_utils import get_logger, setup_logging
from .migrations import get_engine, run_migrations

logger = get_logger("edusite.init_db")


def init_db(engine=None):
    engine = engine or get_engine()
    SQLModel.metadata.create_all(engine)
    run_migrations(engine)
    logger.info("db_initialized", extra={"url": str(engine.url)})
    return engine


def seed_admin(engine, uid: str, email: str, name: str) -> models.User:
    """Create (or promote) the admin account used for the management screens."""
    with Session(engine) as session:
        crud.upsert_user(session, uid, email, name)
        user = crud.set_user_role(session, email, "admin")
        logger.info("admin_seeded", extra={"email": email})
        return user


if __name__ == '__main__':
    setup_logging()
    engine = init_db()
    admin_email = os.getenv("ADMIN_EMAIL") or (sys.argv[1] if len(sys.argv) > 1 else None)
    if admin_email:
        seed_admin(engine, os.getenv("ADMIN_UID", admin_email), admin_email, os.getenv("ADMIN_NAME", "Admin"))
