from sqlmodel import Session, select as sqlmodel_select, col
from sqlalchemy import func, select as sa_select
from datetime import datetime
from typing import Any, Dict, List, Optional, Type
import hashlib
import hmac

from . import config, models

engine = None


# Identity tokens

def _signature(value: str) -> str:
    return hmac.new(config.SESSION_SECRET.encode(), value.encode(), hashlib.sha256).hexdigest()


def sign_user_token(session: Session, uid: str) -> Optional[str]:
    """Sign a user uid into a "uid.sig" token. Returns None for unknown users."""
    if not uid or get_user_by_uid(session, uid) is None:
        return None
    return f"{uid}.{_signature(uid)}"


def token_uid(token: str) -> Optional[str]:
    """Return the uid a token was signed for, or None if the signature is wrong."""
    try:
        uid, sig = token.rsplit('.', 1)
    except Exception:
        return None
    if not hmac.compare_digest(_signature(uid), sig):
        return None
    return uid


def verify_user_token(session: Session, token: str) -> Optional[models.User]:
    """Return the user a token was issued for, or None if the token is invalid."""
    uid = token_uid(token)
    if uid is None:
        return None
    return get_user_by_uid(session, uid)


# Users

def get_user_by_uid(session: Session, uid: str) -> Optional[models.User]:
    return session.exec(sqlmodel_select(models.User).where(models.User.uid == uid)).first()


def get_user_by_email(session: Session, email: str) -> Optional[models.User]:
    return session.exec(sqlmodel_select(models.User).where(models.User.email == email)).first()


def upsert_user(session: Session, uid: str, email: str, name: str) -> models.User:
    """Create the user on first sign-in; later sign-ins keep the stored record."""
    user = get_user_by_email(session, email)
    if user:
        return user
    user = models.User(uid=uid, email=email, name=name)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def set_user_role(session: Session, email: str, role: str) -> Optional[models.User]:
    user = get_user_by_email(session, email)
    if not user:
        return None
    user.role = role
    user.updated_at = models.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


# Serialization

def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(p.capitalize() for p in rest)


def to_public(obj: Any, exclude: tuple = ()) -> Dict[str, Any]:
    """Dump a table row as a JSON-ready dict with camelCase keys."""
    out: Dict[str, Any] = {}
    for key, val in obj.model_dump().items():
        if key in exclude:
            continue
        if isinstance(val, datetime):
            val = val.isoformat()
        out[_camel(key)] = val
    return out


def user_profile(user: models.User) -> Dict[str, Any]:
    return to_public(user, exclude=('id',))


# Home page resources (teachers, courses, news, partners, banners, students)

def list_items(session: Session, model: Type[Any]) -> List[Any]:
    return list(session.exec(sqlmodel_select(model).order_by(model.id)).all())


def get_item(session: Session, model: Type[Any], item_id: int) -> Optional[Any]:
    return session.get(model, item_id)


def create_item(session: Session, model: Type[Any], data: Dict[str, Any]) -> Any:
    item = model(**data)
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


def update_item(session: Session, model: Type[Any], item_id: int, data: Dict[str, Any]) -> Optional[Any]:
    item = session.get(model, item_id)
    if not item:
        return None
    for key, val in data.items():
        setattr(item, key, val)
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


def delete_item(session: Session, model: Type[Any], item_id: int) -> bool:
    item = session.get(model, item_id)
    if not item:
        return False
    session.delete(item)
    session.commit()
    return True


# Advising requests

def list_advisings(session: Session) -> List[models.Advising]:
    return list(session.exec(
        sqlmodel_select(models.Advising)
        .order_by(col(models.Advising.created_at).desc(), col(models.Advising.id).desc())
    ).all())


# Free tests

def get_free_test(session: Session, test_id: int) -> Optional[models.FreeTest]:
    return session.get(models.FreeTest, test_id)


def save_free_test(session: Session, test: models.FreeTest) -> models.FreeTest:
    session.add(test)
    session.commit()
    session.refresh(test)
    return test


# User tests: registration and attempt history

def get_user_test_by_email(session: Session, email: str) -> Optional[models.UserTest]:
    return session.exec(sqlmodel_select(models.UserTest).where(models.UserTest.email == email)).first()


def get_attempts(session: Session, user_test_id: int) -> List[models.TestAttempt]:
    """Attempts in storage order."""
    return list(session.exec(
        sqlmodel_select(models.TestAttempt)
        .where(models.TestAttempt.user_test_id == user_test_id)
        .order_by(models.TestAttempt.id)
    ).all())


def register_user_test(session: Session, full_name: str, email: str, phone: str, address: str):
    """Create the record for email, or update its contact fields in place.

    Returns (record, created).
    """
    existing = get_user_test_by_email(session, email)
    if existing:
        existing.full_name = full_name
        existing.phone = phone
        existing.address = address
        session.add(existing)
        session.commit()
        session.refresh(existing)
        return existing, False
    record = models.UserTest(full_name=full_name, email=email, phone=phone, address=address)
    session.add(record)
    session.commit()
    session.refresh(record)
    return record, True


def save_user_test(session: Session, *rows: Any) -> None:
    """Persist pending changes to a user test record and its attempts in one commit."""
    for row in rows:
        session.add(row)
    session.commit()
    for row in rows:
        session.refresh(row)


def list_user_tests(session: Session) -> List[models.UserTest]:
    return list(session.exec(sqlmodel_select(models.UserTest).order_by(models.UserTest.id)).all())


def list_user_tests_with_scored_attempts(session: Session):
    """Return [(record, [attempts...])] for users with at least one scored attempt.

    Attempts are restricted to those with a percentage and kept in storage order.
    """
    rows = session.exec(
        sqlmodel_select(models.UserTest, models.TestAttempt)
        .join(models.TestAttempt, col(models.TestAttempt.user_test_id) == col(models.UserTest.id))
        .where(col(models.TestAttempt.percentage).is_not(None))
        .order_by(models.UserTest.id, models.TestAttempt.id)
    ).all()
    grouped: Dict[int, Any] = {}
    for record, attempt in rows:
        grouped.setdefault(record.id, (record, []))[1].append(attempt)
    return list(grouped.values())


def user_test_counts(session: Session) -> Dict[str, int]:
    total_users = session.execute(sa_select(func.count(models.UserTest.id))).scalar() or 0
    users_with_tests = session.execute(
        sa_select(func.count(func.distinct(models.TestAttempt.user_test_id)))
    ).scalar() or 0
    tests_taken = session.execute(sa_select(func.count(models.TestAttempt.id))).scalar() or 0
    return {
        'totalUsers': int(total_users),
        'usersWithTests': int(users_with_tests),
        'testsTaken': int(tests_taken),
    }


def all_attempts(session: Session) -> List[models.TestAttempt]:
    return list(session.exec(sqlmodel_select(models.TestAttempt).order_by(models.TestAttempt.id)).all())
