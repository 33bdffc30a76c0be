from typing import Any, Dict, List, Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    uid: str = Field(index=True, unique=True)
    email: str = Field(index=True, unique=True)
    name: str
    role: str = "user"  # "admin" | "user"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# Home page content managed from the admin screens

class Teacher(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    image: str
    name: str = Field(max_length=100)
    experience: str = Field(max_length=500)
    graduate: str = Field(max_length=500)
    achievements: str = Field(max_length=500)
    created_at: datetime = Field(default_factory=utcnow)


class Course(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    image: str
    title: str = Field(max_length=200)
    link: str
    created_at: datetime = Field(default_factory=utcnow)


class News(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    image: str
    title: str = Field(max_length=200)
    summary: str = Field(max_length=500)
    link: str
    published_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class Partner(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    image: str
    name: str = Field(max_length=100)
    created_at: datetime = Field(default_factory=utcnow)


class Banner(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    image: str
    name: str = Field(max_length=100)
    created_at: datetime = Field(default_factory=utcnow)


class Student(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    image: str
    name: str = Field(max_length=100)
    achievement: str = Field(max_length=200)
    description: str = Field(max_length=500)
    created_at: datetime = Field(default_factory=utcnow)


class Advising(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    full_name: str
    email: str
    phone: str
    address: str
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class FreeTest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    reading_passage: str = ""
    # list of question dicts: {id, type, questionText, options, correctAnswer}
    questions: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))


# Free test takers and their attempt history

class UserTest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    full_name: str
    email: str = Field(index=True, unique=True)
    phone: str
    address: str
    registered_at: datetime = Field(default_factory=utcnow)


class TestAttempt(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_test_id: int = Field(foreign_key="usertest.id", index=True)
    test_id: Optional[str] = None
    score: int
    total_questions: int
    percentage: Optional[int] = None
    # {minutes, seconds, totalSeconds}
    time_taken: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    submitted_at: datetime = Field(default_factory=utcnow)
