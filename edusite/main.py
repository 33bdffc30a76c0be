from fastapi import FastAPI, Body, Depends, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel, Session, create_engine
from pydantic import BaseModel, Field, ValidationError, validator
from typing import Any, Dict, List, Literal, Optional, Union
from datetime import datetime, timezone
from starlette.middleware.base import BaseHTTPMiddleware
import json
import logging
import time
import uuid

from . import config, crud, freetest, models, scoring
from .cache import (
    CacheRegistry,
    cached_response,
    free_test_key,
    get_caches,
    init_caches,
    raw_envelope,
    success_envelope,
    top_users_envelope,
)
from .deps import current_user, get_session, require_admin
from .errors import InvalidInput, PersistenceFailure, UserNotFound
from .logging_utils import setup_logging, get_logger, request_id_ctx


# Rate limiting - request times per client IP and path
_RATE_LIMIT_STORE: dict = {}

def check_rate_limit(request: Request, max_requests: int = 10, window_seconds: int = 60) -> bool:
    """
    Simple in-memory rate limiting. Returns True if request is allowed, False if rate limited.
    Requests are counted per client IP and path.
    """
    client_ip = request.client.host if request.client else "unknown"
    bucket = f"{client_ip}-{request.url.path}"
    current_time = time.time()

    cutoff_time = current_time - window_seconds
    _RATE_LIMIT_STORE[bucket] = [
        req_time for req_time in _RATE_LIMIT_STORE.get(bucket, [])
        if req_time > cutoff_time
    ]

    if len(_RATE_LIMIT_STORE[bucket]) >= max_requests:
        return False

    _RATE_LIMIT_STORE[bucket].append(current_time)
    return True

def rate_limit_dependency(max_requests: int = 10, window_seconds: int = 60):
    """Create a dependency function that raises HTTP 429 if rate limited"""
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds):
            raise HTTPException(
                status_code=429,
                detail="Too many requests. Please try again after 1 minute."
            )
    return dependency


setup_logging(logging.INFO)
logger = get_logger("edusite")
app = FastAPI(title="English Center API")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        # JSON API only: nothing here should be framed or load sub-resources
        response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        return response

app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Accept",
        "Accept-Language",
        "Content-Language",
        "Content-Type",
        "Authorization",
        "X-Requested-With",
    ],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = json.loads(json.dumps(exc.errors(), default=str))
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": errors})
    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "body": exc.body,
            "message": "Input validation failed"
        }
    )


@app.on_event("startup")
def on_startup():
    from .migrations import run_migrations

    db_url = config.DATABASE_URL
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, echo=False, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(
            db_url,
            echo=False,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_recycle=1800,
        )

    SQLModel.metadata.create_all(engine)

    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})

    crud.engine = engine
    init_caches()
    logger.info("startup_complete")


@app.get("/", include_in_schema=False)
def root():
    return {"message": "API is running !"}


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats(caches: CacheRegistry = Depends(get_caches)):
    """Cache statistics per family for monitoring"""
    return {"cache_stats": caches.get_stats(), "status": "ok"}


# ---------------------------------------------------------------------------
# Home page resources
# ---------------------------------------------------------------------------

class _Content(BaseModel):
    @validator('*', pre=True)
    def strip_strings(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


class TeacherIn(_Content):
    image: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    experience: str = Field(..., min_length=1, max_length=500)
    graduate: str = Field(..., min_length=1, max_length=500)
    achievements: str = Field(..., min_length=1, max_length=500)


class CourseIn(_Content):
    image: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    link: str = Field(..., min_length=1)


class NewsIn(_Content):
    image: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    summary: str = Field(..., min_length=1, max_length=500)
    link: str = Field(..., min_length=1)
    published_at: Optional[datetime] = Field(None, alias="publishedAt")

    @validator('published_at')
    def assume_utc(cls, v):
        # stored timestamps are timezone-aware; a bare date-time is read as UTC
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class PartnerIn(_Content):
    image: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)


class BannerIn(_Content):
    image: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)


class StudentIn(_Content):
    image: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    achievement: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=500)


# family -> (table, request body, label used in messages, list rate limit per minute)
RESOURCES = {
    "teachers": (models.Teacher, TeacherIn, "teacher", 20),
    "courses": (models.Course, CourseIn, "course", 10),
    "news": (models.News, NewsIn, "news", 10),
    "partners": (models.Partner, PartnerIn, "partner", 10),
    "banners": (models.Banner, BannerIn, "banner", 10),
    "students": (models.Student, StudentIn, "student", 10),
}


def _model_data(body: BaseModel) -> Dict[str, Any]:
    # unset optional fields fall back to the table defaults
    return {k: v for k, v in body.model_dump().items() if v is not None}


def register_resource_routes(family: str, table, schema, label: str, list_limit: int):

    def not_found(item_id: int):
        return HTTPException(status_code=404, detail=f"Cannot find {label} with ID: {item_id}")

    @app.get(f"/{family}", name=f"list_{family}",
             dependencies=[Depends(rate_limit_dependency(max_requests=list_limit))])
    def list_items(request: Request, session: Session = Depends(get_session),
                   caches: CacheRegistry = Depends(get_caches)):
        cache = caches.resources[family]
        return cached_response(
            cache,
            cache.key_for(request),
            lambda: [crud.to_public(item) for item in crud.list_items(session, table)],
        )

    @app.get(f"/{family}/{{item_id}}", name=f"get_{family}")
    def get_item(item_id: int, session: Session = Depends(get_session)):
        item = crud.get_item(session, table, item_id)
        if not item:
            raise not_found(item_id)
        return {"success": True, "data": crud.to_public(item)}

    @app.post(f"/{family}", name=f"create_{family}", status_code=201,
              dependencies=[Depends(require_admin)])
    def create_item(body: schema, session: Session = Depends(get_session),
                    caches: CacheRegistry = Depends(get_caches)):
        item = crud.create_item(session, table, _model_data(body))
        caches.resources[family].invalidate(family)
        return {"success": True, "data": crud.to_public(item)}

    @app.put(f"/{family}/{{item_id}}", name=f"update_{family}",
             dependencies=[Depends(require_admin)])
    def update_item(item_id: int, body: Dict[str, Any] = Body(...),
                    session: Session = Depends(get_session),
                    caches: CacheRegistry = Depends(get_caches)):
        item = crud.get_item(session, table, item_id)
        if not item:
            raise not_found(item_id)
        changes = {k: v for k, v in body.items() if k != "oldImage"}
        current = crud.to_public(item, exclude=('id', 'created_at'))
        try:
            validated = schema(**{**current, **changes})
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=json.loads(e.json()))
        item = crud.update_item(session, table, item_id, _model_data(validated))
        caches.resources[family].invalidate(family)
        return {"success": True, "data": crud.to_public(item)}

    @app.delete(f"/{family}/{{item_id}}", name=f"delete_{family}",
                dependencies=[Depends(require_admin)])
    def delete_item(item_id: int, session: Session = Depends(get_session),
                    caches: CacheRegistry = Depends(get_caches)):
        if not crud.delete_item(session, table, item_id):
            raise not_found(item_id)
        caches.resources[family].invalidate(family)
        return {"success": True, "data": {}}


for _family, (_table, _schema, _label, _limit) in RESOURCES.items():
    register_resource_routes(_family, _table, _schema, _label, _limit)


# ---------------------------------------------------------------------------
# Advising requests
# ---------------------------------------------------------------------------

class AdvisingIn(BaseModel):
    full_name: Optional[str] = Field(None, alias="fullName", max_length=200)
    email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=32)
    address: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=2000)


@app.get("/advising", dependencies=[Depends(require_admin)])
def list_advisings(session: Session = Depends(get_session)):
    rows = [crud.to_public(a) for a in crud.list_advisings(session)]
    return {"success": True, "count": len(rows), "data": rows}


@app.post("/advising", status_code=201,
          dependencies=[Depends(rate_limit_dependency(max_requests=2))])
def create_advising(body: AdvisingIn, session: Session = Depends(get_session)):
    required = (body.full_name, body.email, body.phone, body.address)
    if not all(v and v.strip() for v in required):
        raise HTTPException(status_code=400, detail="Please provide all required fields")
    advising = crud.create_item(session, models.Advising, {
        "full_name": body.full_name.strip(),
        "email": body.email.strip(),
        "phone": body.phone.strip(),
        "address": body.address.strip(),
        "notes": body.notes or "",
    })
    return {"success": True, "message": "Advising created successfully", "data": crud.to_public(advising)}


@app.get("/advising/{item_id}", dependencies=[Depends(require_admin)])
def get_advising(item_id: int, session: Session = Depends(get_session)):
    advising = crud.get_item(session, models.Advising, item_id)
    if not advising:
        raise HTTPException(status_code=404, detail="Cannot find advising with this ID")
    return {"success": True, "data": crud.to_public(advising)}


@app.delete("/advising/{item_id}", dependencies=[Depends(require_admin)])
def delete_advising(item_id: int, session: Session = Depends(get_session)):
    if not crud.delete_item(session, models.Advising, item_id):
        raise HTTPException(status_code=404, detail="Cannot find advising with this ID")
    return {"success": True, "message": "Advising deleted successfully"}


# ---------------------------------------------------------------------------
# User tests: registration, results, leaderboard
# ---------------------------------------------------------------------------

class RegisterUserTestIn(BaseModel):
    full_name: str = Field(..., alias="fullName", min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    phone: str = Field(..., min_length=1, max_length=32)
    address: str = Field(..., min_length=1, max_length=500)

    @validator('email')
    def normalize_email(cls, v):
        v = v.strip().lower()
        if '@' not in v:
            raise ValueError('Invalid email address')
        return v


class TimeTakenIn(BaseModel):
    minutes: int = Field(0, ge=0)
    seconds: int = Field(0, ge=0)
    totalSeconds: Optional[int] = Field(None, ge=0)


class SaveResultIn(BaseModel):
    email: str
    test_id: Optional[Union[str, int]] = Field(None, alias="testId")
    score: int
    total_questions: int = Field(..., alias="totalQuestions")
    time_taken: Union[TimeTakenIn, int] = Field(..., alias="timeTaken")

    @validator('email')
    def normalize_email(cls, v):
        return v.strip().lower()


def _top_users(session: Session, caches: CacheRegistry):
    cache = caches.top_users
    return cached_response(
        cache,
        cache.key_for(None),
        lambda: scoring.get_top_users(session, limit=5),
        envelope=top_users_envelope,
    )


@app.post("/testFree/register", status_code=201,
          dependencies=[Depends(rate_limit_dependency(max_requests=2))])
@app.post("/userTest/register", status_code=201)
def register_user_test(body: RegisterUserTestIn, response: Response, session: Session = Depends(get_session)):
    record, created = crud.register_user_test(session, body.full_name, body.email, body.phone, body.address)
    if not created:
        response.status_code = 200
        return {"userId": record.id, "message": "User test info updated"}
    return {"userId": record.id, "message": "User test registered successfully"}


@app.post("/testFree/save-result")
@app.post("/userTest/save-result")
def save_test_result(body: SaveResultIn, session: Session = Depends(get_session)):
    time_taken = body.time_taken.model_dump() if isinstance(body.time_taken, TimeTakenIn) else body.time_taken
    test_id = str(body.test_id) if body.test_id is not None else None
    try:
        outcome = scoring.submit_result(session, body.email, test_id, body.score, body.total_questions, time_taken)
    except UserNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceFailure:
        raise HTTPException(status_code=500, detail="Error saving test result")
    return outcome.to_response()


@app.get("/testFree/top-users",
         dependencies=[Depends(rate_limit_dependency(max_requests=20))])
def top_users_free_test(session: Session = Depends(get_session), caches: CacheRegistry = Depends(get_caches)):
    return _top_users(session, caches)


@app.get("/userTest/top")
def top_users(session: Session = Depends(get_session), caches: CacheRegistry = Depends(get_caches)):
    return _top_users(session, caches)


@app.get("/userTest/stats/overview")
def user_test_stats(session: Session = Depends(get_session)):
    return {"stats": scoring.get_stats(session)}


@app.get("/userTest")
def all_test_users(session: Session = Depends(get_session)):
    users = [
        scoring.user_test_public(record, crud.get_attempts(session, record.id))
        for record in crud.list_user_tests(session)
    ]
    return {"users": users}


@app.get("/testFree/user-test/{email}")
@app.get("/userTest/{email}")
def user_test_by_email(email: str, session: Session = Depends(get_session)):
    record = crud.get_user_test_by_email(session, email.strip().lower())
    if not record:
        raise HTTPException(status_code=404, detail="User test data not found")
    return {"userTest": scoring.user_test_public(record, crud.get_attempts(session, record.id))}


# ---------------------------------------------------------------------------
# Free tests
# ---------------------------------------------------------------------------

class OptionIn(BaseModel):
    text: str = Field(..., min_length=1)
    underlinedIndexes: List[int] = Field(default_factory=list)


class QuestionIn(BaseModel):
    id: str = Field(..., min_length=1, max_length=100)
    type: Literal[freetest.QUESTION_TYPES]
    questionText: str = Field(..., min_length=1)
    options: List[OptionIn] = Field(default_factory=list)
    correctAnswer: str = Field(..., min_length=1)
    underlinedIndexes: Optional[List[Any]] = None


class QuestionBody(BaseModel):
    question: QuestionIn


class FreeTestIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    reading_passage: str = Field("", alias="readingPassage")
    questions: List[QuestionIn] = Field(default_factory=list)


class BasicInfoIn(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    reading_passage: Optional[str] = Field(None, alias="readingPassage")


def _question_data(q: QuestionIn) -> Dict[str, Any]:
    return q.model_dump(exclude_none=True)


def _load_test(session: Session, test_id: int) -> models.FreeTest:
    test = crud.get_free_test(session, test_id)
    if not test:
        raise HTTPException(status_code=404, detail="Test not found")
    return test


@app.post("/testFree", status_code=201, dependencies=[Depends(require_admin)])
def create_free_test(body: FreeTestIn, session: Session = Depends(get_session)):
    ids = [q.id for q in body.questions]
    if len(set(ids)) != len(ids):
        raise HTTPException(status_code=400, detail="Question IDs must be unique")
    test = models.FreeTest(
        title=body.title,
        reading_passage=body.reading_passage,
        questions=[_question_data(q) for q in body.questions],
    )
    test = crud.save_free_test(session, test)
    return {"message": "Test created successfully", "test": freetest.present_test(test)}


@app.get("/testFree/{id}")
def get_free_test(id: int, request: Request, session: Session = Depends(get_session),
                  caches: CacheRegistry = Depends(get_caches)):
    cache = caches.tests

    def compute():
        return freetest.present_test(_load_test(session, id))

    return cached_response(cache, cache.key_for(request), compute, envelope=raw_envelope)


@app.post("/testFree/{id}/questions", status_code=201, dependencies=[Depends(require_admin)])
def add_question(id: int, body: QuestionBody, session: Session = Depends(get_session),
                 caches: CacheRegistry = Depends(get_caches)):
    test = _load_test(session, id)
    question = _question_data(body.question)
    if not freetest.add_question(test, question):
        raise HTTPException(status_code=400, detail={
            "message": "Question ID already exists in this test",
            "existingIds": freetest.question_ids(test),
        })
    crud.save_free_test(session, test)
    caches.tests.invalidate(free_test_key(id))
    return {"message": "Question added successfully", "addedQuestion": question}


@app.put("/testFree/{id}/questions/{question_id}", dependencies=[Depends(require_admin)])
def update_question(id: int, question_id: str, body: QuestionBody, session: Session = Depends(get_session),
                    caches: CacheRegistry = Depends(get_caches)):
    test = _load_test(session, id)
    question = _question_data(body.question)
    ids = freetest.question_ids(test)
    if question_id not in ids:
        raise HTTPException(status_code=404, detail={
            "message": "Question not found",
            "availableIds": ids,
        })
    if question["id"] != question_id and question["id"] in ids:
        raise HTTPException(status_code=400, detail={
            "message": "Question ID already exists in this test",
            "existingIds": ids,
        })
    freetest.replace_question(test, question_id, question)
    crud.save_free_test(session, test)
    caches.tests.invalidate(free_test_key(id))
    return {"message": "Question updated successfully", "updatedQuestion": question}


@app.delete("/testFree/{id}/questions/{question_id}", dependencies=[Depends(require_admin)])
def delete_question(id: int, question_id: str, session: Session = Depends(get_session),
                    caches: CacheRegistry = Depends(get_caches)):
    test = _load_test(session, id)
    if not freetest.remove_question(test, question_id):
        raise HTTPException(status_code=404, detail={
            "message": "Question not found",
            "availableIds": freetest.question_ids(test),
        })
    crud.save_free_test(session, test)
    caches.tests.invalidate(free_test_key(id))
    return {"message": "Question deleted successfully", "deletedQuestionId": question_id}


@app.patch("/testFree/{id}/basic-info", dependencies=[Depends(require_admin)])
def update_basic_info(id: int, body: BasicInfoIn, session: Session = Depends(get_session),
                      caches: CacheRegistry = Depends(get_caches)):
    test = _load_test(session, id)
    if body.title is not None:
        test.title = body.title
    if body.reading_passage is not None:
        test.reading_passage = body.reading_passage
    test = crud.save_free_test(session, test)
    caches.tests.invalidate(free_test_key(id))
    return {
        "message": "Test information updated successfully",
        "updatedTest": {"id": test.id, "title": test.title, "readingPassage": test.reading_passage},
    }


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class LoginIn(BaseModel):
    uid: str = Field(..., min_length=1, max_length=128)
    email: str = Field(..., min_length=3, max_length=320)
    name: str = Field(..., min_length=1, max_length=200)


@app.post("/users/login",
          dependencies=[Depends(rate_limit_dependency(max_requests=2))])
def login(body: LoginIn, response: Response, session: Session = Depends(get_session)):
    """Sign in with an already verified identity (development stand-in for Google sign-in)."""
    if not config.ALLOW_DEV_LOGIN:
        raise HTTPException(status_code=404, detail="not found")
    user = crud.upsert_user(session, body.uid, body.email.strip().lower(), body.name)
    token = crud.sign_user_token(session, user.uid)
    response.set_cookie('token', token or '', httponly=True, secure=config.COOKIE_SECURE, samesite='strict')
    return {"message": "Login successful", "user": crud.user_profile(user)}


@app.get("/users/profile")
def profile(request: Request, user: models.User = Depends(current_user),
            caches: CacheRegistry = Depends(get_caches)):
    cache = caches.profiles
    return cached_response(cache, cache.key_for(request), lambda: crud.user_profile(user),
                           envelope=success_envelope)


@app.post("/users/logout")
def logout(response: Response):
    response.delete_cookie('token')
    return {"message": "Logout successful"}
