"""
Free test scoring: best-attempt merging and the top users leaderboard.

A user keeps one representative attempt per question count. A submission
with a question count not seen before is appended; otherwise it replaces the
best stored attempt of that count only when it is better (higher score, or
same score in strictly less time).

Two different tests that happen to have the same number of questions are
treated as the same test here. Concurrent submissions for one email are not
serialized; the last commit wins.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlmodel import Session
from sqlalchemy.exc import SQLAlchemyError

from . import crud, models
from .errors import InvalidInput, PersistenceFailure, UserNotFound
from .logging_utils import get_logger

logger = get_logger("edusite.scoring")

SAVED = "saved"
UPDATED = "updated"
NO_UPDATE = "no_update"


def round_half_up(value: float, ndigits: int = 0) -> float:
    factor = 10 ** ndigits
    return math.floor(value * factor + 0.5) / factor


def compute_percentage(score: int, total_questions: int) -> int:
    if total_questions <= 0:
        raise InvalidInput("totalQuestions must be greater than zero")
    return int(round_half_up(score / total_questions * 100))


def normalize_time_taken(time_taken: Any) -> Dict[str, int]:
    """Return {minutes, seconds, totalSeconds}; a bare number is read as seconds."""
    if isinstance(time_taken, (int, float)):
        total = int(time_taken)
        return {"minutes": total // 60, "seconds": total % 60, "totalSeconds": total}
    data = dict(time_taken or {})
    minutes = int(data.get("minutes") or 0)
    seconds = int(data.get("seconds") or 0)
    total = data.get("totalSeconds")
    total = int(total) if total is not None else minutes * 60 + seconds
    return {"minutes": minutes, "seconds": seconds, "totalSeconds": total}


def total_seconds(time_taken: Optional[Dict[str, Any]]) -> int:
    return normalize_time_taken(time_taken)["totalSeconds"]


def beats(score: int, seconds: int, best: models.TestAttempt) -> bool:
    """True if (score, seconds) is strictly better than the stored attempt."""
    if score > best.score:
        return True
    return score == best.score and seconds < total_seconds(best.time_taken)


def find_best(attempts: Sequence[models.TestAttempt]) -> models.TestAttempt:
    best = attempts[0]
    for candidate in attempts[1:]:
        if beats(candidate.score, total_seconds(candidate.time_taken), best):
            best = candidate
    return best


def attempt_public(attempt: models.TestAttempt) -> Dict[str, Any]:
    return crud.to_public(attempt, exclude=('user_test_id',))


def user_test_public(record: models.UserTest, attempts: Sequence[models.TestAttempt]) -> Dict[str, Any]:
    data = crud.to_public(record)
    data["testHistory"] = [attempt_public(a) for a in attempts]
    return data


@dataclass
class SubmitOutcome:
    status: str
    attempt: Dict[str, Any]
    new_result: Optional[Dict[str, Any]] = None

    def to_response(self) -> Dict[str, Any]:
        if self.status == SAVED:
            return {"message": "Test result saved successfully", "savedTest": self.attempt}
        if self.status == UPDATED:
            return {"message": "Test result updated successfully", "updatedTest": self.attempt}
        return {
            "message": "No update needed as current result is not better",
            "currentBest": self.attempt,
            "newResult": self.new_result,
        }


def _validate_submission(score: int, total_questions: int) -> None:
    if total_questions <= 0:
        raise InvalidInput("totalQuestions must be greater than zero")
    if score < 0 or score > total_questions:
        raise InvalidInput("score must be between 0 and totalQuestions")


def _persist(session: Session, *rows: Any) -> None:
    try:
        crud.save_user_test(session, *rows)
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("save_result_failed")
        raise PersistenceFailure("Error saving test result") from e


def submit_result(
    session: Session,
    email: str,
    test_id: Optional[str],
    score: int,
    total_questions: int,
    time_taken: Any,
) -> SubmitOutcome:
    """Merge a submitted result into the user's attempt history."""
    record = crud.get_user_test_by_email(session, email)
    if record is None or record.id is None:
        raise UserNotFound(email)
    _validate_submission(score, total_questions)

    percentage = compute_percentage(score, total_questions)
    timing = normalize_time_taken(time_taken)
    same_kind = [a for a in crud.get_attempts(session, record.id) if a.total_questions == total_questions]

    if not same_kind:
        attempt = models.TestAttempt(
            user_test_id=record.id,
            test_id=test_id,
            score=score,
            total_questions=total_questions,
            percentage=percentage,
            time_taken=timing,
            submitted_at=models.utcnow(),
        )
        _persist(session, attempt)
        logger.info("test_result_saved", extra={"email": email, "outcome": SAVED})
        return SubmitOutcome(SAVED, attempt_public(attempt))

    best = find_best(same_kind)
    if beats(score, timing["totalSeconds"], best):
        best.score = score
        best.percentage = percentage
        best.time_taken = timing
        best.submitted_at = models.utcnow()
        if test_id and not best.test_id:
            best.test_id = test_id
        _persist(session, best)
        logger.info("test_result_saved", extra={"email": email, "outcome": UPDATED})
        return SubmitOutcome(UPDATED, attempt_public(best))

    logger.info("test_result_saved", extra={"email": email, "outcome": NO_UPDATE})
    return SubmitOutcome(
        NO_UPDATE,
        attempt_public(best),
        new_result={
            "score": score,
            "totalQuestions": total_questions,
            "percentage": percentage,
            "timeTaken": timing,
        },
    )


# Leaderboard

def compute_top_users(
    entries: Sequence[Tuple[models.UserTest, Sequence[models.TestAttempt]]],
    limit: int = 5,
) -> List[Dict[str, Any]]:
    """Rank users by their best percentage across all attempts.

    Each row shows the first stored attempt reaching that percentage. Order
    between users with equal best percentage follows storage order.
    """
    ranked = []
    for record, attempts in entries:
        scored = [a for a in attempts if a.percentage is not None]
        if not scored:
            continue
        best_result = max(a.percentage for a in scored)
        detail = next(a for a in scored if a.percentage == best_result)
        ranked.append((best_result, record, detail))
    ranked.sort(key=lambda r: -r[0])

    rows = []
    for best_result, record, detail in ranked[:max(limit, 0)]:
        rows.append({
            'userId': record.id,
            'fullName': record.full_name,
            'email': record.email,
            'bestScore': detail.score,
            'totalQuestions': detail.total_questions,
            'percentage': best_result,
            'timeTaken': detail.time_taken,
            'submittedAt': detail.submitted_at.isoformat() if detail.submitted_at else None,
        })
    return rows


def get_top_users(session: Session, limit: int = 5) -> List[Dict[str, Any]]:
    return compute_top_users(crud.list_user_tests_with_scored_attempts(session), limit)


def get_stats(session: Session) -> Dict[str, Any]:
    stats: Dict[str, Any] = {
        **crud.user_test_counts(session),
        'avgPercentage': 0,
        'avgTimeTaken': 0,
    }
    attempts = crud.all_attempts(session)
    percentages = [a.percentage for a in attempts if a.percentage is not None]
    if percentages:
        stats['avgPercentage'] = round_half_up(sum(percentages) / len(percentages), 1)
    if attempts:
        times = [total_seconds(a.time_taken) for a in attempts]
        stats['avgTimeTaken'] = int(round_half_up(sum(times) / len(times)))
    return stats
