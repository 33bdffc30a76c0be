from typing import Any, Dict, List, Optional

from . import models

QUESTION_TYPES = (
    "pronunciation",
    "stress",
    "fill_in_blank",
    "multi_choice",
    "error_identification",
    "reading_comprehension",
)


def error_positions(question_text: str, options: List[Dict[str, Any]]) -> List[List[int]]:
    """Inclusive [start, end] spans of each option's text inside the question text."""
    spans = []
    for opt in options:
        text = opt.get("text") or ""
        start = question_text.find(text) if text else -1
        if start != -1:
            spans.append([start, start + len(text) - 1])
    return spans


def present_question(q: Dict[str, Any]) -> Dict[str, Any]:
    out = {
        "id": q.get("id"),
        "type": q.get("type"),
        "questionText": q.get("questionText", ""),
        "options": [
            {"text": opt.get("text", ""), "underlinedIndexes": opt.get("underlinedIndexes") or []}
            for opt in q.get("options") or []
        ],
        "correctAnswer": q.get("correctAnswer"),
    }
    if q.get("type") == "error_identification":
        if isinstance(q.get("underlinedIndexes"), list):
            out["underlinedIndexes"] = q["underlinedIndexes"]
        else:
            spans = error_positions(out["questionText"], q.get("options") or [])
            if spans:
                out["underlinedIndexes"] = spans
    return out


def present_test(test: models.FreeTest) -> Dict[str, Any]:
    """Shape a stored test for the test-taking page."""
    return {
        "id": test.id,
        "title": test.title,
        "readingPassage": test.reading_passage,
        "questions": [present_question(q) for q in test.questions or []],
    }


def question_ids(test: models.FreeTest) -> List[str]:
    return [q.get("id") for q in test.questions or []]


def _index_of(test: models.FreeTest, question_id: str) -> Optional[int]:
    for i, q in enumerate(test.questions or []):
        if q.get("id") == question_id:
            return i
    return None


# The questions column is JSON: always assign a new list so the change is flushed.

def add_question(test: models.FreeTest, question: Dict[str, Any]) -> bool:
    """Append question; False if its id is already used in this test."""
    if _index_of(test, question.get("id")) is not None:
        return False
    test.questions = list(test.questions or []) + [question]
    return True


def replace_question(test: models.FreeTest, question_id: str, question: Dict[str, Any]) -> bool:
    idx = _index_of(test, question_id)
    if idx is None:
        return False
    questions = list(test.questions)
    questions[idx] = question
    test.questions = questions
    return True


def remove_question(test: models.FreeTest, question_id: str) -> bool:
    idx = _index_of(test, question_id)
    if idx is None:
        return False
    test.questions = [q for i, q in enumerate(test.questions) if i != idx]
    return True
