# reconcile.py
# -----------------------------------------------------------------------------
# Submission reconciliation: alias-keyed answers -> one canonical submission
# packaged with the un-stripped questions, plus the durable/channel dual write.
# -----------------------------------------------------------------------------

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from answer_key import lookup_by_alias, extract_question_weights
from store import COMPLETED_EXAM_ID, LAST_EXAM_RESULTS, EXAM_COMPLETED

UNANSWERED = "Not answered"
SOFT_DELIVERY_MESSAGE = "Connection issue, but your results are saved."
DELIVERED_MESSAGE = "Your exam has been submitted successfully."


def now_ms() -> int:
    return int(time.time() * 1000)


def _to_ms(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    # non-finite numbers ("1e400", Infinity, NaN) count as missing
    number: Optional[float] = None
    if isinstance(value, (int, float)):
        number = value
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            pass
    if number is not None:
        try:
            return int(number)
        except (OverflowError, ValueError):
            return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def format_elapsed(start_ms: Any, end_ms: Any) -> str:
    start, end = _to_ms(start_ms), _to_ms(end_ms)
    if start is None or end is None:
        return "0 minutes and 0 seconds"
    total = max(0, (end - start) // 1000)
    return f"{total // 60} minutes and {total % 60} seconds"


def _as_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value).strip()


def reconcile_answers(collected: Optional[Mapping[Any, Any]], count: int) -> Dict[str, str]:
    """{str(i): answer} for every position that has a non-empty value under any alias."""
    out: Dict[str, str] = {}
    for i in range(max(0, int(count or 0))):
        value = lookup_by_alias(collected, i)
        if value is not None:
            out[str(i)] = _as_text(value)
    return out


def reconcile(collected_answers: Optional[Mapping[Any, Any]],
              original_questions: List[Dict[str, Any]],
              exam: Optional[Dict[str, Any]] = None,
              started_at: Any = None,
              submitted_at: Any = None,
              question_weights: Optional[Mapping[Any, Any]] = None,
              auto_submit: bool = False) -> Dict[str, Any]:
    """
    Build the evaluator-facing submission.
    `original_questions` must be the pre-render (un-stripped) list in display order.
    """
    exam = exam or {}
    originals = list(original_questions or [])
    weights = extract_question_weights(originals, weights=question_weights)
    answers = reconcile_answers(collected_answers, len(originals))
    submitted = submitted_at if submitted_at is not None else now_ms()

    questions = []
    question_types: Dict[str, int] = {}
    for i, q in enumerate(originals):
        qtype = q.get("type") or "unknown"
        question_types[qtype] = question_types.get(qtype, 0) + 1
        questions.append({
            "question": q.get("text") or "",
            "type": qtype,
            "options": list(q.get("options") or []),
            "answer": q.get("correct_answer"),
            "weight": weights.get(i, 1),
        })

    return {
        "exam_id": exam.get("id"),
        "exam_name": exam.get("name") or "Exam",
        "date": datetime.now(timezone.utc).date().isoformat(),
        "topics": list(exam.get("topics") or []),
        "difficulty": exam.get("difficulty") or "",
        "questions": questions,
        "answers": answers,
        "time_taken": format_elapsed(started_at, submitted),
        "question_types": question_types,
        "question_weights": {str(k): v for k, v in weights.items()},
        "auto_submit": bool(auto_submit),
    }


def user_answer(submission: Dict[str, Any], index: int) -> str:
    return (submission.get("answers") or {}).get(str(index)) or UNANSWERED


def deliver_submission(submission: Dict[str, Any], store, channel=None) -> bool:
    """
    Durable handoff write first (completedExamId + lastExamResults), then a
    best-effort channel send. Returns whether the send went through.
    """
    store.set(LAST_EXAM_RESULTS, submission)
    store.set(COMPLETED_EXAM_ID, submission.get("exam_id"))
    if channel is None:
        return False
    try:
        channel.send(EXAM_COMPLETED, {"exam_data": submission})
        return True
    except Exception as e:
        print(f"[reconcile] channel send failed; durable copy kept: {e}")
        return False
