# evaluation.py
# -----------------------------------------------------------------------------
# Evaluator prompt + defensive result mapping.
# - JSON extraction: fenced ```json block -> greedy {...} -> lenient brace scan
# - Any extraction failure degrades to an all-zero result, never an exception
# - Results are append-only in the store; deletion removes the whole record
# -----------------------------------------------------------------------------

import json
import re
from typing import Any, Dict, List, Optional

from reconcile import UNANSWERED, user_answer
from store import EXAM_RESULTS

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_GREEDY_RE = re.compile(r"\{[\s\S]*\}")


def build_evaluation_prompt(submission: Dict[str, Any]) -> str:
    weights = submission.get("question_weights") or {}
    blocks: List[str] = []
    for idx, q in enumerate(submission.get("questions") or []):
        weight = weights.get(str(idx)) or q.get("weight") or 1
        lines = [f"Question {idx + 1} ({q.get('type')}, weight: {weight}): {q.get('question')}"]
        if q.get("options"):
            lines.append("Options: " + " | ".join(str(o) for o in q["options"]))
        lines.append(f"Correct Answer: {q.get('answer') or 'N/A'}")
        lines.append(f"User Answer: {user_answer(submission, idx)}")
        blocks.append("\n".join(lines))

    return f"""Evaluate the following exam responses:

Exam: {submission.get('exam_name') or 'Exam'}
Topic(s): {', '.join(str(t) for t in (submission.get('topics') or []))}
Difficulty: {submission.get('difficulty') or ''}

Questions and Responses:
{chr(10).join(chr(10) + b for b in blocks)}

For each question, provide:
1. Whether the answer is correct (full points), partially correct (partial points), or incorrect (0 points)
2. A brief explanation/feedback
3. The points awarded out of the question weight

Also provide:
- Total score (sum of awarded points)
- Total possible score (sum of question weights)
- Percentage score
- Performance breakdown by topic

Use the following JSON format for your response:
{{
  "questionDetails": [
    {{
      "question": "Question text",
      "type": "question type",
      "isCorrect": true/false/partial,
      "feedback": "Brief feedback",
      "marksObtained": number,
      "totalMarks": number,
      "userAnswer": "user's answer",
      "correctAnswer": "correct answer"
    }}
  ],
  "totalScore": number,
  "totalPossible": number,
  "percentage": number,
  "topicPerformance": {{
    "topic1": percentage,
    "topic2": percentage
  }}
}}"""


# ---- JSON extraction -----------------------------------------------------------
def _loads(candidate: str) -> Optional[Any]:
    try:
        return json.loads(candidate)
    except ValueError:
        return None


def _has_details(obj: Any) -> bool:
    return isinstance(obj, dict) and isinstance(obj.get("questionDetails"), list)


def extract_evaluation_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    if not text:
        return None

    m = _FENCED_RE.search(text)
    if m:
        obj = _loads(m.group(1))
        if _has_details(obj):
            return obj

    m = _GREEDY_RE.search(text)
    if m:
        obj = _loads(m.group(0))
        if _has_details(obj):
            return obj

    decoder = json.JSONDecoder()
    for pos, ch in enumerate(text):
        if ch != "{":
            continue
        try:
            obj, _end = decoder.raw_decode(text, pos)
        except ValueError:
            continue
        if _has_details(obj) and "totalScore" in obj:
            return obj
    return None


# ---- mapping -------------------------------------------------------------------
def _num(value: Any, default: float = 0) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    if n != n:
        return default
    return int(n) if n.is_integer() else round(n, 2)


def _is_correct(value: Any) -> Any:
    if value is True:
        return True
    if isinstance(value, str):
        v = value.strip().lower()
        if v == "true":
            return True
        if v == "partial":
            return "partial"
    return False


def _unattempted(answer: Any) -> bool:
    return answer is None or not str(answer).strip() or str(answer).strip() == UNANSWERED


def _fallback_detail(submission: Dict[str, Any], idx: int, q: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "question": q.get("question") or "",
        "type": q.get("type") or "unknown",
        "is_correct": False,
        "feedback": "This answer could not be evaluated.",
        "marks_obtained": 0,
        "total_marks": _num(q.get("weight"), 1),
        "user_answer": user_answer(submission, idx),
        "correct_answer": q.get("answer") or "N/A",
    }


def _normalize_detail(raw: Any, submission: Dict[str, Any], idx: int, q: Dict[str, Any]) -> Dict[str, Any]:
    base = _fallback_detail(submission, idx, q)
    if not isinstance(raw, dict):
        return base
    base["feedback"] = str(raw.get("feedback") or "")
    base["is_correct"] = _is_correct(raw.get("isCorrect"))
    base["marks_obtained"] = _num(raw.get("marksObtained"), 0)
    base["total_marks"] = _num(raw.get("totalMarks"), base["total_marks"])
    # the reconciled answer is authoritative; evaluators sometimes paraphrase it
    base["user_answer"] = user_answer(submission, idx)
    if raw.get("correctAnswer"):
        base["correct_answer"] = str(raw["correctAnswer"])
    if raw.get("question"):
        base["question"] = str(raw["question"])
    return base


def question_stats(details: List[Dict[str, Any]]) -> Dict[str, int]:
    stats = {"correct": 0, "incorrect": 0, "unattempted": 0, "total": len(details)}
    for d in details:
        if _unattempted(d.get("user_answer")):
            stats["unattempted"] += 1
        elif d.get("is_correct") is True:
            stats["correct"] += 1
        else:
            stats["incorrect"] += 1
    return stats


def _topic_performance(raw: Any, topics: List[str], percentage: float) -> Dict[str, float]:
    out: Dict[str, float] = {}
    if isinstance(raw, dict):
        for k, v in raw.items():
            if str(k).strip():
                out[str(k)] = _num(v, percentage)
    if not out:
        for t in topics:
            out[str(t)] = percentage
    return out


def fallback_evaluation(submission: Dict[str, Any]) -> Dict[str, Any]:
    """Worst-case result: every question incorrect, zero score."""
    questions = submission.get("questions") or []
    details = [_fallback_detail(submission, i, q) for i, q in enumerate(questions)]
    return _result(submission, details, score=0, total_marks=sum(d["total_marks"] for d in details),
                   percentage=0, topic_raw=None, evaluated=False)


def _result(submission, details, score, total_marks, percentage, topic_raw, evaluated) -> Dict[str, Any]:
    return {
        "exam_id": submission.get("exam_id"),
        "exam_name": submission.get("exam_name") or "Exam",
        "date": submission.get("date"),
        "score": score,
        "total_marks": total_marks,
        "percentage": percentage,
        "time_taken": submission.get("time_taken") or "0 minutes and 0 seconds",
        "question_stats": question_stats(details),
        "topic_performance": _topic_performance(topic_raw, list(submission.get("topics") or []), percentage),
        "question_details": details,
        "answers": dict(submission.get("answers") or {}),
        "evaluated": evaluated,
    }


def map_evaluation(raw_text: Optional[str], submission: Dict[str, Any]) -> Dict[str, Any]:
    parsed = extract_evaluation_json(raw_text)
    if parsed is None:
        print("[evaluation] no usable JSON in evaluator response; using zero-score fallback")
        return fallback_evaluation(submission)

    questions = submission.get("questions") or []
    raw_details = parsed.get("questionDetails") or []
    if len(raw_details) != len(questions):
        print(f"[evaluation] evaluator returned {len(raw_details)} detail(s) for {len(questions)} question(s)")
    details = [
        _normalize_detail(raw_details[i] if i < len(raw_details) else None, submission, i, q)
        for i, q in enumerate(questions)
    ]

    score = _num(parsed.get("totalScore"), sum(d["marks_obtained"] for d in details))
    total_marks = _num(parsed.get("totalPossible"), sum(d["total_marks"] for d in details))
    if "percentage" in parsed:
        percentage = _num(parsed.get("percentage"), 0)
    else:
        percentage = _num(round(100.0 * score / total_marks, 2)) if total_marks else 0
    return _result(submission, details, score, total_marks, percentage, parsed.get("topicPerformance"), True)


# ---- persistence -----------------------------------------------------------------
def save_result(store, result: Dict[str, Any]) -> bool:
    """Append once per exam id. Returns False when a result for that exam already exists."""
    results = list(store.get(EXAM_RESULTS, []) or [])
    exam_id = result.get("exam_id")
    if exam_id is not None and any(r.get("exam_id") == exam_id for r in results):
        print(f"[evaluation] result for exam {exam_id} already stored; skipping")
        return False
    results.append(result)
    store.set(EXAM_RESULTS, results)
    return True


def delete_result(store, exam_id: str) -> bool:
    results = list(store.get(EXAM_RESULTS, []) or [])
    kept = [r for r in results if r.get("exam_id") != exam_id]
    if len(kept) == len(results):
        return False
    store.set(EXAM_RESULTS, kept)
    return True
