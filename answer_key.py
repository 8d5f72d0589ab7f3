# answer_key.py
# -----------------------------------------------------------------------------
# Answer-key aliasing + per-question weights / correct answers.
# Every alias is keyed by the question's 0-based display position.
# -----------------------------------------------------------------------------

import re
from typing import Any, Dict, List, Mapping, Optional

from exam_parser import MCQ, TRUE_FALSE, SHORT_ANSWER, ESSAY, answer_key_start

# Lookup order when reading an answer back; "{i}" is the 0-based position.
ANSWER_KEY_ALIASES = ("q{i}", "tf{i}", "sa{i}", "essay{i}", "question-{i}", "{i}")

_NATURAL_PREFIX = {MCQ: "q", TRUE_FALSE: "tf", SHORT_ANSWER: "sa", ESSAY: "essay"}

_WEIGHT_RE = re.compile(r"(\d+)\s*\.?\s*\(\s*(\d+(?:\.\d+)?)\s*points?\s*\)", re.IGNORECASE)
_KEY_LINE_RE = re.compile(
    r"^[ \t]*(?:[-*][ \t]*)?(?:\*\*)?(\d+)[.):][ \t]*(?:\*\*)?[ \t]*"
    r"(?:Answer[ \t]*:[ \t]*)?\(?(True|False|[A-D])\b",
    re.IGNORECASE | re.MULTILINE,
)


def alias_keys(index: int) -> List[Any]:
    """All candidate keys for position `index`, in lookup order (string aliases, then the bare int)."""
    keys: List[Any] = [tpl.format(i=index) for tpl in ANSWER_KEY_ALIASES]
    keys.insert(len(keys) - 1, index)
    return keys


def natural_key(index: int, qtype: str) -> str:
    return f"{_NATURAL_PREFIX.get(qtype, 'q')}{index}"


def write_aliases(index: int, qtype: str) -> List[str]:
    """Keys an answer for position `index` is written under: natural key first, then fixed fallbacks."""
    keys = [natural_key(index, qtype), f"q{index}", f"question-{index}", str(index)]
    out: List[str] = []
    for k in keys:
        if k not in out:
            out.append(k)
    return out


def _unwrap(value: Any) -> Any:
    if isinstance(value, dict) and "value" in value:
        return value.get("value")
    return value


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def lookup_by_alias(mapping: Optional[Mapping[Any, Any]], index: int) -> Optional[Any]:
    """First non-empty value stored under any alias of `index` ({value, type} wrappers unwrapped)."""
    if not mapping:
        return None
    for key in alias_keys(index):
        if key not in mapping:
            continue
        value = _unwrap(mapping[key])
        if _present(value):
            return value
    return None


# ---- weights ---------------------------------------------------------------
def parse_weight_annotations(raw_text: Optional[str]) -> Dict[int, float]:
    """'N (P points)' annotations in raw exam text -> {N-1: P}. Best effort; first mention wins."""
    out: Dict[int, float] = {}
    for m in _WEIGHT_RE.finditer(raw_text or ""):
        idx = int(m.group(1)) - 1
        if idx < 0 or idx in out:
            continue
        w = float(m.group(2))
        out[idx] = int(w) if w.is_integer() else w
    return out


def _coerce_weight_map(weights: Optional[Mapping[Any, Any]]) -> Dict[int, float]:
    out: Dict[int, float] = {}
    for k, v in (weights or {}).items():
        try:
            idx, w = int(k), float(v)
        except (TypeError, ValueError):
            continue
        if w > 0:
            out[idx] = int(w) if w.is_integer() else w
    return out


def extract_question_weights(questions: List[Dict[str, Any]],
                             raw_text: Optional[str] = None,
                             weights: Optional[Mapping[Any, Any]] = None) -> Dict[int, float]:
    """
    Position -> weight for every question.
    Precedence: explicit map > raw-text annotations > question's own weight > 1.
    """
    explicit = _coerce_weight_map(weights)
    annotated = parse_weight_annotations(raw_text) if raw_text else {}
    out: Dict[int, float] = {}
    for i, q in enumerate(questions or []):
        w = explicit.get(i)
        if w is None:
            w = annotated.get(i)
        if w is None:
            try:
                qw = float((q or {}).get("weight"))
                w = (int(qw) if qw.is_integer() else qw) if qw > 0 else None
            except (TypeError, ValueError):
                w = None
        out[i] = w if w is not None else 1
    return out


# ---- correct answers ---------------------------------------------------------
def parse_answer_key_section(raw_text: Optional[str]) -> Dict[int, str]:
    """'1. B' / '2) True' lines after an 'Answer Key' / 'Answers' header -> {question number: answer}."""
    text = raw_text or ""
    start = answer_key_start(text)
    if start >= len(text):
        return {}
    out: Dict[int, str] = {}
    for m in _KEY_LINE_RE.finditer(text, start):
        num = int(m.group(1))
        if num in out:
            continue
        ans = m.group(2)
        out[num] = ans.capitalize() if len(ans) > 1 else ans.upper()
    return out


def extract_correct_answers(questions: List[Dict[str, Any]],
                            raw_text: Optional[str] = None) -> Dict[Any, str]:
    """
    Alias-keyed lookup of ground-truth answers for mcq/trueFalse questions.
    Missing answers are filled from an answer-key section in `raw_text`, matched by question id.
    """
    key_section = parse_answer_key_section(raw_text) if raw_text else {}
    lookup: Dict[Any, str] = {}
    for i, q in enumerate(questions or []):
        qtype = q.get("type")
        if qtype not in (MCQ, TRUE_FALSE):
            continue
        answer = q.get("correct_answer")
        if not answer:
            candidate = key_section.get(q.get("id"))
            if qtype == MCQ and candidate and len(candidate) == 1:
                answer = candidate
            elif qtype == TRUE_FALSE and candidate in ("True", "False"):
                answer = candidate
        if not answer:
            continue
        for key in alias_keys(i):
            lookup[key] = answer
    return lookup


def fill_correct_answers(questions: List[Dict[str, Any]], raw_text: Optional[str]) -> List[Dict[str, Any]]:
    """Copies of `questions` with answer-key section answers filled in where missing."""
    lookup = extract_correct_answers(questions, raw_text)
    out = []
    for i, q in enumerate(questions or []):
        q2 = dict(q)
        if not q2.get("correct_answer") and q2.get("type") in (MCQ, TRUE_FALSE):
            q2["correct_answer"] = lookup_by_alias(lookup, i)
        out.append(q2)
    return out
