# exam_parser.py
# -----------------------------------------------------------------------------
# Free-form exam text -> normalized question dicts.
# - Labeled headers first ("1. MCQ:", "2. True/False:", "3. Short Answer:", "4. Essay:")
# - Generic "N." line split only when no labeled header exists
# - Answer-key section ("Answer Key:", "Answers:") ends every question body
# - Never raises; bad input degrades to fewer / looser-typed questions
# -----------------------------------------------------------------------------

import re
from typing import Any, Dict, List, Optional, Tuple

MCQ = "mcq"
TRUE_FALSE = "trueFalse"
SHORT_ANSWER = "shortAnswer"
ESSAY = "essay"
UNKNOWN = "unknown"

QUESTION_TYPES = (MCQ, TRUE_FALSE, SHORT_ANSWER, ESSAY, UNKNOWN)
TRUE_FALSE_OPTIONS = ["True", "False"]

TYPE_LABELS = {
    MCQ: "MCQ",
    TRUE_FALSE: "True/False",
    SHORT_ANSWER: "Short Answer",
    ESSAY: "Essay",
}

OPTION_LETTERS = "ABCD"

# ---- patterns ----------------------------------------------------------------
_POINTS = r"\(\s*(\d+(?:\.\d+)?)\s*points?\s*\)"

_HEADER_RE = re.compile(
    r"(?<![\w.])(?:\*\*)?(\d+)\s*"
    r"(?:" + _POINTS + r"\s*)?"
    r"[.)]\s*"
    r"(?:" + _POINTS + r"\s*)?"
    r"(?:\*\*)?\s*"
    r"(MCQ\s*:|Multiple\s*Choice\s*:?|Short\s*Answer\s*:|Essay\s*:|True\s*/\s*False\s*:)"
    r"(?:\*\*)?",
    re.IGNORECASE,
)

_GENERIC_RE = re.compile(r"^[ \t]*(?:\*\*)?(\d+)\.(?!\d)\s*(?:\*\*)?", re.MULTILINE)

_ANSWER_KEY_RE = re.compile(
    r"^[ \t]*(?:#+[ \t]*)?(?:\*\*)?[ \t]*(?:Answer[ \t]*Key|Answers)[ \t]*(?:\*\*)?[ \t]*:?[ \t]*(?:\*\*)?[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)

_OPTION_RE = re.compile(r"^[ \t]*(?:[-*][ \t]*)?\(?([A-D])[).][ \t]*(\S[^\n]*?)[ \t]*$", re.MULTILINE)
_OPTION_LINE_RE = re.compile(r"^[ \t]*(?:[-*][ \t]*)?\(?[A-D][).][ \t]*\S[^\n]*(?:\n|\Z)", re.MULTILINE)

_ANSWER_LEAD = r"answer\s*(?:\*\*)?\s*:\s*(?:\*\*)?\s*"
_MCQ_ANSWER_RE = re.compile(_ANSWER_LEAD + r"\(?([A-D])\b", re.IGNORECASE)
_TF_ANSWER_RE = re.compile(_ANSWER_LEAD + r"(True|False)\b", re.IGNORECASE)

_ANSWER_PREFIX = r"(?:(?:Sample|Suggested|Expected|Model|Correct|Example)\s+)?"
_ANSWER_LINE_RE = re.compile(
    r"(?:\*\*)?\b" + _ANSWER_PREFIX + r"(?:Answer|Solution)\s*(?:\*\*)?\s*:[^\n]*",
    re.IGNORECASE,
)
_ANSWER_BLOCK_RE = re.compile(
    r"(?:\*\*)?\b" + _ANSWER_PREFIX + r"(?:Answer|Solution)\s*(?:\*\*)?\s*:.*?(?=\n[ \t]*\n|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_GUIDANCE_RE = re.compile(
    r"\(?\b(?:Word\s*count|Word\s*limit|Expected\s*length|Character\s*limit|"
    r"(?:Response\s+|Answer\s+)?Guidelines)\s*:[^\n]*",
    re.IGNORECASE,
)
_SELECT_ONE_RE = re.compile(
    r"\b(?:Select\s+one|Choose\s+one|Select\s+the\s+correct\s+option)\s*:[^\n]*",
    re.IGNORECASE,
)
_POINTS_RE = re.compile(_POINTS, re.IGNORECASE)
_GRADING_RE = re.compile(
    r"\b(?:Grading\s+criteria|Grading\s+rubric|Marking\s+scheme)\s*:.*?(?=\n[ \t]*\n|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_ANSWER_GUARD_RE = re.compile(r"answer\s*:[^\n]*", re.IGNORECASE)

_TYPE_ALIASES = {
    "mcq": MCQ, "multiplechoice": MCQ, "multiple_choice": MCQ,
    "truefalse": TRUE_FALSE, "true/false": TRUE_FALSE, "true_false": TRUE_FALSE, "tf": TRUE_FALSE,
    "shortanswer": SHORT_ANSWER, "short_answer": SHORT_ANSWER, "short": SHORT_ANSWER,
    "essay": ESSAY,
}


# ---- small helpers -----------------------------------------------------------
def _number(value: Any) -> Optional[float]:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if n != n or n < 0:
        return None
    return int(n) if n.is_integer() else n


def _label_type(label: str) -> str:
    key = re.sub(r"[\s:]+", "", label or "").lower()
    if key.startswith("true"):
        return TRUE_FALSE
    if key.startswith("short"):
        return SHORT_ANSWER
    if key.startswith("essay"):
        return ESSAY
    return MCQ


def normalize_type(value: Any) -> str:
    key = re.sub(r"\s+", "", str(value or "")).lower()
    return _TYPE_ALIASES.get(key, UNKNOWN)


def answer_key_start(exam_text: str) -> int:
    """Offset of the first answer-key section header, or len(text) when absent."""
    m = _ANSWER_KEY_RE.search(exam_text or "")
    return m.start() if m else len(exam_text or "")


# ---- extraction ----------------------------------------------------------------
def extract_options(text: str) -> List[str]:
    """Up to four option lines, normalized to 'A) text'. First line per letter wins."""
    out: List[str] = []
    seen = set()
    for m in _OPTION_RE.finditer(text or ""):
        letter = m.group(1).upper()
        if letter in seen:
            continue
        seen.add(letter)
        out.append(f"{letter}) {m.group(2).strip()}")
        if len(out) == 4:
            break
    return out


def extract_answer(text: str, qtype: str) -> Optional[str]:
    if qtype == MCQ:
        m = _MCQ_ANSWER_RE.search(text or "")
        return m.group(1).upper() if m else None
    if qtype == TRUE_FALSE:
        m = _TF_ANSWER_RE.search(text or "")
        return m.group(1).capitalize() if m else None
    return None


def clean_question_text(text: str, qtype: str) -> str:
    """Strip options, answers, guidance and grading metadata from a question body."""
    s = str(text or "")
    if qtype == MCQ:
        s = _OPTION_LINE_RE.sub("", s)
    if qtype in (SHORT_ANSWER, ESSAY):
        s = _ANSWER_BLOCK_RE.sub("", s)
    s = _ANSWER_LINE_RE.sub("", s)
    s = _GUIDANCE_RE.sub("", s)
    s = _SELECT_ONE_RE.sub("", s)
    s = _POINTS_RE.sub("", s)
    s = _GRADING_RE.sub("", s)
    s = _ANSWER_GUARD_RE.sub("", s)
    s = re.sub(r"[ \t]+\n", "\n", s)
    s = re.sub(r"\n{3,}", "\n\n", s.strip())
    return s


def _question(qid: int, body: str, qtype: str, weight: Optional[float] = None) -> Dict[str, Any]:
    options: List[str] = []
    correct: Optional[str] = None
    if qtype == MCQ:
        options = extract_options(body)
        if options:
            correct = extract_answer(body, MCQ)
        else:
            qtype = SHORT_ANSWER
    elif qtype == TRUE_FALSE:
        options = list(TRUE_FALSE_OPTIONS)
        correct = extract_answer(body, TRUE_FALSE)
    q = {
        "id": qid,
        "text": clean_question_text(body, qtype),
        "type": qtype,
        "options": options,
        "correct_answer": correct,
    }
    if weight is not None:
        q["weight"] = weight
    return q


def _sniff_type(body: str) -> str:
    if _TF_ANSWER_RE.search(body):
        return TRUE_FALSE
    if _OPTION_RE.search(body):
        return MCQ
    if "essay" in body.lower():
        return ESSAY
    return SHORT_ANSWER


# ---- passes ----------------------------------------------------------------------
def _segments(matches: List[re.Match], stop: int) -> List[Tuple[re.Match, str]]:
    out = []
    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else stop
        out.append((m, m.string[m.end():end]))
    return out


def _labeled_pass(exam_text: str, stop: int) -> List[Dict[str, Any]]:
    matches = [m for m in _HEADER_RE.finditer(exam_text) if m.start() < stop]
    questions = []
    for m, body in _segments(matches, stop):
        weight = _number(m.group(2) or m.group(3))
        questions.append(_question(int(m.group(1)), body.strip(), _label_type(m.group(4)), weight))
    return questions


def _generic_pass(exam_text: str, stop: int) -> List[Dict[str, Any]]:
    matches = [m for m in _GENERIC_RE.finditer(exam_text) if m.start() < stop]
    questions = []
    for m, body in _segments(matches, stop):
        body = body.strip()
        if not body:
            continue
        weight = None
        pm = _POINTS_RE.match(body)
        if pm:
            weight = _number(pm.group(1))
        questions.append(_question(int(m.group(1)), body, _sniff_type(body), weight))
    return questions


def _from_structured(items: List[Any]) -> List[Dict[str, Any]]:
    questions = []
    for pos, item in enumerate(items, start=1):
        if isinstance(item, str):
            item = {"text": item}
        if not isinstance(item, dict):
            continue
        try:
            qid = int(item.get("id"))
        except (TypeError, ValueError):
            qid = pos
        qtype = normalize_type(item.get("type"))
        raw_text = str(item.get("text") or item.get("question") or "")
        options: List[str] = []
        if qtype == TRUE_FALSE:
            options = list(TRUE_FALSE_OPTIONS)
        elif qtype == MCQ:
            raw_opts = item.get("options") or []
            if isinstance(raw_opts, list):
                lines = []
                for i, o in enumerate(raw_opts[:4]):
                    o = str(o).strip()
                    lines.append(o if re.match(r"^\(?[A-D][).]", o) else f"{OPTION_LETTERS[i]}) {o}")
                options = extract_options("\n".join(lines))
            if not options:
                qtype = SHORT_ANSWER
        correct = item.get("correct_answer", item.get("correctAnswer"))
        if qtype == MCQ and correct:
            m = re.match(r"^\s*\(?([A-Da-d])\b", str(correct))
            correct = m.group(1).upper() if m else None
        elif qtype == TRUE_FALSE and correct is not None:
            c = str(correct).strip().capitalize()
            correct = c if c in TRUE_FALSE_OPTIONS else None
        elif qtype not in (MCQ, TRUE_FALSE):
            correct = None
        q = {
            "id": qid,
            "text": clean_question_text(raw_text, qtype),
            "type": qtype,
            "options": options,
            "correct_answer": correct or None,
        }
        weight = _number(item.get("weight"))
        if weight is not None:
            q["weight"] = weight
        questions.append(q)
    return questions


def _finalize(questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for q in questions:
        if q["id"] in seen:
            continue
        seen.add(q["id"])
        unique.append(q)
    return sorted(unique, key=lambda q: q["id"])


def parse_questions(exam_text: Any) -> List[Dict[str, Any]]:
    """
    Returns questions sorted by id: {id, text, type, options, correct_answer[, weight]}.
    Accepts raw text or an already-structured list.
    """
    if isinstance(exam_text, (list, tuple)):
        return _finalize(_from_structured(list(exam_text)))
    if not isinstance(exam_text, str) or not exam_text.strip():
        return []
    text = exam_text.replace("\r\n", "\n")
    stop = answer_key_start(text)
    questions = _labeled_pass(text, stop)
    if not questions:
        questions = _generic_pass(text, stop)
        if questions:
            print(f"[parser] no labeled headers; generic pass found {len(questions)} question(s)")
    return _finalize(questions)


def format_exam_with_layout(exam: Dict[str, Any]) -> str:
    """Printable markdown view of an exam (header block + numbered questions)."""
    exam = exam or {}
    topics = exam.get("topics") or []
    qtypes = exam.get("question_types") or ""
    if isinstance(qtypes, (list, tuple)):
        qtypes = ", ".join(str(t) for t in qtypes)
    elif isinstance(qtypes, dict):
        qtypes = ", ".join(f"{k}: {v}" for k, v in qtypes.items())
    lines = [
        f"# {exam.get('name') or 'Exam'}",
        "",
        f"**Date:** {exam.get('date') or ''}",
        f"**Time:** {exam.get('time') or ''}",
        f"**Duration:** {exam.get('duration') or ''} minutes",
        f"**Number of Questions:** {exam.get('number_of_questions') or ''}",
        f"**Topics:** {', '.join(str(t) for t in topics)}",
        f"**Difficulty:** {exam.get('difficulty') or ''}",
        f"**Question Types:** {qtypes}",
        "",
    ]
    questions = exam.get("questions")
    if isinstance(questions, str):
        lines.append(questions)
    elif isinstance(questions, list):
        for i, q in enumerate(questions, start=1):
            q = q if isinstance(q, dict) else {"text": str(q)}
            lines.append(f"{i}. {q.get('text') or ''}")
            for opt in q.get("options") or []:
                lines.append(f"  - {opt}")
            lines.append("")
    return "\n".join(lines)
