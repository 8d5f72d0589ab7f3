import json
import random
import re

from flask import Flask

from exam_renderer import (
    next_status,
    pending_count,
    submit_confirmation,
    normalize_statuses,
    strip_answers,
    prepare_exam,
    render_exam,
    render_exam_error,
    render_question_text,
)


def test_state_machine_transitions():
    assert next_status("not-visited", "visit") == "unanswered"
    assert next_status("answered", "visit") == "answered"
    assert next_status("unanswered", "answer", "B") == "answered"
    assert next_status("answered", "answer", "   ") == "unanswered"
    assert next_status("answered", "mark", "B") == "marked"
    assert next_status("marked", "answer", "C") == "marked"
    assert next_status("marked", "mark") == "unanswered"
    assert next_status("marked", "mark", "C") == "unanswered"
    assert next_status("unanswered", "answer", "C") == "answered"


def test_confirmation_counts_unanswered_and_marked():
    statuses = ["answered", "marked", "not-visited", "unanswered"]

    assert pending_count(statuses) == 3
    assert submit_confirmation(statuses) == (
        "You have 3 unanswered or marked questions. Are you sure you want to submit?"
    )
    assert submit_confirmation(["answered"]) is None


def test_server_statuses_follow_answers():
    statuses = normalize_statuses(["answered", "marked", "bogus"], {"1": "x", "2": "y"}, 4)

    assert statuses == ["unanswered", "marked", "answered", "not-visited"]


def test_strip_answers_keeps_everything_else():
    q = {"id": 1, "text": "t", "type": "mcq", "options": ["A) a"], "correct_answer": "A", "weight": 2}

    stripped = strip_answers([q])

    assert "correct_answer" not in stripped[0]
    assert stripped[0]["weight"] == 2
    assert q["correct_answer"] == "A"


def test_prepare_exam_selects_before_stripping():
    raw = "".join(f"{i}. MCQ: Q{i}\nA) a\nB) b\nAnswer: B\n" for i in range(1, 6))
    raw += "6. Essay: Discuss.\n7. Essay: Explain.\n8. Essay: Compare.\n"
    exam = {"id": "e1", "questions": raw, "distribution": {"mcq": 2}}

    prepared = prepare_exam(exam, rng=random.Random(4))

    originals = prepared["original_questions"]
    assert [q["id"] for q in originals] == [1, 2]
    assert all(q["correct_answer"] == "B" for q in originals)
    assert all("correct_answer" not in q for q in prepared["display_questions"])
    assert prepared["question_weights"] == {"0": 1, "1": 1}


def test_prepare_exam_carries_weights_by_original_position():
    raw = "1 (3 points). MCQ: a\nA) x\nB) y\nAnswer: A\n2 (5 points). Essay: b\n"
    exam = {"id": "e1", "questions": raw, "distribution": {"essay": 1}}

    prepared = prepare_exam(exam)

    assert prepared["question_weights"] == {"0": 5}
    assert prepared["original_questions"][0]["type"] == "essay"


def test_question_text_is_markdown_and_sanitized():
    html = str(render_question_text("**Bold** <script>alert(1)</script>"))

    assert "<strong>Bold</strong>" in html
    assert "<script>" not in html


def _render(exam, questions):
    app = Flask(__name__)
    with app.test_request_context("/"):
        return render_exam(exam, questions, {"save_url": "/s", "submit_url": "/x", "ocr_url": "/o"},
                           started_at_ms=1000, autosave_seconds=10, close_delay_ms=3000)


def test_rendered_page_embeds_aliases_and_no_answers():
    exam = {"id": "e1", "name": "Quiz", "duration": 15,
            "questions": "1. MCQ: Pick\nA) x\nB) y\nAnswer: B\n2. Short Answer: Why?\nAnswer: Because\n"}
    prepared = prepare_exam(exam)

    html = _render(exam, prepared["display_questions"])

    m = re.search(r"const PAGE = (\{.*?\});\n", html)
    page = json.loads(m.group(1))
    assert page["aliases"] == [["q0", "question-0", "0"], ["sa1", "q1", "question-1", "1"]]
    assert page["duration_seconds"] == 900
    assert page["warning_seconds"] == 600 and page["danger_seconds"] == 300
    assert page["autosave_ms"] == 10000
    assert 'name="q0" value="B"' in html
    assert 'name="sa1"' in html
    assert "Short Answer · 1 pt" in html
    assert "Because" not in html
    assert "unanswered or marked questions" in html
    assert "localStorage.setItem('completedExamId'" in html
    assert "examCompleted" in html
    assert "Connection issue, but your results are saved." in html


def test_error_page_shows_message():
    app = Flask(__name__)
    with app.test_request_context("/"):
        html = render_exam_error(None, "This exam was not found.")

    assert "This exam was not found." in html
    assert "const PAGE" not in html
