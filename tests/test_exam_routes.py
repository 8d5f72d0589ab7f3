import json
import random

import pytest
from flask import Flask

from exam import create_exam_blueprint
from store import (
    UPCOMING_EXAMS, PREVIOUS_EXAMS, EXAM_RESULTS, COMPLETED_EXAM_ID, LAST_EXAM_RESULTS, PENDING_SUBMISSIONS,
    exam_session_key,
)

GENERATED = (
    "1. MCQ: What is 2+2?\nA) 3\nB) 4\nC) 5\nD) 6\nAnswer: B\n\n"
    "2 (2 points). True/False: The sun is a star.\nAnswer: True\n\n"
    "3. Essay: Explain gravity.\nWord limit: 200 words\n"
)


def _evaluation_json():
    return json.dumps({
        "questionDetails": [
            {"isCorrect": True, "feedback": "ok", "marksObtained": 1, "totalMarks": 1},
            {"isCorrect": False, "feedback": "no", "marksObtained": 0, "totalMarks": 2},
            {"isCorrect": False, "feedback": "blank", "marksObtained": 0, "totalMarks": 1},
        ],
        "totalScore": 1, "totalPossible": 4, "percentage": 25,
    })


class Collaborators:
    def __init__(self):
        self.generate_ok = True
        self.evaluate_ok = True
        self.evaluate_failures = 0
        self.ocr_ok = True
        self.prompts = []

    def generate_text(self, task, prompt):
        self.prompts.append((task, prompt))
        if not self.generate_ok:
            return {"success": False, "error": "quota exceeded"}
        return {"success": True, "response": GENERATED}

    def evaluate_text(self, prompt):
        self.prompts.append(("evaluate_answer", prompt))
        if self.evaluate_failures:
            self.evaluate_failures -= 1
            return {"success": False, "error": "timeout"}
        if not self.evaluate_ok:
            return {"success": False, "error": "timeout"}
        return {"success": True, "response": "```json\n" + _evaluation_json() + "\n```"}

    def extract_text_from_image(self, image_base64):
        if not self.ocr_ok:
            return {"success": False, "error": "blurry"}
        return {"success": True, "text": "handwritten answer"}

    def extract_syllabus_topics(self, text):
        return {"success": True, "topics": ["Cells", "Genetics"]}


@pytest.fixture
def collab():
    return Collaborators()


@pytest.fixture
def client(store, channel, collab):
    app = Flask(__name__)
    app.testing = True
    clock = {"now": 1_000_000}
    app.register_blueprint(create_exam_blueprint("", {
        "get_store": lambda: store,
        "get_channel": lambda: channel,
        "generate_text": collab.generate_text,
        "evaluate_text": collab.evaluate_text,
        "extract_text_from_image": collab.extract_text_from_image,
        "extract_syllabus_topics": collab.extract_syllabus_topics,
        "now_ms": lambda: clock["now"],
        "rng": random.Random(0),
    }))
    return app.test_client()


def _generate(client, **extra):
    body = {"name": "Science", "topics": ["**Physics**", "Space"], "difficulty": "easy", "duration": 20}
    body.update(extra)
    # pre-serialized so the distribution keeps its key order
    resp = client.post("/exams/generate", data=json.dumps(body), content_type="application/json")
    assert resp.status_code == 200
    return resp.get_json()["exam"]


def test_generate_appends_upcoming_exam(client, store, collab):
    exam = _generate(client, distribution={"mcq": 1, "trueFalse": 1, "essay": 1})

    assert exam["topics"] == ["Physics", "Space"]
    assert exam["number_of_questions"] == 3
    assert exam["question_weights"] == {"0": 1, "1": 2, "2": 1}
    assert store.get(UPCOMING_EXAMS)[0]["id"] == exam["id"]
    task, prompt = collab.prompts[0]
    assert task == "generate_questions"
    assert "1 MCQ, 1 True/False, 1 Essay" in prompt


def test_generate_failure_is_reported(client, store, collab):
    collab.generate_ok = False

    resp = client.post("/exams/generate", json={"name": "X", "topics": ["Y"]})

    assert resp.status_code == 502
    assert "quota exceeded" in resp.get_json()["error"]
    assert store.get(UPCOMING_EXAMS) is None


def test_generate_requires_name_and_topics(client):
    resp = client.post("/exams/generate", json={"name": "", "topics": []})

    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False


def test_take_stores_originals_and_hides_answers(client, store):
    exam = _generate(client)

    resp = client.get(f"/exams/{exam['id']}/take")

    assert resp.status_code == 200
    html = resp.get_data(as_text=True)
    assert "What is 2+2?" in html
    assert "Answer: B" not in html
    session_state = store.get(exam_session_key(exam["id"]))
    assert session_state["started_at"] == 1_000_000
    assert [q["correct_answer"] for q in session_state["original_questions"]] == ["B", "True", None]


def test_take_unknown_exam_renders_error(client):
    resp = client.get("/exams/nope/take")

    assert resp.status_code == 404
    assert "not found" in resp.get_data(as_text=True)


def test_full_flow_submit_check_and_move(client, store, channel):
    exam = _generate(client)
    client.get(f"/exams/{exam['id']}/take")

    resp = client.post(f"/exams/{exam['id']}/submit", json={
        "examId": exam["id"],
        "answers": {"q0": "B", "tf1": "False", "question-1": {"value": "False", "type": "trueFalse"}},
        "startedAt": 1_000_000, "submittedAt": 1_125_000, "autoSubmit": False,
    })

    body = resp.get_json()
    assert body["ok"] is True and body["delivered"] is True
    assert body["time_taken"] == "2 minutes and 5 seconds"
    assert store.get(COMPLETED_EXAM_ID) == exam["id"]

    check = client.post("/exams/completed/check").get_json()

    result = check["result"]
    assert result["exam_id"] == exam["id"]
    assert result["percentage"] == 25
    assert result["question_stats"] == {"correct": 1, "incorrect": 1, "unattempted": 1, "total": 3}
    assert result["topic_performance"] == {"Physics": 25, "Space": 25}
    assert store.get(UPCOMING_EXAMS) == []
    assert store.get(PREVIOUS_EXAMS)[0]["id"] == exam["id"]
    assert store.get(COMPLETED_EXAM_ID) is None
    assert store.get(LAST_EXAM_RESULTS) is None
    assert len(store.get(EXAM_RESULTS)) == 1
    assert len(channel) == 0

    again = client.post("/exams/completed/check").get_json()
    assert again["result"] is None


def test_evaluation_failure_keeps_handoff_for_retry(client, store, collab):
    exam = _generate(client)
    client.get(f"/exams/{exam['id']}/take")
    client.post(f"/exams/{exam['id']}/submit", json={"answers": {"0": "B"}})
    collab.evaluate_ok = False

    resp = client.post("/exams/completed/check")

    assert resp.status_code == 502
    assert "check again" in resp.get_json()["error"]
    assert store.get(COMPLETED_EXAM_ID) == exam["id"]
    assert store.get(EXAM_RESULTS) is None

    collab.evaluate_ok = True
    retry = client.post("/exams/completed/check").get_json()
    assert retry["result"]["exam_id"] == exam["id"]


def test_browser_handoff_pair_is_accepted(client, store):
    exam = _generate(client)
    client.get(f"/exams/{exam['id']}/take")

    resp = client.post("/exams/completed/check", json={
        "completedExamId": exam["id"],
        "lastExamResults": json.dumps({"examId": exam["id"], "answers": {"sa2": "Mass attracts."},
                                       "startedAt": 1_000_000, "submittedAt": 1_010_000}),
    })

    result = resp.get_json()["result"]
    assert result["exam_id"] == exam["id"]
    assert result["answers"] == {"2": "Mass attracts."}


def test_save_draft_reports_progress(client, store):
    exam = _generate(client)
    client.get(f"/exams/{exam['id']}/take")

    resp = client.post(f"/exams/{exam['id']}/save", json={
        "answers": {"q0": "B"}, "statuses": ["answered", "marked", "not-visited"],
    })

    body = resp.get_json()
    assert body == {"ok": True, "answered": 1, "pending": 2, "progress_percent": 33.33}
    assert store.get(exam_session_key(exam["id"]))["draft"]["answers"] == {"0": "B"}


def test_ocr_success_and_failure(client, collab):
    ok = client.post("/exams/e1/ocr", json={"imageBase64": "aGVsbG8="}).get_json()
    assert ok == {"ok": True, "text": "handwritten answer"}

    collab.ocr_ok = False
    resp = client.post("/exams/e1/ocr", json={"imageBase64": "aGVsbG8="})
    assert resp.status_code == 502
    assert "clearer photo" in resp.get_json()["error"]

    missing = client.post("/exams/e1/ocr", json={})
    assert missing.status_code == 400


def test_syllabus_topics(client):
    resp = client.post("/exams/syllabus/topics", json={"syllabus": "Unit 1: Cells"})

    assert resp.get_json() == {"ok": True, "topics": ["Cells", "Genetics"]}


def test_delete_previous_exam_also_removes_result(client, store):
    exam = _generate(client)
    client.get(f"/exams/{exam['id']}/take")
    client.post(f"/exams/{exam['id']}/submit", json={"answers": {}})
    client.post("/exams/completed/check")
    assert len(store.get(EXAM_RESULTS)) == 1

    resp = client.delete(f"/exams/previous/{exam['id']}")

    assert resp.get_json()["ok"] is True
    assert store.get(PREVIOUS_EXAMS) == []
    assert store.get(EXAM_RESULTS) == []


def test_delete_upcoming_and_result_routes(client, store):
    exam = _generate(client)

    assert client.delete(f"/exams/{exam['id']}").get_json()["ok"] is True
    assert store.get(UPCOMING_EXAMS) == []
    assert client.delete(f"/exams/{exam['id']}").status_code == 404
    assert client.delete("/exams/results/missing").status_code == 404


def test_layout_and_list(client):
    exam = _generate(client)

    layout = client.get(f"/exams/{exam['id']}/layout")
    assert layout.mimetype == "text/markdown"
    assert layout.get_data(as_text=True).startswith("# Science")

    listing = client.get("/exams/").get_json()
    assert [e["id"] for e in listing["upcoming"]] == [exam["id"]]
    assert listing["previous"] == [] and listing["results"] == []


def test_failed_check_keeps_every_drained_submission(client, store, channel, collab):
    first, second = _generate(client), _generate(client)
    for exam in (first, second):
        client.get(f"/exams/{exam['id']}/take")
        client.post(f"/exams/{exam['id']}/submit", json={"answers": {"q0": "B"}})
    collab.evaluate_failures = 1

    resp = client.post("/exams/completed/check")

    assert resp.status_code == 502
    assert len(channel) == 0
    assert [s["exam_id"] for s in store.get(PENDING_SUBMISSIONS)] == [first["id"], second["id"]]
    assert store.get(EXAM_RESULTS) is None

    retry = client.post("/exams/completed/check").get_json()

    assert sorted(r["exam_id"] for r in retry["results"]) == sorted([first["id"], second["id"]])
    assert len(store.get(EXAM_RESULTS)) == 2
    assert store.get(PENDING_SUBMISSIONS) is None
    assert store.get(UPCOMING_EXAMS) == []


def test_submit_with_non_finite_start_time(client):
    exam = _generate(client)
    client.get(f"/exams/{exam['id']}/take")

    resp = client.post(f"/exams/{exam['id']}/submit", json={"answers": {}, "startedAt": "1e400"})
    assert resp.status_code == 200
    assert resp.get_json()["time_taken"] == "0 minutes and 0 seconds"

    resp = client.post(f"/exams/{exam['id']}/submit", data='{"answers": {}, "startedAt": Infinity}',
                       content_type="application/json")
    assert resp.status_code == 200
    assert resp.get_json()["time_taken"] == "0 minutes and 0 seconds"
