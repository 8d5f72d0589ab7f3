import pytest
import requests

import ai_service


class FakeResponse:
    def __init__(self, content, status=200):
        self.content = content
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return {"choices": [{"message": {"content": self.content}}]}


@pytest.fixture
def calls(monkeypatch):
    seen = []
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OPENAI_GRADER_MODEL", "grader-x")

    def fake_post(url, headers=None, json=None, timeout=None):
        seen.append({"url": url, "headers": headers, "json": json})
        return FakeResponse(seen_reply[0])

    seen_reply = ["  1. MCQ: ok  "]
    monkeypatch.setattr(ai_service.requests, "post", fake_post)
    return seen, seen_reply


def test_generate_text_wraps_response(calls):
    seen, _ = calls

    res = ai_service.generate_text(ai_service.TASK_GENERATE, "make questions")

    assert res == {"success": True, "response": "1. MCQ: ok"}
    body = seen[0]["json"]
    assert body["messages"][0]["role"] == "system"
    assert body["messages"][1]["content"] == "make questions"
    assert seen[0]["headers"]["Authorization"] == "Bearer sk-test"


def test_evaluation_uses_grader_model(calls):
    seen, _ = calls

    ai_service.evaluate_text("grade")

    assert seen[0]["json"]["model"] == "grader-x"
    assert seen[0]["json"]["temperature"] == 0.0


def test_missing_key_is_reported_not_raised(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    res = ai_service.generate_text(ai_service.TASK_GENERATE, "x")

    assert res["success"] is False
    assert "OPENAI_API_KEY" in res["error"]


def test_http_error_is_reported(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(ai_service.requests, "post", lambda *a, **k: FakeResponse("", status=429))

    res = ai_service.extract_text_from_image("aGVsbG8=")

    assert res["success"] is False
    assert "429" in res["error"]


def test_ocr_sends_data_url(calls):
    seen, reply = calls
    reply[0] = "my answer"

    res = ai_service.extract_text_from_image("aGVsbG8=")

    assert res == {"success": True, "text": "my answer"}
    content = seen[0]["json"]["messages"][0]["content"]
    assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,aGVsbG8="


def test_clean_topics_drops_headings_and_duplicates():
    raw = "**Main Topics:**\n- Cell Biology\n- Genetics, Evolution\n2. genetics\nChapter 4\n#"

    assert ai_service.clean_topics(raw) == ["Cell Biology", "Genetics", "Evolution"]


def test_syllabus_topics_use_cleaned_reply(calls):
    _, reply = calls
    reply[0] = "Topics:\n1. Algebra\n2. Geometry"

    assert ai_service.extract_syllabus_topics("Unit 1 ...") == {"success": True, "topics": ["Algebra", "Geometry"]}
    assert ai_service.extract_syllabus_topics("  ")["success"] is False


def test_generation_prompt_lists_distribution_and_weights():
    prompt = ai_service.build_generation_prompt(["Cells"], 3, "hard", distribution={"mcq": 2, "essay": 1},
                                                include_weights=True)

    assert "Generate 3 exam questions" in prompt
    assert "Question types: 2 MCQ, 1 Essay." in prompt
    assert "Difficulty level: hard." in prompt
    assert "(2 points)" in prompt
