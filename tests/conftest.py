import json
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from store import KVStore, MessageChannel  # noqa: E402


class FakeDB:
    """Emulates public.exam_state through the fetch_one / execute callables."""

    def __init__(self):
        self.rows = {}
        self.executed = []

    def fetch_one(self, sql, params=()):
        if "FROM public.exam_state" in sql:
            namespace, key = params
            if (namespace, key) not in self.rows:
                return None
            return {"value": json.loads(self.rows[(namespace, key)])}
        return None

    def execute(self, sql, params=()):
        self.executed.append((sql, params))
        if "INSERT INTO public.exam_state" in sql:
            namespace, key, value = params
            self.rows[(namespace, key)] = value
        elif "DELETE FROM public.exam_state" in sql:
            self.rows.pop(tuple(params), None)


@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture
def store(fake_db):
    return KVStore(fake_db.fetch_one, fake_db.execute, "browser-1")


@pytest.fixture
def channel():
    return MessageChannel()


@pytest.fixture
def mcq_exam_text():
    return (
        "1. MCQ: What is 2+2?\n"
        "A) 3\n"
        "B) 4\n"
        "C) 5\n"
        "D) 6\n"
        "Answer: B\n"
        "\n"
        "2. True/False: The sun is a star.\n"
        "Answer: True\n"
        "\n"
        "3. Short Answer: Define photosynthesis. (2 points)\n"
        "Expected length: 2-3 sentences\n"
        "Sample Answer: Plants turn light into chemical energy.\n"
        "\n"
        "4. Essay: Discuss the causes of the French Revolution.\n"
        "Word limit: 500 words\n"
        "Grading criteria: depth, structure\n"
        "and evidence.\n"
    )
