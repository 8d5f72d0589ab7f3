# store.py
# -----------------------------------------------------------------------------
# Durable per-browser key/value state + one-way message channel.
# - KVStore: get/set/remove over public.exam_state (jsonb values), lazy DDL
# - MessageChannel: fire-and-forget typed messages, drained by the host side
# -----------------------------------------------------------------------------

import json
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

# Persisted key layout
UPCOMING_EXAMS = "upcomingExams"
PREVIOUS_EXAMS = "previousExams"
EXAM_RESULTS = "examResults"
COMPLETED_EXAM_ID = "completedExamId"
LAST_EXAM_RESULTS = "lastExamResults"
PENDING_SUBMISSIONS = "pendingSubmissions"

EXAM_COMPLETED = "examCompleted"


def exam_session_key(exam_id: str) -> str:
    return f"examSession:{exam_id}"


class KVStore:
    """
    Narrow get/set/remove store for one namespace (one browser).
    Required callables follow main.py's helpers: fetch_one(sql, params), execute(sql, params).
    """

    def __init__(self, fetch_one: Callable, execute: Callable, namespace: str):
        self._fetch_one = fetch_one
        self._execute = execute
        self.namespace = str(namespace)
        self._ready = False

    def _ensure_table(self):
        if self._ready:
            return
        self._execute("""
            CREATE TABLE IF NOT EXISTS public.exam_state (
                namespace  TEXT NOT NULL,
                key        TEXT NOT NULL,
                value      JSONB,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                PRIMARY KEY (namespace, key)
            );
        """, ())
        self._ready = True

    def get(self, key: str, default: Any = None) -> Any:
        self._ensure_table()
        row = self._fetch_one("""
            SELECT value
              FROM public.exam_state
             WHERE namespace = %s AND key = %s;
        """, (self.namespace, key))
        if not row:
            return default
        # jsonb comes back decoded from psycopg; a str here is a stored JSON string
        value = row.get("value")
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        self._ensure_table()
        self._execute("""
            INSERT INTO public.exam_state (namespace, key, value, updated_at)
            VALUES (%s, %s, %s::jsonb, now())
            ON CONFLICT (namespace, key)
            DO UPDATE SET value = EXCLUDED.value, updated_at = now();
        """, (self.namespace, key, json.dumps(value, ensure_ascii=False)))

    def remove(self, key: str) -> None:
        self._ensure_table()
        self._execute("""
            DELETE FROM public.exam_state
             WHERE namespace = %s AND key = %s;
        """, (self.namespace, key))


@dataclass
class ChannelMessage:
    type: str
    payload: Dict[str, Any]
    sent_at: float = field(default_factory=time.time)


class MessageChannel:
    """In-process one-way channel. No acknowledgement; receivers drain what is queued."""

    def __init__(self, maxlen: int = 100):
        self._queue: Deque[ChannelMessage] = deque(maxlen=maxlen)

    def send(self, message_type: str, payload: Dict[str, Any]) -> ChannelMessage:
        msg = ChannelMessage(type=message_type, payload=dict(payload or {}))
        self._queue.append(msg)
        return msg

    def receive(self, message_type: Optional[str] = None) -> List[ChannelMessage]:
        taken: List[ChannelMessage] = []
        kept: Deque[ChannelMessage] = deque(maxlen=self._queue.maxlen)
        while self._queue:
            msg = self._queue.popleft()
            if message_type is None or msg.type == message_type:
                taken.append(msg)
            else:
                kept.append(msg)
        self._queue = kept
        return taken

    def __len__(self) -> int:
        return len(self._queue)
