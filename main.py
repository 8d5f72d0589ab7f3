# main.py: exam forge app, BASE_PATH-aware (psycopg3 + pooling)
# State is per browser: a random id in the signed session cookie namespaces every stored key.

import os
import re
import uuid
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from collections import OrderedDict
from typing import Optional

from flask import Flask, jsonify, session

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row

import ai_service
from exam import create_exam_blueprint
from store import KVStore, MessageChannel

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# DB configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name


def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # SQLAlchemy-style driver suffixes are accepted and dropped
    url = re.sub(r"^postgres(?:ql)?\+psycopg2?://", "postgresql://", url)
    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = (qs.get("host") or [p.hostname])[0]
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
    }
    if host:
        kwargs["host"] = host
    if p.port and not str(host or "").startswith("/"):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs


def _connection_kwargs() -> dict:
    if DATABASE_URL:
        try:
            return _parse_database_url(DATABASE_URL)
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}")
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("Set DATABASE_URL, or DB_NAME, DB_USER, DB_PASS for TCP mode.")
    return {
        "host": DB_HOST or "127.0.0.1",
        "port": int(DB_PORT or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
    }


# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    kwargs = _connection_kwargs()
    print(f"[DB] exam state store at {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}")
    _pg_pool = ConnectionPool(conninfo=make_conninfo(**kwargs), min_size=1, max_size=6, open=True)


@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn


def fetch_one(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchone()


def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(q, params or ())
        conn.commit()


# =============================================================================
# Per-browser state
# =============================================================================
# Least recently used channels are evicted; submissions also live in the durable handoff pair.
MAX_CHANNELS = int(os.getenv("EXAM_MAX_CHANNELS") or 1000)
_channels: "OrderedDict[str, MessageChannel]" = OrderedDict()


def browser_id() -> str:
    bid = session.get("browser_id")
    if not bid:
        bid = uuid.uuid4().hex
        session["browser_id"] = bid
        session.permanent = True
    return bid


def current_store() -> KVStore:
    return KVStore(fetch_one, execute, browser_id())


def channel_for(bid: str) -> MessageChannel:
    channel = _channels.pop(bid, None)
    if channel is None:
        channel = MessageChannel()
    _channels[bid] = channel
    while len(_channels) > MAX_CHANNELS:
        _channels.popitem(last=False)
    return channel


def current_channel() -> MessageChannel:
    return channel_for(browser_id())


# =============================================================================
# Routes & blueprints
# =============================================================================
@app.get(BASE_PATH + "/healthz" if BASE_PATH else "/healthz")
def healthz():
    try:
        fetch_one("SELECT 1 AS ok;")
        db_ok = True
    except Exception as e:
        print(f"[DB] health check failed: {e}")
        db_ok = False
    return jsonify({"ok": db_ok, "db": db_ok, "base_path": BASE_PATH or "/"}), (200 if db_ok else 503)


exam_bp = create_exam_blueprint(BASE_PATH, {
    "get_store": current_store,
    "get_channel": current_channel,
    "generate_text": ai_service.generate_text,
    "evaluate_text": ai_service.evaluate_text,
    "extract_text_from_image": ai_service.extract_text_from_image,
    "extract_syllabus_topics": ai_service.extract_syllabus_topics,
})
app.register_blueprint(exam_bp)

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
