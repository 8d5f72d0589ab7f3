# exam.py
# -----------------------------------------------------------------------------
# Exam blueprint: generate -> take -> submit -> host check -> evaluate.
# - Exams/results live in the per-browser KVStore (upcomingExams, previousExams, examResults)
# - Taking an exam stores its un-stripped questions server-side (examSession:<id>)
# - Submit = durable handoff pair + best-effort channel message
# - Host check evaluates once per exam, appends the result, moves the exam to previous
# -----------------------------------------------------------------------------

import os, json, uuid, time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, List, Callable

from flask import Blueprint, request, jsonify, url_for, Response

from ai_service import TASK_GENERATE, build_generation_prompt
from answer_key import extract_question_weights
from evaluation import build_evaluation_prompt, map_evaluation, save_result, delete_result
from exam_parser import QUESTION_TYPES, UNKNOWN, parse_questions, format_exam_with_layout
from exam_renderer import prepare_exam, render_exam, render_exam_error, normalize_statuses, pending_count
from reconcile import (
    reconcile, reconcile_answers, deliver_submission,
    DELIVERED_MESSAGE, SOFT_DELIVERY_MESSAGE,
)
from store import (
    UPCOMING_EXAMS, PREVIOUS_EXAMS, EXAM_RESULTS, COMPLETED_EXAM_ID, LAST_EXAM_RESULTS, PENDING_SUBMISSIONS,
    EXAM_COMPLETED, exam_session_key,
)


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path + "/exams".
    Required deps: get_store, generate_text, evaluate_text, extract_text_from_image, extract_syllabus_topics
    Optional deps: get_channel, now_ms, rng
    """
    url_prefix = (base_path or "").rstrip("/") + "/exams"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    get_store: Callable = deps["get_store"]
    generate_text: Callable = deps["generate_text"]
    evaluate_text: Callable = deps["evaluate_text"]
    extract_text_from_image: Callable = deps["extract_text_from_image"]
    extract_syllabus_topics: Callable = deps["extract_syllabus_topics"]

    # ---- Optional deps -------------------------------------------------------
    get_channel: Callable = deps.get("get_channel") or (lambda: None)
    now_ms: Callable = deps.get("now_ms") or (lambda: int(time.time() * 1000))
    rng = deps.get("rng")

    # ---- Config --------------------------------------------------------------
    DEFAULT_DURATION_MIN = int(os.getenv("EXAM_DEFAULT_DURATION_MIN") or 60)
    DEFAULT_Q_COUNT = int(os.getenv("EXAM_DEFAULT_QUESTION_COUNT") or 10)
    AUTOSAVE_SECONDS = int(os.getenv("EXAM_AUTOSAVE_SECONDS") or 10)
    CLOSE_DELAY_MS = int(os.getenv("EXAM_CLOSE_DELAY_MS") or 3000)

    # ------------------------------- helpers ----------------------------------
    def _error(msg: str, status: int):
        return jsonify({"ok": False, "error": msg}), status

    def _json_body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _find(items: List[Dict[str, Any]], exam_id: str) -> Optional[Dict[str, Any]]:
        for e in items or []:
            if str(e.get("id")) == str(exam_id):
                return e
        return None

    def _find_exam(store, exam_id: str) -> Optional[Dict[str, Any]]:
        return _find(store.get(UPCOMING_EXAMS, []), exam_id) or _find(store.get(PREVIOUS_EXAMS, []), exam_id)

    def _topics(raw: Any) -> List[str]:
        if isinstance(raw, str):
            raw = raw.split(",")
        if not isinstance(raw, list):
            return []
        return [str(t).replace("**", "").strip() for t in raw if str(t).replace("**", "").strip()]

    def _distribution(raw: Any) -> Dict[str, int]:
        out: Dict[str, int] = {}
        if not isinstance(raw, dict):
            return out
        for qtype, n in raw.items():
            if qtype not in QUESTION_TYPES or qtype == UNKNOWN:
                continue
            try:
                n = int(n)
            except (TypeError, ValueError):
                continue
            if n > 0:
                out[qtype] = n
        return out

    def _int(value: Any, default: int) -> int:
        try:
            n = int(value)
        except (TypeError, ValueError):
            return default
        return n if n > 0 else default

    def _submission_from_payload(store, exam_id: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Reconcile raw page answers against the stored pre-render questions."""
        session_state = store.get(exam_session_key(exam_id))
        if not session_state:
            return None
        exam = _find_exam(store, exam_id) or {"id": exam_id}
        return reconcile(
            payload.get("answers") or {},
            session_state.get("original_questions") or [],
            exam=exam,
            started_at=payload.get("startedAt") or session_state.get("started_at"),
            submitted_at=payload.get("submittedAt") or now_ms(),
            question_weights=session_state.get("question_weights"),
            auto_submit=bool(payload.get("autoSubmit")),
        )

    def _move_to_previous(store, exam_id: str):
        upcoming = list(store.get(UPCOMING_EXAMS, []) or [])
        exam = _find(upcoming, exam_id)
        if not exam:
            return
        store.set(UPCOMING_EXAMS, [e for e in upcoming if str(e.get("id")) != str(exam_id)])
        previous = list(store.get(PREVIOUS_EXAMS, []) or [])
        if not _find(previous, exam_id):
            previous.append(exam)
            store.set(PREVIOUS_EXAMS, previous)

    def _pending_submissions(store) -> List[Dict[str, Any]]:
        """
        Submissions left over from a failed check first, then channel messages,
        then the durable handoff pair, then the browser's localStorage pair.
        """
        pending: List[Dict[str, Any]] = [
            sub for sub in (store.get(PENDING_SUBMISSIONS, []) or []) if isinstance(sub, dict)
        ]
        channel = get_channel()
        if channel is not None:
            for msg in channel.receive(EXAM_COMPLETED):
                data = (msg.payload or {}).get("exam_data")
                if isinstance(data, dict):
                    pending.append(data)

        if store.get(COMPLETED_EXAM_ID):
            data = store.get(LAST_EXAM_RESULTS)
            if isinstance(data, dict):
                pending.append(data)

        body = _json_body()
        browser_id = body.get("completedExamId")
        browser_payload = body.get("lastExamResults")
        if isinstance(browser_payload, str):
            try:
                browser_payload = json.loads(browser_payload)
            except ValueError:
                browser_payload = None
        if browser_id and isinstance(browser_payload, dict):
            sub = _submission_from_payload(store, str(browser_id), browser_payload)
            if sub:
                pending.append(sub)

        unique: Dict[str, Dict[str, Any]] = {}
        for sub in pending:
            key = str(sub.get("exam_id"))
            if key not in unique:
                unique[key] = sub
        return list(unique.values())

    # ------------------------------- routes -----------------------------------
    @bp.get("/")
    def exam_list():
        store = get_store()
        return jsonify({
            "ok": True,
            "upcoming": store.get(UPCOMING_EXAMS, []),
            "previous": store.get(PREVIOUS_EXAMS, []),
            "results": store.get(EXAM_RESULTS, []),
        })

    @bp.post("/syllabus/topics")
    def syllabus_topics():
        data = _json_body()
        syllabus = str(data.get("syllabus") or "").strip()
        if not syllabus:
            return _error("No syllabus text received. Paste or upload your syllabus and try again.", 400)
        res = extract_syllabus_topics(syllabus)
        if not res.get("success"):
            return _error(f"Topic extraction failed: {res.get('error') or 'unknown error'}. "
                          "Try again, or enter the topics by hand.", 502)
        return jsonify({"ok": True, "topics": res.get("topics") or []})

    @bp.post("/generate")
    def exam_generate():
        data = _json_body()
        name = str(data.get("name") or "").strip()
        topics = _topics(data.get("topics"))
        if not name or not topics:
            return _error("An exam name and at least one topic are required.", 400)

        distribution = _distribution(data.get("distribution"))
        number = sum(distribution.values()) if distribution else _int(data.get("numberOfQuestions"), DEFAULT_Q_COUNT)
        difficulty = str(data.get("difficulty") or "medium")
        prompt = build_generation_prompt(
            topics, number, difficulty,
            distribution=distribution or None,
            syllabus=(str(data.get("syllabus") or "").strip() or None),
            include_weights=bool(data.get("includeWeights")),
        )
        res = generate_text(TASK_GENERATE, prompt)
        if not res.get("success") or not res.get("response"):
            print(f"[exam] generation failed: {res.get('error')}", flush=True)
            return _error(f"Exam generation failed: {res.get('error') or 'empty response'}. "
                          "Please try again in a moment.", 502)

        raw = res["response"]
        parsed = parse_questions(raw)
        if not parsed:
            return _error("The generated exam could not be read. Please generate it again.", 502)

        weights = extract_question_weights(parsed, raw, data.get("questionWeights"))
        exam = {
            "id": str(uuid.uuid4()),
            "name": name,
            "date": str(data.get("date") or datetime.now(timezone.utc).date().isoformat()),
            "time": str(data.get("time") or ""),
            "duration": _int(data.get("duration"), DEFAULT_DURATION_MIN),
            "number_of_questions": number,
            "topics": topics,
            "difficulty": difficulty,
            "question_types": list(distribution.keys()) or sorted({q["type"] for q in parsed}),
            "distribution": distribution,
            "questions": raw,
            "question_weights": {str(i): w for i, w in weights.items()},
            "created_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        store = get_store()
        upcoming = list(store.get(UPCOMING_EXAMS, []) or [])
        upcoming.append(exam)
        store.set(UPCOMING_EXAMS, upcoming)
        print(f"[exam] generated {exam['id']} with {len(parsed)} question(s)")
        return jsonify({"ok": True, "exam": exam})

    @bp.get("/<exam_id>/layout")
    def exam_layout(exam_id: str):
        exam = _find_exam(get_store(), exam_id)
        if not exam:
            return _error("Exam not found. It may have been deleted.", 404)
        return Response(format_exam_with_layout(exam), mimetype="text/markdown")

    @bp.get("/<exam_id>/take")
    def exam_take(exam_id: str):
        store = get_store()
        exam = _find(store.get(UPCOMING_EXAMS, []), exam_id)
        if not exam:
            return render_exam_error(None, "This exam was not found. It may have been deleted or already completed."), 404
        prepared = prepare_exam(exam, rng=rng)
        if not prepared["display_questions"]:
            return render_exam_error(exam, "No questions could be read from this exam. "
                                           "Delete it and generate a new one."), 422

        started = now_ms()
        store.set(exam_session_key(exam_id), {
            "started_at": started,
            "original_questions": prepared["original_questions"],
            "question_weights": prepared["question_weights"],
        })
        urls = {
            "save_url": url_for(f"{bp.name}.exam_save", exam_id=exam_id),
            "submit_url": url_for(f"{bp.name}.exam_submit", exam_id=exam_id),
            "ocr_url": url_for(f"{bp.name}.exam_ocr", exam_id=exam_id),
        }
        return render_exam(exam, prepared["display_questions"], urls, started,
                           autosave_seconds=AUTOSAVE_SECONDS, close_delay_ms=CLOSE_DELAY_MS)

    @bp.post("/<exam_id>/save")
    def exam_save(exam_id: str):
        store = get_store()
        session_state = store.get(exam_session_key(exam_id))
        if not session_state:
            return _error("No exam in progress. Reopen the exam to continue.", 404)
        data = _json_body()
        count = len(session_state.get("original_questions") or [])
        answers = reconcile_answers(data.get("answers") or {}, count)
        statuses = normalize_statuses(data.get("statuses"), answers, count)
        session_state["draft"] = {"answers": answers, "statuses": statuses, "saved_at": now_ms()}
        store.set(exam_session_key(exam_id), session_state)
        progress = round(100.0 * len(answers) / count, 2) if count else 0.0
        return jsonify({"ok": True, "answered": len(answers), "pending": pending_count(statuses),
                        "progress_percent": progress})

    @bp.post("/<exam_id>/ocr")
    def exam_ocr(exam_id: str):
        data = _json_body()
        image = str(data.get("imageBase64") or "").strip()
        if not image:
            return _error("No image received. Choose a photo of your answer and try again.", 400)
        res = extract_text_from_image(image)
        if not res.get("success"):
            print(f"[exam] ocr failed for {exam_id}: {res.get('error')}")
            return _error("Could not read text from the image. Try a clearer photo or type your answer.", 502)
        return jsonify({"ok": True, "text": res.get("text") or ""})

    @bp.post("/<exam_id>/submit")
    def exam_submit(exam_id: str):
        store = get_store()
        data = _json_body()
        submission = _submission_from_payload(store, exam_id, data)
        if submission is None:
            return _error("This exam session was not found. Reopen the exam and submit again.", 404)
        delivered = deliver_submission(submission, store, get_channel())
        return jsonify({
            "ok": True,
            "delivered": delivered,
            "time_taken": submission["time_taken"],
            "message": DELIVERED_MESSAGE if delivered else SOFT_DELIVERY_MESSAGE,
        })

    @bp.post("/completed/check")
    def exam_completed_check():
        store = get_store()
        pending = _pending_submissions(store)
        if not pending:
            return jsonify({"ok": True, "result": None, "results": []})

        existing = {str(r.get("exam_id")): r for r in (store.get(EXAM_RESULTS, []) or [])}
        results: List[Dict[str, Any]] = []
        for pos, submission in enumerate(pending):
            exam_id = str(submission.get("exam_id"))
            if exam_id in existing:
                results.append(existing[exam_id])
                continue
            res = evaluate_text(build_evaluation_prompt(submission))
            if not res.get("success"):
                # channel messages are already drained; everything not yet graded goes back to the store
                store.set(PENDING_SUBMISSIONS, pending[pos:])
                store.set(LAST_EXAM_RESULTS, submission)
                store.set(COMPLETED_EXAM_ID, submission.get("exam_id"))
                print(f"[exam] evaluation failed for {exam_id}: {res.get('error')}", flush=True)
                return _error(f"Evaluation failed: {res.get('error') or 'no response'}. "
                              "Your answers are saved; check again to retry.", 502)
            result = map_evaluation(res.get("response"), submission)
            save_result(store, result)
            _move_to_previous(store, exam_id)
            store.remove(exam_session_key(exam_id))
            results.append(result)

        store.remove(PENDING_SUBMISSIONS)
        store.remove(COMPLETED_EXAM_ID)
        store.remove(LAST_EXAM_RESULTS)
        return jsonify({"ok": True, "result": results[-1], "results": results})

    @bp.delete("/<exam_id>")
    def exam_delete_upcoming(exam_id: str):
        store = get_store()
        upcoming = list(store.get(UPCOMING_EXAMS, []) or [])
        kept = [e for e in upcoming if str(e.get("id")) != str(exam_id)]
        if len(kept) == len(upcoming):
            return _error("Exam not found. It may already have been deleted.", 404)
        store.set(UPCOMING_EXAMS, kept)
        store.remove(exam_session_key(exam_id))
        return jsonify({"ok": True})

    @bp.delete("/previous/<exam_id>")
    def exam_delete_previous(exam_id: str):
        store = get_store()
        previous = list(store.get(PREVIOUS_EXAMS, []) or [])
        kept = [e for e in previous if str(e.get("id")) != str(exam_id)]
        if len(kept) == len(previous):
            return _error("Exam not found. It may already have been deleted.", 404)
        store.set(PREVIOUS_EXAMS, kept)
        delete_result(store, exam_id)
        return jsonify({"ok": True})

    @bp.delete("/results/<exam_id>")
    def exam_delete_result(exam_id: str):
        if not delete_result(get_store(), exam_id):
            return _error("Result not found. It may already have been deleted.", 404)
        return jsonify({"ok": True})

    return bp
