# exam_renderer.py
# -----------------------------------------------------------------------------
# Exam-taking page: one question at a time, palette + status chips, countdown
# timer with auto-submit, alias-keyed autosave, handwriting OCR assist and
# the submit handoff (localStorage pair + opener message + server POST).
# Correct answers never reach the page; the un-stripped originals stay server-side.
# -----------------------------------------------------------------------------

import random
from functools import lru_cache
from typing import Any, Dict, List, Optional

import bleach
import markdown
from flask import render_template, render_template_string
from jinja2 import TemplateNotFound
from markupsafe import Markup, escape

from answer_key import extract_question_weights, fill_correct_answers, natural_key, write_aliases
from distribution import select_questions
from exam_parser import MCQ, TRUE_FALSE, ESSAY, TYPE_LABELS, parse_questions

# ---- question state machine -------------------------------------------------
NOT_VISITED = "not-visited"
UNANSWERED = "unanswered"
ANSWERED = "answered"
MARKED = "marked"
STATUSES = (NOT_VISITED, UNANSWERED, ANSWERED, MARKED)

EVENT_VISIT = "visit"
EVENT_ANSWER = "answer"
EVENT_MARK = "mark"

WARNING_SECONDS = 10 * 60
DANGER_SECONDS = 5 * 60


def _filled(value: Any) -> bool:
    return bool(str(value or "").strip())


def next_status(current: str, event: str, value: Any = "") -> str:
    """
    visit:  not-visited -> unanswered
    answer: unanswered <-> answered by non-empty value; a marked question stays marked
    mark:   toggles marked; un-marking always returns to unanswered
    """
    if current not in STATUSES:
        current = NOT_VISITED
    if event == EVENT_VISIT:
        return UNANSWERED if current == NOT_VISITED else current
    if event == EVENT_ANSWER:
        if current == MARKED:
            return MARKED
        return ANSWERED if _filled(value) else UNANSWERED
    if event == EVENT_MARK:
        if current == MARKED:
            return UNANSWERED
        return MARKED
    return current


def pending_count(statuses: List[str]) -> int:
    return sum(1 for s in statuses or [] if s != ANSWERED)


def submit_confirmation(statuses: List[str]) -> Optional[str]:
    n = pending_count(statuses)
    if not n:
        return None
    return f"You have {n} unanswered or marked questions. Are you sure you want to submit?"


def normalize_statuses(raw: Any, answers: Dict[str, str], count: int) -> List[str]:
    """Server-side mirror of the page's statuses, re-derived from the reconciled answers."""
    raw = raw if isinstance(raw, list) else []
    out = []
    for i in range(count):
        s = raw[i] if i < len(raw) and raw[i] in STATUSES else NOT_VISITED
        if s != MARKED:
            if _filled(answers.get(str(i))):
                s = ANSWERED
            elif s == ANSWERED:
                s = UNANSWERED
        out.append(s)
    return out


# ---- preparation --------------------------------------------------------------
def strip_answers(questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for q in questions or []:
        q2 = {k: v for k, v in q.items() if k != "correct_answer"}
        out.append(q2)
    return out


def prepare_exam(exam: Dict[str, Any], rng: Optional[random.Random] = None) -> Dict[str, Any]:
    """
    Parse -> weight -> (optional) distribution -> strip.
    Weights are attached by position before selection so they travel with each question.
    """
    raw = exam.get("questions")
    raw_text = raw if isinstance(raw, str) else None
    parsed = fill_correct_answers(parse_questions(raw), raw_text)
    weights = extract_question_weights(parsed, raw_text, exam.get("question_weights"))
    for i, q in enumerate(parsed):
        q["weight"] = weights[i]

    selected = select_questions(parsed, exam.get("distribution"), rng=rng)
    return {
        "original_questions": selected,
        "display_questions": strip_answers(selected),
        "question_weights": {str(i): q.get("weight", 1) for i, q in enumerate(selected)},
    }


# ---- rich text ----------------------------------------------------------------
BLEACH_ALLOWED_TAGS = [
    "a", "b", "blockquote", "br", "code", "em", "i", "li", "ol", "p", "pre", "strong", "ul",
    "h3", "h4", "h5", "h6", "hr", "span", "sub", "sup", "table", "thead", "tbody", "tr", "th", "td",
]
BLEACH_ALLOWED_ATTRS = {"*": ["class"], "a": ["href", "title", "rel", "target"]}
BLEACH_ALLOWED_PROTOCOLS = ["http", "https", "mailto"]


@lru_cache(maxsize=512)
def _render_rich_cached(text: str) -> str:
    html = markdown.markdown(text, extensions=["fenced_code", "tables", "sane_lists"], output_format="html5")
    return bleach.clean(
        html,
        tags=BLEACH_ALLOWED_TAGS,
        attributes=BLEACH_ALLOWED_ATTRS,
        protocols=BLEACH_ALLOWED_PROTOCOLS,
        strip=True,
    )


def render_question_text(text: Optional[str]) -> Markup:
    if not text:
        return Markup("")
    return Markup(_render_rich_cached(str(text)))


def _page_questions(questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for i, q in enumerate(questions):
        qtype = q.get("type") or "unknown"
        options = []
        if qtype == MCQ:
            for opt in q.get("options") or []:
                letter = opt[:1]
                label = opt[2:].strip() if opt[1:2] == ")" else opt
                options.append({"value": letter, "letter": letter, "label": label})
        elif qtype == TRUE_FALSE:
            options = [{"value": o, "letter": "", "label": o} for o in (q.get("options") or [])]
        out.append({
            "index": i,
            "type": qtype,
            "type_label": TYPE_LABELS.get(qtype, "Question"),
            "html": render_question_text(q.get("text")),
            "weight": q.get("weight", 1),
            "options": options,
            "input_name": natural_key(i, qtype),
            "aliases": write_aliases(i, qtype),
        })
    return out


def render_exam(exam: Dict[str, Any],
                display_questions: List[Dict[str, Any]],
                urls: Dict[str, str],
                started_at_ms: int,
                autosave_seconds: int = 10,
                close_delay_ms: int = 3000,
                error_msg: Optional[str] = None):
    """Try templates/take_exam.html first; else the inline page below."""
    questions = _page_questions(display_questions or [])
    try:
        duration_min = max(1, int(exam.get("duration") or 60))
    except (TypeError, ValueError):
        duration_min = 60
    page = {
        "exam_id": exam.get("id"),
        "question_count": len(questions),
        "aliases": [q["aliases"] for q in questions],
        "types": [q["type"] for q in questions],
        "duration_seconds": duration_min * 60,
        "warning_seconds": WARNING_SECONDS,
        "danger_seconds": DANGER_SECONDS,
        "started_at": int(started_at_ms),
        "autosave_ms": int(autosave_seconds) * 1000,
        "close_delay_ms": int(close_delay_ms),
        "save_url": urls.get("save_url") or "",
        "submit_url": urls.get("submit_url") or "",
        "ocr_url": urls.get("ocr_url") or "",
    }
    context = {
        "exam": exam,
        "questions": questions,
        "page": page,
        "duration_min": duration_min,
        "error_msg": error_msg,
    }
    try:
        return render_template("take_exam.html", **context)
    except TemplateNotFound:
        return render_template_string(_INLINE_PAGE, **context)


def render_exam_error(exam: Optional[Dict[str, Any]], msg: str):
    return render_exam(exam or {"name": "Exam"}, [], {}, started_at_ms=0, error_msg=msg)


_INLINE_PAGE = """
<!doctype html><html><head><meta charset="utf-8"/>
<title>{{ exam.name or 'Exam' }} · Exam</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>
  :root{--ink:#111827;--muted:#6b7280;--line:#e5e7eb}
  body{font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif;margin:0;line-height:1.55;color:var(--ink)}
  .exam-layout{display:grid;grid-template-columns:260px 1fr;min-height:100vh}
  .exam-sidebar{border-right:1px solid var(--line);background:#fff;padding:18px}
  .exam-content{padding:24px;max-width:900px}
  .card{border:1px solid var(--line);border-radius:10px;padding:14px;margin:12px 0;background:#fff}
  .btn{display:inline-block;padding:10px 16px;border-radius:8px;background:#111827;color:#fff;border:0;cursor:pointer;font:inherit}
  .btn.ghost{background:#fff;color:#111827;border:1px solid #111827}
  .btn[disabled]{opacity:.4;cursor:not-allowed}
  .muted{color:var(--muted);font-size:12px}
  textarea{width:100%;box-sizing:border-box;font:inherit}
  .timer{font-variant-numeric:tabular-nums;font-weight:700;font-size:20px;padding:6px 10px;border-radius:8px;border:1px solid var(--line);display:inline-block}
  .timer.warning{border-color:#f59e0b;color:#92400e;background:#fffbeb}
  .timer.danger{border-color:#ef4444;color:#991b1b;background:#fef2f2}
  .palette{display:grid;grid-template-columns:repeat(5,1fr);gap:6px;margin:14px 0}
  .qnum{border:1px solid #d1d5db;border-radius:8px;padding:6px 0;text-align:center;background:#f9fafb;cursor:pointer;font:inherit}
  .qnum.unanswered{border-color:#ef4444;background:#fef2f2;color:#991b1b}
  .qnum.answered{border-color:#10b981;background:#ecfdf5;color:#065f46}
  .qnum.marked{border-color:#8b5cf6;background:#f5f3ff;color:#5b21b6}
  .qnum.active{outline:2px solid #111827}
  .question{display:none}
  .question.active{display:block}
  .option{display:block;padding:8px 10px;border:1px solid var(--line);border-radius:8px;margin:6px 0;cursor:pointer}
  .exam-nav{display:flex;gap:8px;justify-content:space-between;align-items:center;margin-top:16px}
  .saved{opacity:0;transition:opacity .3s}
  .saved.show{opacity:1}
  .legend span{display:inline-block;margin-right:8px}
</style>
</head>
<body>
{% if error_msg %}
<div class="exam-content">
  <h1>{{ exam.name or 'Exam' }}</h1>
  <div class="card" style="color:#b91c1c">{{ error_msg }}</div>
</div>
{% else %}
<div class="exam-layout" id="exam-root">
  <aside class="exam-sidebar">
    <div class="muted">Time remaining</div>
    <div class="timer" id="timer">--:--</div>
    <div class="palette" id="palette">
      {% for q in questions %}
        <button type="button" class="qnum not-visited" data-index="{{ q.index }}">{{ q.index + 1 }}</button>
      {% endfor %}
    </div>
    <div class="legend muted">
      <span>■ not visited</span><span style="color:#991b1b">■ unanswered</span>
      <span style="color:#065f46">■ answered</span><span style="color:#5b21b6">■ marked</span>
    </div>
    <div style="margin-top:14px"><button type="button" class="btn" id="submit-btn">Submit exam</button></div>
  </aside>

  <section class="exam-content">
    <h1 style="margin:0 0 4px">{{ exam.name or 'Exam' }}</h1>
    <div class="muted">
      Duration: {{ duration_min }} min · {{ questions|length }} questions
      {% if exam.topics %} · {{ exam.topics|join(', ') }}{% endif %}
      {% if exam.difficulty %} · {{ exam.difficulty }}{% endif %}
    </div>

    <div id="questions">
      {% for q in questions %}
        <div class="question card" id="question-{{ q.index }}" data-index="{{ q.index }}" data-type="{{ q.type }}">
          <div><strong>Q{{ q.index + 1 }}</strong> <span class="muted">{{ q.type_label }} · {{ q.weight }} pt{{ '' if q.weight == 1 else 's' }}</span></div>
          <div class="prose" style="margin:6px 0 10px">{{ q.html }}</div>
          {% if q.options %}
            {% for opt in q.options %}
              <label class="option">
                <input type="radio" name="{{ q.input_name }}" value="{{ opt.value }}" data-index="{{ q.index }}"/>
                {% if opt.letter %}<strong>{{ opt.letter }})</strong> {% endif %}{{ opt.label }}
              </label>
            {% endfor %}
          {% else %}
            <textarea name="{{ q.input_name }}" data-index="{{ q.index }}" rows="{{ 10 if q.type == 'essay' else 4 }}"
              placeholder="Type your answer…"></textarea>
            <div style="margin-top:6px">
              <button type="button" class="btn ghost ocr-btn" data-index="{{ q.index }}">Upload handwritten answer</button>
              <span class="muted" id="ocr-status-{{ q.index }}"></span>
            </div>
          {% endif %}
          <div class="exam-nav">
            <button type="button" class="btn ghost mark-btn" data-index="{{ q.index }}">Mark for review</button>
            <span class="muted saved" id="saved-{{ q.index }}">Saved</span>
          </div>
        </div>
      {% endfor %}
    </div>

    <div class="exam-nav">
      <button type="button" class="btn ghost" id="back-btn">Back</button>
      <button type="button" class="btn" id="next-btn">Next</button>
    </div>
    <input type="file" id="ocr-file" accept="image/*" style="display:none"/>
  </section>
</div>

<div class="exam-content" id="submitted-view" style="display:none">
  <h1>Exam submitted</h1>
  <div class="card">
    <div id="submitted-message"></div>
    <div class="muted" id="submitted-elapsed" style="margin-top:6px"></div>
    <div class="muted" id="submitted-note" style="margin-top:6px"></div>
    <div class="muted" style="margin-top:10px">This window will close shortly.</div>
  </div>
</div>

<script>
(function(){
  const PAGE = {{ page|tojson }};
  const N = PAGE.question_count;
  const answers = {};
  const statuses = [];
  for (let i=0;i<N;i++) statuses.push('not-visited');
  let current = 0;
  let remaining = PAGE.duration_seconds;
  let submitted = false;
  let ocrTarget = null;

  function filled(v){ return String(v==null?'':v).trim() !== ''; }

  function nextStatus(cur, event, value){
    if (event === 'visit') return cur === 'not-visited' ? 'unanswered' : cur;
    if (event === 'answer') { if (cur === 'marked') return 'marked'; return filled(value) ? 'answered' : 'unanswered'; }
    if (event === 'mark') { if (cur === 'marked') return 'unanswered'; return 'marked'; }
    return cur;
  }

  function pendingCount(){ return statuses.filter(function(s){ return s !== 'answered'; }).length; }

  function currentValue(i){
    const keys = PAGE.aliases[i] || [];
    return keys.length ? answers[keys[0]] : '';
  }

  function paintPalette(){
    document.querySelectorAll('#palette .qnum').forEach(function(b){
      const i = parseInt(b.getAttribute('data-index'), 10);
      b.className = 'qnum ' + statuses[i] + (i === current ? ' active' : '');
    });
    document.querySelectorAll('.mark-btn').forEach(function(b){
      const i = parseInt(b.getAttribute('data-index'), 10);
      b.textContent = statuses[i] === 'marked' ? 'Unmark' : 'Mark for review';
    });
  }

  function show(i){
    if (i < 0 || i >= N) return;
    document.querySelectorAll('.question').forEach(function(el){ el.classList.remove('active'); });
    const el = document.getElementById('question-' + i);
    if (el) el.classList.add('active');
    current = i;
    statuses[i] = nextStatus(statuses[i], 'visit');
    document.getElementById('back-btn').disabled = (i === 0);
    document.getElementById('next-btn').textContent = (i === N - 1) ? 'Submit' : 'Next';
    paintPalette();
  }

  function flashSaved(i){
    const s = document.getElementById('saved-' + i);
    if (!s) return;
    s.classList.add('show');
    clearTimeout(s._t);
    s._t = setTimeout(function(){ s.classList.remove('show'); }, 1200);
  }

  // every alias the reconciler looks up; question-{i} carries the {value, type} wrapper
  function saveAnswer(i, value, quiet){
    const type = PAGE.types[i];
    (PAGE.aliases[i] || []).forEach(function(k){
      answers[k] = (k.indexOf('question-') === 0) ? {value: value, type: type} : value;
    });
    statuses[i] = nextStatus(statuses[i], 'answer', value);
    if (!quiet) flashSaved(i);
    paintPalette();
  }

  function collectAllAnswers(){
    document.querySelectorAll('#questions input[type=radio]:checked').forEach(function(r){
      saveAnswer(parseInt(r.getAttribute('data-index'), 10), r.value, true);
    });
    document.querySelectorAll('#questions textarea').forEach(function(t){
      if (filled(t.value)) saveAnswer(parseInt(t.getAttribute('data-index'), 10), t.value, true);
    });
  }

  document.querySelectorAll('#questions input[type=radio]').forEach(function(r){
    r.addEventListener('change', function(){ saveAnswer(parseInt(r.getAttribute('data-index'), 10), r.value); });
  });
  document.querySelectorAll('#questions textarea').forEach(function(t){
    const i = parseInt(t.getAttribute('data-index'), 10);
    t.addEventListener('input', function(){ saveAnswer(i, t.value); });
    t.addEventListener('blur', function(){ saveAnswer(i, t.value); });
  });
  document.querySelectorAll('#palette .qnum').forEach(function(b){
    b.addEventListener('click', function(){ show(parseInt(b.getAttribute('data-index'), 10)); });
  });
  document.querySelectorAll('.mark-btn').forEach(function(b){
    b.addEventListener('click', function(){
      const i = parseInt(b.getAttribute('data-index'), 10);
      statuses[i] = nextStatus(statuses[i], 'mark', currentValue(i));
      paintPalette();
    });
  });
  document.getElementById('back-btn').addEventListener('click', function(){ show(current - 1); });
  document.getElementById('next-btn').addEventListener('click', function(){
    if (current === N - 1) { requestSubmit(); } else { show(current + 1); }
  });
  document.getElementById('submit-btn').addEventListener('click', function(){ requestSubmit(); });

  // Timer
  const timerEl = document.getElementById('timer');
  function paintTimer(){
    const m = Math.floor(Math.max(remaining, 0) / 60), s = Math.max(remaining, 0) % 60;
    timerEl.textContent = String(m).padStart(2, '0') + ':' + String(s).padStart(2, '0');
    timerEl.className = 'timer' + (remaining < PAGE.danger_seconds ? ' danger' : (remaining < PAGE.warning_seconds ? ' warning' : ''));
  }
  paintTimer();
  const timerId = setInterval(function(){
    remaining -= 1;
    paintTimer();
    if (remaining <= 0) submitExam(true);
  }, 1000);

  // Periodic sweep + server draft
  const sweepId = setInterval(function(){
    collectAllAnswers();
    if (!PAGE.save_url) return;
    fetch(PAGE.save_url, {method:'POST', headers:{'Content-Type':'application/json'},
      body: JSON.stringify({answers: answers, statuses: statuses})}).catch(function(){});
  }, PAGE.autosave_ms || 10000);

  // Handwriting OCR
  const fileInput = document.getElementById('ocr-file');
  document.querySelectorAll('.ocr-btn').forEach(function(b){
    b.addEventListener('click', function(){
      ocrTarget = parseInt(b.getAttribute('data-index'), 10);
      fileInput.value = '';
      fileInput.click();
    });
  });
  fileInput.addEventListener('change', function(){
    const file = fileInput.files && fileInput.files[0];
    const i = ocrTarget;
    if (!file || i === null) return;
    const status = document.getElementById('ocr-status-' + i);
    status.textContent = 'Reading image…';
    const reader = new FileReader();
    reader.onload = async function(){
      const b64 = String(reader.result || '').split(',').pop();
      try {
        const r = await fetch(PAGE.ocr_url, {method:'POST', headers:{'Content-Type':'application/json'},
          body: JSON.stringify({imageBase64: b64})});
        const j = await r.json();
        if (!j.ok) throw new Error(j.error || 'OCR failed');
        const t = document.querySelector('textarea[data-index="' + i + '"]');
        t.value = filled(t.value) ? (t.value + '\\n' + j.text) : j.text;
        saveAnswer(i, t.value);
        status.textContent = 'Text added from image.';
      } catch (e) {
        status.textContent = e.message || 'Could not read the image.';
      }
    };
    reader.readAsDataURL(file);
  });

  function formatElapsed(ms){
    const total = Math.max(0, Math.floor(ms / 1000));
    return Math.floor(total / 60) + ' minutes and ' + (total % 60) + ' seconds';
  }

  function requestSubmit(){
    collectAllAnswers();
    const n = pendingCount();
    if (n > 0 && !confirm('You have ' + n + ' unanswered or marked questions. Are you sure you want to submit?')) return;
    submitExam(false);
  }

  async function submitExam(auto){
    if (submitted) return;
    submitted = true;
    clearInterval(timerId);
    clearInterval(sweepId);
    collectAllAnswers();
    const submittedAt = Date.now();
    const payload = {examId: PAGE.exam_id, answers: answers, statuses: statuses,
                     startedAt: PAGE.started_at, submittedAt: submittedAt, autoSubmit: !!auto};
    try {
      localStorage.setItem('completedExamId', String(PAGE.exam_id));
      localStorage.setItem('lastExamResults', JSON.stringify(payload));
    } catch (e) {}
    try {
      if (window.opener && !window.opener.closed) window.opener.postMessage({type:'examCompleted', examData: payload}, '*');
    } catch (e) {}

    let note = '';
    let elapsed = formatElapsed(submittedAt - PAGE.started_at);
    try {
      const r = await fetch(PAGE.submit_url, {method:'POST', keepalive:true,
        headers:{'Content-Type':'application/json'}, body: JSON.stringify(payload)});
      const j = await r.json();
      if (!j.ok) throw new Error(j.error || 'Submit failed');
      if (j.time_taken) elapsed = j.time_taken;
      if (!j.delivered) note = j.message || 'Connection issue, but your results are saved.';
    } catch (e) {
      note = 'Connection issue, but your results are saved.';
    }

    document.getElementById('exam-root').style.display = 'none';
    document.getElementById('submitted-view').style.display = '';
    document.getElementById('submitted-message').textContent = auto
      ? 'Time is up. Your exam was submitted automatically.'
      : 'Your exam has been submitted successfully.';
    document.getElementById('submitted-elapsed').textContent = 'Time taken: ' + elapsed;
    document.getElementById('submitted-note').textContent = note;
    setTimeout(function(){ try { window.close(); } catch (e) {} }, PAGE.close_delay_ms || 3000);
  }

  if (N > 0) show(0);
})();
</script>
{% endif %}
</body></html>
"""
