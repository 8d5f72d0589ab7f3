# ai_service.py
# -----------------------------------------------------------------------------
# OpenAI-backed collaborators (chat completions over requests):
# - generate_text(task, prompt): question generation / answer evaluation / syllabus parsing
# - extract_text_from_image(image_base64): handwriting OCR
# - extract_syllabus_topics(text): topic list from a syllabus
# Every call returns {"success": bool, ...}; failures are reported, never raised. No retries.
# -----------------------------------------------------------------------------

import os
import re
from typing import Any, Dict, List, Optional

import requests

from exam_parser import TYPE_LABELS

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

TASK_GENERATE = "generate_questions"
TASK_EVALUATE = "evaluate_answer"
TASK_SYLLABUS = "parse_syllabus"

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant for teachers and students preparing exams."
SYSTEM_PROMPTS = {
    TASK_GENERATE: (
        "You are an AI specialized in creating educational exam questions. Generate challenging but fair "
        "questions STRICTLY based on the provided topics and difficulty level. For MCQs, include 4 options "
        "with one correct answer clearly labeled. For essay questions, include a question with appropriate "
        "word count guidance. Format each question clearly with a number and make sure options are clearly "
        "labeled A, B, C, D for multiple choice."
    ),
    TASK_EVALUATE: (
        "You are an AI specialized in evaluating and grading student answers with extreme detail and accuracy. "
        "Provide constructive feedback and evaluate each answer with precision. Respond with JSON only."
    ),
    TASK_SYLLABUS: (
        "You are an AI specialized in extracting structured information from educational syllabi. Extract the "
        "main topics, subtopics, and key concepts that would be important for exam questions. Return one topic per line."
    ),
}
OCR_PROMPT = (
    "Extract text from this image of handwritten content. "
    "Return only the extracted text without any additional comments."
)


def _config() -> Dict[str, Any]:
    return {
        "api_key": (os.getenv("OPENAI_API_KEY") or "").strip(),
        "gen_model": (os.getenv("OPENAI_QGEN_MODEL") or "gpt-4o-mini").strip(),
        "grader_model": (os.getenv("OPENAI_GRADER_MODEL") or "gpt-4o-mini").strip(),
        "ocr_model": (os.getenv("OPENAI_OCR_MODEL") or "gpt-4o-mini").strip(),
        "timeout": float(os.getenv("AI_REQUEST_TIMEOUT") or 90),
    }


def _openai_chat(messages: List[Dict[str, Any]], model: str, temperature: float, max_tokens: int) -> str:
    cfg = _config()
    if not cfg["api_key"]:
        raise RuntimeError("OPENAI_API_KEY is not set.")
    r = requests.post(
        OPENAI_CHAT_URL,
        headers={"Authorization": f"Bearer {cfg['api_key']}", "Content-Type": "application/json"},
        json={
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        },
        timeout=cfg["timeout"],
    )
    r.raise_for_status()
    data = r.json()
    return (data["choices"][0]["message"]["content"] or "").strip()


def generate_text(task: str, prompt: str, max_tokens: int = 3000) -> Dict[str, Any]:
    cfg = _config()
    model = cfg["grader_model"] if task == TASK_EVALUATE else cfg["gen_model"]
    temperature = 0.0 if task == TASK_EVALUATE else 0.4
    try:
        text = _openai_chat(
            [{"role": "system", "content": SYSTEM_PROMPTS.get(task, DEFAULT_SYSTEM_PROMPT)},
             {"role": "user", "content": prompt}],
            model=model, temperature=temperature, max_tokens=max_tokens,
        )
    except Exception as e:
        print(f"[ai] {task} failed: {e}", flush=True)
        return {"success": False, "error": str(e)}
    if not text:
        return {"success": False, "error": "The AI service returned an empty response."}
    return {"success": True, "response": text}


def evaluate_text(prompt: str) -> Dict[str, Any]:
    return generate_text(TASK_EVALUATE, prompt)


def extract_text_from_image(image_base64: str) -> Dict[str, Any]:
    data = (image_base64 or "").strip()
    if not data:
        return {"success": False, "error": "No image data received."}
    if not data.startswith("data:"):
        data = "data:image/jpeg;base64," + data
    cfg = _config()
    try:
        text = _openai_chat(
            [{"role": "user", "content": [
                {"type": "text", "text": OCR_PROMPT},
                {"type": "image_url", "image_url": {"url": data}},
            ]}],
            model=cfg["ocr_model"], temperature=0.0, max_tokens=1500,
        )
    except Exception as e:
        print(f"[ai] ocr failed: {e}", flush=True)
        return {"success": False, "error": str(e)}
    return {"success": True, "text": text}


def clean_topics(raw: str) -> List[str]:
    """Split on newlines / commas / colons, strip markdown emphasis and bullets, drop headings."""
    out: List[str] = []
    seen = set()
    for part in re.split(r"[\n,:]", raw or ""):
        t = part.replace("**", "").strip()
        t = re.sub(r"^(?:[-*•#]+|\d+[.)])\s*", "", t).strip()
        low = t.lower()
        if len(t) <= 1 or "topic" in low or "chapter" in low:
            continue
        if low in seen:
            continue
        seen.add(low)
        out.append(t)
    return out


def extract_syllabus_topics(syllabus_text: str) -> Dict[str, Any]:
    if not (syllabus_text or "").strip():
        return {"success": False, "error": "The syllabus is empty."}
    prompt = (
        "Please analyze the following syllabus and extract the main topics that would be relevant "
        f"for creating exam questions: {syllabus_text}"
    )
    res = generate_text(TASK_SYLLABUS, prompt, max_tokens=800)
    if not res.get("success"):
        return res
    return {"success": True, "topics": clean_topics(res.get("response") or "")}


def build_generation_prompt(topics: List[str],
                            number_of_questions: int,
                            difficulty: str = "medium",
                            distribution: Optional[Dict[str, int]] = None,
                            syllabus: Optional[str] = None,
                            include_weights: bool = False) -> str:
    topic_line = ", ".join(str(t) for t in (topics or [])) or "General Knowledge"
    if distribution:
        types_line = ", ".join(f"{int(n)} {TYPE_LABELS.get(t, t)}" for t, n in distribution.items() if int(n) > 0)
    else:
        types_line = ", ".join(TYPE_LABELS.values())

    weight_rule = (
        "- State each question's point value right after its number, e.g. \"1 (2 points). MCQ: ...\"\n"
        if include_weights else ""
    )
    syllabus_block = f"Based on this syllabus: {syllabus}\n" if syllabus else ""
    return f"""Generate {number_of_questions} exam questions STRICTLY about the following topics: {topic_line}.
Difficulty level: {difficulty or 'medium'}.
Question types: {types_line}.
{syllabus_block}
Format Guidelines:
- Number each question clearly (1, 2, 3, etc.) followed by its type label: "MCQ:", "True/False:", "Short Answer:" or "Essay:"
- DO NOT create sections or group questions by sections; present questions in a flat, sequential list
- For multiple choice questions, put EACH OPTION on a SEPARATE LINE labeled A), B), C), D)
- Indicate the correct answer for MCQs on a separate line AFTER all options with "Answer: X"
- For true/false questions, end with "Answer: True" or "Answer: False"
- For short answer questions, include the expected answer length
- For essay questions, provide guidance on word count and key points to address
{weight_rule}- IMPORTANT: ALL questions MUST be directly related to the specified topics.

Example:
1. MCQ: Which gas do plants absorb during photosynthesis?
A) Oxygen
B) Carbon dioxide
C) Nitrogen
D) Helium
Answer: B
"""
