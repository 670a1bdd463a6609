import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

logger = logging.getLogger(__name__)

# --------- Model/endpoint from environment ---------
MODEL_ID = os.getenv("MODEL_ID", "gpt-3.5-turbo")
DEFAULT_LLM_URL = "http://localhost:4891/v1/chat/completions"

_LLM_LOGGER = logging.getLogger("goat.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

SYSTEM_TUTOR_PROMPT = """You are The GOAT, a calm and encouraging study companion for South African high-school learners (Grades 8-11).
Follow the CAPS curriculum and South African exam conventions. Use short WhatsApp-friendly lines, plain text maths
(x², √, ≤) instead of LaTeX where you can, and bold step labels such as **Step 1:**."""

HINT_SYSTEM_PROMPT = """You are a patient tutor giving ONE hint to a learner who is stuck on a homework question.
Give a helpful hint WITHOUT giving the direct answer. Do not solve the problem, do not state the final value and do not
list more than two steps. Maximum 40 words."""


class LLMUnavailableError(RuntimeError):
    """Raised when the completion endpoint is unset, unreachable or returns garbage."""


@dataclass
class LLMReply:
    text: str
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    latency_ms: int = 0


def _safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _send_max_tokens() -> bool:
    return os.getenv("SEND_MAX_TOKENS", "true").lower() == "true"


def llm_url() -> str:
    return os.getenv("LLM_URL", "").strip()


def is_configured() -> bool:
    return bool(llm_url())


def _base_params(temperature: Optional[float] = None) -> Dict[str, float]:
    """Only OpenAI-style sampling fields."""
    return {
        "temperature": temperature if temperature is not None else _safe_float("LLM_TEMPERATURE", 0.3),
        "top_p": _safe_float("LLM_TOP_P", 0.95),
    }


def _headers() -> Dict[str, str]:
    key = os.getenv("LLM_API_KEY", "").strip()
    return {"Authorization": f"Bearer {key}"} if key else {}


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _extract_text(data: Any) -> str:
    try:
        return data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        pass
    try:
        return data["choices"][0]["text"]
    except (KeyError, IndexError, TypeError):
        raise LLMUnavailableError(f"Unexpected LLM response: {str(data)[:200]}")


def chat_completion(
    messages: Sequence[Mapping[str, str]],
    max_tokens: Optional[int],
    *,
    temperature: Optional[float] = None,
    purpose: str = "chat",
    user_id: Optional[str] = None,
) -> LLMReply:
    """Blocking chat-completions call.

    A 400 response is retried once with a minimal payload (model, messages,
    max_tokens) for servers that reject sampling fields. Every call emits one
    JSON line on the ``goat.llm`` logger.
    """

    url = llm_url()
    if not url:
        raise LLMUnavailableError("LLM_URL is not configured")

    payload: Dict[str, Any] = {"model": MODEL_ID, "messages": list(messages), **_base_params(temperature)}
    if max_tokens is not None and _send_max_tokens():
        payload["max_tokens"] = int(max_tokens)

    timeout = _safe_int("LLM_TIMEOUT", 20)
    start = time.perf_counter()
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    status = "error"
    try:
        try:
            r = requests.post(url, json=payload, headers=_headers(), timeout=timeout)
            if r.status_code == 400:
                minimal = {"model": MODEL_ID, "messages": list(messages)}
                if max_tokens is not None and _send_max_tokens():
                    minimal["max_tokens"] = int(max_tokens)
                r = requests.post(url, json=minimal, headers=_headers(), timeout=timeout)
            r.raise_for_status()
            data = r.json()
        except requests.HTTPError as e:
            raise LLMUnavailableError(f"LLM-HTTP {e.response.status_code}: {e.response.text[:300]}") from e
        except (requests.RequestException, ValueError) as e:
            raise LLMUnavailableError(f"LLM error: {e}") from e

        usage = data.get("usage") if isinstance(data, dict) else None
        if isinstance(usage, dict):
            tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
            tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))

        text = (_extract_text(data) or "").strip()
        if not text:
            raise LLMUnavailableError("LLM returned an empty completion")
        status = "ok"
        return LLMReply(text, tokens_in, tokens_out, int((time.perf_counter() - start) * 1000))
    finally:
        log_record = {
            "event": "llm_call",
            "purpose": purpose,
            "user_id": user_id,
            "model": MODEL_ID,
            "latency_ms": int((time.perf_counter() - start) * 1000),
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "status": status,
        }
        _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False, sort_keys=True))


async def complete(
    messages: Sequence[Mapping[str, str]],
    max_tokens: Optional[int],
    *,
    temperature: Optional[float] = None,
    purpose: str = "chat",
    user_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> LLMReply:
    """Run ``chat_completion`` in a worker thread under an overall timeout."""

    limit = timeout if timeout is not None else _safe_int("LLM_TIMEOUT", 20) + 2
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(
                chat_completion,
                messages,
                max_tokens,
                temperature=temperature,
                purpose=purpose,
                user_id=user_id,
            ),
            limit,
        )
    except asyncio.TimeoutError as exc:
        raise LLMUnavailableError(f"LLM call exceeded {limit}s") from exc


# --------- Prompt builders ---------
def question_messages(profile: Mapping[str, Any]) -> List[Dict[str, str]]:
    prompt = (
        f"Generate a Grade {profile['grade']} {profile['subject']} practice question following the South African "
        f"CAPS curriculum.\n\n"
        f"Topic: {profile['topic']}\n"
        f"Sub-topic: {profile['sub_topic']}\n"
        f"Difficulty: {profile['difficulty_key']} ({profile.get('difficulty_label', '')})\n\n"
        "Requirements:\n"
        "1. Create ONE question that practises exactly this sub-topic\n"
        "2. Match the difficulty level and standard South African test format\n"
        "3. Include clear instructions\n\n"
        "Return ONLY the question text, no solution. Keep it concise and focused."
    )
    return [
        {"role": "system", "content": SYSTEM_TUTOR_PROMPT},
        {"role": "user", "content": prompt},
    ]


def solution_messages(profile: Mapping[str, Any], question: str) -> List[Dict[str, str]]:
    prompt = (
        f"Provide a step-by-step solution for this Grade {profile['grade']} {profile['subject']} question "
        f"(CAPS, topic: {profile['topic']}).\n\n"
        f"Question: {question}\n\n"
        "Use **Step 1:**, **Step 2:** labels, show all working and end with the final answer."
    )
    return [
        {"role": "system", "content": SYSTEM_TUTOR_PROMPT},
        {"role": "user", "content": prompt},
    ]


def hint_messages(
    question: str,
    *,
    classification: str,
    depth: int,
    intent: str,
    previous_hints: Sequence[str] = (),
) -> List[Dict[str, str]]:
    context = (
        f"Question type: {classification}\n"
        f"Hint depth: {depth} (1 = gentle nudge, higher = more specific)\n"
        f"Learner intent: {intent}"
    )
    if previous_hints:
        context += "\nHints already given (do not repeat):\n" + "\n".join(f"- {h}" for h in previous_hints)
    return [
        {"role": "system", "content": f"{HINT_SYSTEM_PROMPT}\n\n{context}"},
        {"role": "user", "content": f'Student is stuck on: "{question}"'},
    ]
