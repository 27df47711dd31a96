# -*- coding: utf-8 -*-
"""
Request normalizer: loosely-typed client payload -> canonical Gemini turns.

- Total for malformed history: entries are coerced, never rejected.
- Only a missing/blank prompt is an error (ValidationError).
- System text travels on exactly one channel: the dedicated systemInstruction field.
  'system' entries found in history are lifted out of the turn list into that field.
- Turns whose text is empty after sanitization are dropped, since the upstream API
  rejects empty text parts.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, List, Optional, Sequence, Tuple

from ...core.errors import ValidationError
from ...models.api_models import GenerationOptions, Message, TextPart

logger = logging.getLogger("GeminiProxy.Services.Requests.Normalizer")

MAX_TEXT_LENGTH = 4000

# Lossy: also removes brackets from legitimate content such as code snippets.
_FORBIDDEN_CHARS = re.compile(r"[<>{}\[\]]")
_WHITESPACE_RUN = re.compile(r"\s+")
_LONE_SURROGATES = re.compile("[\ud800-\udfff]")

_ROLE_MAP = {
    "user": "user",
    "human": "user",
    "assistant": "model",
    "model": "model",
    "system": "system",
}
_FLAT_TEXT_FIELDS = ("text", "content")


def sanitize_text(value: Any) -> str:
    """
    Trim, strip '<>{}[]', collapse whitespace, cap at MAX_TEXT_LENGTH.
    Non-strings become ''. Applying it twice gives the same result as once.
    """
    if not isinstance(value, str):
        return ""
    text = _LONE_SURROGATES.sub("", value)
    text = _FORBIDDEN_CHARS.sub("", text)
    text = _WHITESPACE_RUN.sub(" ", text).strip()
    return text[:MAX_TEXT_LENGTH].rstrip()


def coerce_role(raw_role: Any) -> str:
    """Map a caller role onto 'user' | 'model' | 'system'; unknown roles become 'user'."""
    if isinstance(raw_role, str):
        mapped = _ROLE_MAP.get(raw_role.strip().lower())
        if mapped:
            return mapped
    return "user"


def _coerce_parts(entry: Any) -> List[TextPart]:
    raw_parts = entry.get("parts") if isinstance(entry, dict) else None

    if isinstance(raw_parts, (list, tuple)):
        parts: List[TextPart] = []
        for raw_part in raw_parts:
            if isinstance(raw_part, dict):
                parts.append(TextPart(text=sanitize_text(raw_part.get("text"))))
            elif isinstance(raw_part, str):
                parts.append(TextPart(text=sanitize_text(raw_part)))
            else:
                parts.append(TextPart(text=""))
        return parts or [TextPart(text="")]

    if isinstance(entry, dict):
        for field in _FLAT_TEXT_FIELDS:
            if field in entry:
                return [TextPart(text=sanitize_text(entry[field]))]

    return [TextPart(text="")]


def coerce_history_entry(entry: Any) -> Tuple[str, List[TextPart]]:
    """
    coerce_history_entry(entry) -> (role, parts)
    Never raises: missing role -> 'user', missing parts/text -> a single empty part.
    """
    raw_role = entry.get("role") if isinstance(entry, dict) else None
    return coerce_role(raw_role), _coerce_parts(entry)


def normalize_system_instruction(raw: Any) -> Optional[str]:
    """
    Accepts a plain string, {"parts": [...]}, {"text": ...} or a list of parts.
    Returns a single text blob, or None when absent/blank.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        text = sanitize_text(raw)
    elif isinstance(raw, (dict, list, tuple)):
        entry = {"parts": raw} if isinstance(raw, (list, tuple)) else raw
        text = " ".join(p.text for p in _coerce_parts(entry) if p.text)
    else:
        text = ""
    return text or None


def _validate_prompt(raw_prompt: Any) -> str:
    if raw_prompt is None:
        raise ValidationError("Missing required field: prompt")
    if not isinstance(raw_prompt, str):
        raise ValidationError("Invalid prompt", "prompt must be a string")
    if not raw_prompt.strip():
        raise ValidationError("Invalid prompt", "prompt cannot be empty")
    prompt = sanitize_text(raw_prompt)
    if not prompt:
        raise ValidationError("Invalid prompt", "prompt is empty after sanitization")
    return prompt


def normalize(
    raw_history: Any,
    raw_prompt: Any,
    raw_system_instruction: Any = None,
    *,
    drop_empty_turns: bool = True,
    request_id: str = "-",
) -> Tuple[List[Message], Optional[str]]:
    """
    normalize(history, prompt, system_instruction) -> (messages, system_instruction_text)

    Output: sanitized history in original order, then exactly one trailing user turn
    carrying the sanitized prompt.
    """
    log_prefix = f"RID-{request_id}"
    prompt = _validate_prompt(raw_prompt)

    if raw_history is None:
        history_entries: Sequence[Any] = ()
    elif isinstance(raw_history, (list, tuple)):
        history_entries = raw_history
    else:
        logger.warning(f"{log_prefix}: history is {type(raw_history).__name__}, not a list. Treating as empty.")
        history_entries = ()

    messages: List[Message] = []
    lifted_system_texts: List[str] = []

    for i, entry in enumerate(history_entries):
        role, parts = coerce_history_entry(entry)

        if role == "system":
            lifted_system_texts.extend(p.text for p in parts if p.text)
            continue

        non_empty_parts = [p for p in parts if p.text]
        if not non_empty_parts:
            if drop_empty_turns:
                logger.debug(f"{log_prefix}: Dropping history entry {i} (role={role}): empty after sanitization.")
                continue
            non_empty_parts = parts

        messages.append(Message(role=role, parts=non_empty_parts))

    system_texts: List[str] = []
    explicit_system = normalize_system_instruction(raw_system_instruction)
    if explicit_system:
        system_texts.append(explicit_system)
    system_texts.extend(lifted_system_texts)
    if lifted_system_texts:
        logger.info(f"{log_prefix}: Moved {len(lifted_system_texts)} system history part(s) into systemInstruction.")

    messages.append(Message(role="user", parts=[TextPart(text=prompt)]))

    system_instruction = "\n\n".join(system_texts) if system_texts else None
    return messages, system_instruction


def _entry_raw_text(entry: Any) -> Any:
    if not isinstance(entry, dict):
        return None
    for field in _FLAT_TEXT_FIELDS:
        if isinstance(entry.get(field), str):
            return entry[field]
    raw_parts = entry.get("parts")
    if isinstance(raw_parts, (list, tuple)):
        texts = [p.get("text") for p in raw_parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
        return " ".join(texts) if texts else None
    return None


def split_legacy_messages(raw_messages: Any) -> Tuple[List[Any], Any]:
    """
    Legacy clients send one OpenAI-style 'messages' array. The last non-system entry,
    when it is a user turn, becomes the prompt; everything else is history
    (system entries included, normalize() lifts them).
    """
    if not isinstance(raw_messages, (list, tuple)):
        return [], None

    last_turn_index = None
    for i in range(len(raw_messages) - 1, -1, -1):
        entry = raw_messages[i]
        raw_role = entry.get("role") if isinstance(entry, dict) else None
        if coerce_role(raw_role) != "system":
            last_turn_index = i
            break

    if last_turn_index is None:
        return list(raw_messages), None

    last_entry = raw_messages[last_turn_index]
    if coerce_role(last_entry.get("role") if isinstance(last_entry, dict) else None) != "user":
        return list(raw_messages), None

    history = [m for i, m in enumerate(raw_messages) if i != last_turn_index]
    return history, _entry_raw_text(last_entry)


def clamp_temperature(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        value = default
    return max(0.0, min(1.0, float(value)))


def resolve_max_output_tokens(value: Any, default: int, limit: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return min(default, limit)
    tokens = int(value)
    if tokens <= 0:
        return min(default, limit)
    return min(tokens, limit)


def normalize_generation_options(
    raw_temperature: Any,
    raw_max_tokens: Any,
    *,
    default_temperature: float = 0.7,
    default_max_tokens: int = 1024,
    max_tokens_limit: int = 8192,
    top_k: int = 40,
    top_p: float = 0.95,
) -> GenerationOptions:
    return GenerationOptions(
        temperature=clamp_temperature(raw_temperature, default_temperature),
        max_output_tokens=resolve_max_output_tokens(raw_max_tokens, default_max_tokens, max_tokens_limit),
        top_k=top_k,
        top_p=top_p,
    )
