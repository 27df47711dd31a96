# -*- coding: utf-8 -*-
"""
Gemini REST API request builder (thin, focused).

- Converts canonical Message turns to REST API "contents".
- Puts the system instruction in the dedicated systemInstruction field only.
- Builds generationConfig with clamped temperature, bounded output length and fixed
  sampling parameters, plus explicit safetySettings.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ....models.api_models import GenerationOptions, Message
from ..normalizer import clamp_temperature, resolve_max_output_tokens

logger = logging.getLogger("GeminiProxy.Services.Requests.GeminiBuilder")

SAFETY_CATEGORIES = [
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
]


def build_target_url(base_api_url: str, model_name: str) -> str:
    return f"{base_api_url.rstrip('/')}/v1beta/models/{model_name}:generateContent"


def build_headers(api_key: str) -> Dict[str, str]:
    # key 只放在请求头里，避免出现在 URL / 访问日志中
    return {
        "Content-Type": "application/json",
        "x-goog-api-key": api_key,
    }


def build_safety_settings(threshold: str) -> List[Dict[str, str]]:
    return [{"category": category, "threshold": threshold} for category in SAFETY_CATEGORIES]


def convert_messages_to_rest_api_contents(messages: List[Message]) -> List[Dict[str, Any]]:
    """
    convert_messages_to_rest_api_contents(messages) -> List[dict]
    Roles are already canonical ('user' | 'model'); parts carry text only.
    """
    return [
        {"role": msg.role, "parts": [{"text": part.text} for part in msg.parts]}
        for msg in messages
    ]


def build_generation_config(options: GenerationOptions, max_tokens_limit: int) -> Dict[str, Any]:
    return {
        "temperature": clamp_temperature(options.temperature, 0.7),
        "topK": options.top_k,
        "topP": options.top_p,
        "maxOutputTokens": resolve_max_output_tokens(options.max_output_tokens, max_tokens_limit, max_tokens_limit),
    }


def prepare_gemini_rest_api_request(
    messages: List[Message],
    system_instruction: Optional[str],
    options: GenerationOptions,
    *,
    api_key: str,
    base_api_url: str,
    model_name: str,
    safety_threshold: str,
    max_tokens_limit: int,
    request_id: str = "-",
) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    """
    Build Gemini REST API request:
    - Target URL for non-streaming generateContent
    - Headers with x-goog-api-key
    - contents / systemInstruction / generationConfig / safetySettings
    """
    log_prefix = f"RID-{request_id}"

    target_url = build_target_url(base_api_url, model_name)
    headers = build_headers(api_key)

    json_payload: Dict[str, Any] = {
        "contents": convert_messages_to_rest_api_contents(messages),
        "generationConfig": build_generation_config(options, max_tokens_limit),
        "safetySettings": build_safety_settings(safety_threshold),
    }
    if system_instruction:
        json_payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

    logger.info(f"{log_prefix}: Prepared Gemini REST API request. URL: {target_url}, "
                f"turns: {len(json_payload['contents'])}, Payload keys: {list(json_payload.keys())}")
    logger.debug(f"{log_prefix}: generationConfig in REST payload: {json_payload['generationConfig']}")

    return target_url, headers, json_payload
