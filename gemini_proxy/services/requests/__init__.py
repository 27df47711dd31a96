"""
Requests building package.

normalizer: caller payload -> canonical turns; builders: canonical turns -> upstream payload.
"""

from .normalizer import (
    normalize,
    sanitize_text,
    coerce_history_entry,
    normalize_system_instruction,
    normalize_generation_options,
    split_legacy_messages,
    MAX_TEXT_LENGTH,
)
from .builders import prepare_gemini_rest_api_request

__all__ = [
    "normalize",
    "sanitize_text",
    "coerce_history_entry",
    "normalize_system_instruction",
    "normalize_generation_options",
    "split_legacy_messages",
    "MAX_TEXT_LENGTH",
    "prepare_gemini_rest_api_request",
]
