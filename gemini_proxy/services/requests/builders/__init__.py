# -*- coding: utf-8 -*-
"""
Request builders package.

Contains thin, focused builders for the upstream provider protocol (Gemini REST).
"""
from .gemini_builder import (
    prepare_gemini_rest_api_request,
    convert_messages_to_rest_api_contents,
    build_safety_settings,
)

__all__ = [
    "prepare_gemini_rest_api_request",
    "convert_messages_to_rest_api_contents",
    "build_safety_settings",
]
