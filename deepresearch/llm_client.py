"""Client factories for the OpenAI and Gemini SDKs.

Clients are built explicitly and handed to the adapters that use them; nothing
here caches a process-wide instance.
"""
from __future__ import annotations

from typing import Any

from deepresearch.config import Settings, settings


def get_openai_client(config: Settings = settings) -> Any:
    """Build an AsyncOpenAI client from settings."""
    from openai import AsyncOpenAI

    if not config.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY is not configured")

    kwargs: dict[str, Any] = {"api_key": config.openai_api_key}
    base_url = config.openai_base_url.strip()
    if base_url:
        kwargs["base_url"] = base_url
    return AsyncOpenAI(**kwargs)


def get_gemini_client(config: Settings = settings) -> Any:
    """Build a google-genai client from settings."""
    from google import genai

    if not config.gemini_api_key:
        raise RuntimeError("GEMINI_API_KEY is not configured")
    return genai.Client(api_key=config.gemini_api_key)
