"""Short encouragement messages for submitted homework.

Talks to any OpenAI-compatible chat completions endpoint configured through
``FEEDBACK_LLM_URL``.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import requests

from env_validation import get_env_int
from errors import ConfigurationMissing, HomeReaderError

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Great job!"


class FeedbackUnavailable(HomeReaderError):
    status_code = 502


def build_prompt(notes: Optional[str], child_name: Optional[str]) -> str:
    return (
        f"You are a kind teacher. A child named {child_name or 'the student'} just submitted homework.\n"
        f'The child wrote: "{notes or ""}". Write a short, warm, positive message praising '
        "their effort and suggesting one improvement."
    )


def _extract_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    try:
        return str(data["choices"][0]["message"]["content"] or "").strip()
    except (KeyError, IndexError, TypeError):
        pass
    try:
        return str(data["choices"][0]["text"] or "").strip()
    except (KeyError, IndexError, TypeError):
        return str(data.get("response") or "").strip()


def encourage(notes: Optional[str], child_name: Optional[str] = None) -> str:
    url = os.getenv("FEEDBACK_LLM_URL", "")
    if not url:
        raise ConfigurationMissing("feedback model not configured")
    payload = {
        "model": os.getenv("FEEDBACK_LLM_MODEL", "mistral-7b-instruct"),
        "messages": [{"role": "user", "content": build_prompt(notes, child_name)}],
    }
    try:
        r = requests.post(url, json=payload, timeout=get_env_int("FEEDBACK_LLM_TIMEOUT", 30))
        r.raise_for_status()
        data = r.json()
    except requests.HTTPError as e:
        raise FeedbackUnavailable(
            f"LLM-HTTP {e.response.status_code}: {e.response.text[:300]}"
        ) from e
    except (requests.RequestException, ValueError) as e:
        raise FeedbackUnavailable(f"LLM error: {e}") from e

    return _extract_text(data) or FALLBACK_MESSAGE
