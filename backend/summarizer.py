# LLM-written summary of the highest-priority pain points
from __future__ import annotations
from typing import Sequence
import os
import logging
from openai import OpenAI, APIConnectionError, APIStatusError, APITimeoutError, RateLimitError
from dotenv import load_dotenv

from aggregation import AggregatePoint, MAX_RATING
from errors import UpstreamServiceError

load_dotenv()
logger = logging.getLogger(__name__)

# Config
_OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
_TIMEOUT = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))

_client = None
if _OPENAI_API_KEY:
    _client = OpenAI(api_key=_OPENAI_API_KEY, timeout=_TIMEOUT, max_retries=0)

UNAVAILABLE_MSG = "AI service unavailable"


def is_configured() -> bool:
    return _client is not None


def _format_problems(points: Sequence[AggregatePoint]) -> str:
    lines = []
    for i, p in enumerate(points, start=1):
        lines.append(
            f"{i}. [{p.group}] {p.title} - frequency {p.x:.1f}/{MAX_RATING}, "
            f"severity {p.y:.1f}/{MAX_RATING}, score {p.priority:.1f} ({p.count} ratings)"
        )
    return "\n".join(lines)


def summarize(top_problems: Sequence[AggregatePoint], response_count: int) -> str:
    """Ask the model for a short analysis of the ranked problems.

    Raises:
        UpstreamServiceError: no API key, timeout, transport/API error, empty reply.
    """
    if not _client:
        raise UpstreamServiceError("AI summary is not configured (OPENAI_API_KEY missing)")

    prompt = (
        f"Survey respondents: {response_count}.\n"
        "Problems ranked by impact score (frequency x severity, each on a 1-10 scale):\n"
        f"{_format_problems(top_problems)}\n\n"
        "Write a brief analysis (at most 200 words): name the key pain points, "
        "what they have in common, and which to prioritise first."
    )
    try:
        resp = _client.chat.completions.create(
            model=_MODEL,
            temperature=0.3,
            messages=[
                {"role": "system", "content": "You are a concise product analyst summarising survey results."},
                {"role": "user", "content": prompt},
            ],
        )
    except APITimeoutError:
        logger.error("AI summary timed out after %.0fs", _TIMEOUT)
        raise UpstreamServiceError(UNAVAILABLE_MSG)
    except (RateLimitError, APIStatusError, APIConnectionError) as e:
        logger.error("AI summary request failed: %s", e)
        raise UpstreamServiceError(UNAVAILABLE_MSG)

    content = (resp.choices[0].message.content or "").strip() if resp.choices else ""
    if not content:
        raise UpstreamServiceError(UNAVAILABLE_MSG)
    return content
