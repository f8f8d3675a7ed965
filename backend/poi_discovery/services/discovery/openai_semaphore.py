"""
Shared semaphore for expensive OpenAI calls made by the discovery pipeline.

Limits concurrent completion requests per worker to protect rate limits.
"""
from __future__ import annotations

import asyncio
from typing import Any

from poi_discovery.core.config import settings


def _coerce_concurrency(value: Any) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return 1


OPENAI_CALL_CONCURRENCY = _coerce_concurrency(settings.openai_call_concurrency)
OPENAI_CALL_SEMAPHORE = asyncio.Semaphore(OPENAI_CALL_CONCURRENCY)
