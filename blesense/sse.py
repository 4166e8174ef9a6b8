"""Server-Sent Events helpers."""

from __future__ import annotations

import json
from typing import Any, Optional


def format_sse(data: Any, event: Optional[str] = None) -> str:
    """Frame a payload as a single SSE message."""
    payload = json.dumps(data, default=str)
    message = ''
    if event:
        message += f'event: {event}\n'
    message += f'data: {payload}\n\n'
    return message
