import json
from typing import Optional

from fastapi import Request

from app.logging_config import get_logger

logger = get_logger("payloads")


async def parse_json_body(request: Request) -> Optional[dict]:
    """
    Parse a webhook body with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        body = await request.json()
        return body if isinstance(body, dict) else None
    except ValueError as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            body = json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue
        return body if isinstance(body, dict) else None

    logger.error("Failed to decode webhook payload after fallbacks")
    return None
