"""
Incentive Lens — Security & AI Output Hygiene
Cron authentication, prompt-input sanitization, AI JSON parsing/validation.
"""
import hmac
import json
import re
from typing import Optional

from fastapi import HTTPException, Request

from app.core import config
from app.core.logger import logger


# ── Cron Auth ──
def require_cron_secret(request: Request) -> None:
    """Reject refresh calls without ``Authorization: Bearer <CRON_SECRET>``.

    An unset secret leaves the endpoint open, matching local development.
    """
    secret = config.CRON_SECRET
    if not secret:
        return
    header = request.headers.get("Authorization", "")
    if not hmac.compare_digest(header, f"Bearer {secret}"):
        logger.warning("[Cron] Unauthorized refresh attempt")
        raise HTTPException(status_code=401, detail="Unauthorized")


# ── AI JSON Parsing ──
def parse_ai_json(text: str) -> dict:
    """Extract a JSON object from model output (markdown fences, chatter, trailing commas)."""
    if not isinstance(text, str):
        raise ValueError("AI response is not text")
    cleaned = text.replace("```json", "").replace("```", "").strip()
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass
    match = re.search(r'\{[\s\S]*\}', cleaned)
    if match:
        candidate = match.group()
        for attempt in (candidate, re.sub(r',\s*([}\]])', r'\1', candidate)):
            try:
                return json.loads(attempt)
            except json.JSONDecodeError:
                continue
    raise ValueError(f"Could not parse JSON from AI response: {cleaned[:200]}")


def _validate_field(model_class, key: str, value):
    return model_class.model_validate({key: value}).model_dump(by_alias=True)[key]


def validate_ai_response(raw: dict, model_class) -> dict:
    """Validate against a Pydantic schema; on failure keep whatever fields validate.

    List fields fall back to item-by-item validation, so one malformed entry
    costs only that entry.
    """
    try:
        return model_class.model_validate(raw).model_dump(by_alias=True)
    except Exception as e:
        logger.warning(f"[AI] Response validation warning ({model_class.__name__}): {e}")
    result = model_class().model_dump(by_alias=True)
    if isinstance(raw, dict):
        for key in result:
            value = raw.get(key)
            if value is None:
                continue
            try:
                result[key] = _validate_field(model_class, key, value)
                continue
            except Exception:
                if not isinstance(value, list):
                    logger.debug(f"[AI] Dropping invalid field '{key}'")
                    continue
            kept = []
            for item in value:
                try:
                    kept.extend(_validate_field(model_class, key, [item]))
                except Exception:
                    logger.debug(f"[AI] Dropping invalid item in '{key}': {str(item)[:120]}")
            result[key] = kept
    result["_ai_fallback"] = True
    return result


# ── Prompt Injection Defense ──
_INJECTION_PATTERNS = [
    r'(?i)ignore\s+(all\s+)?(previous|above|prior)\s+(instructions|prompts?)',
    r'(?i)you\s+are\s+now\s+',
    r'(?i)system\s*:\s*',
    r'(?i)assistant\s*:\s*',
]


def sanitize_external_text(text: Optional[str], max_len: int = 200) -> str:
    """Trim and defuse third-party strings (market names) before they enter a prompt."""
    if not isinstance(text, str):
        return ""
    text = text[:max_len]
    for pattern in _INJECTION_PATTERNS:
        text = re.sub(pattern, '[FILTERED]', text)
    return text
