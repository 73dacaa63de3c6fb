"""
Incentive Lens — Centralized AI Client (google-genai SDK)
Single entry point for Gemini calls with retry, deadline and JSON mode.
"""
import time

from google import genai
from google.genai import types

from app.core.config import get_genai_api_key, AI_MODEL, AI_TIMEOUT_SEC
from app.core.logger import logger

# ── Singleton client (lazy init) ──
_client = None


def _get_client():
    global _client
    if _client is None:
        _client = genai.Client(
            api_key=get_genai_api_key(),
            http_options=types.HttpOptions(timeout=AI_TIMEOUT_SEC * 1000),
        )
    return _client


def call_gemini(
    prompt: str,
    *,
    system_instruction: str | None = None,
    model: str = AI_MODEL,
    max_tokens: int = 2048,
    temperature: float = 0.4,
    json_mode: bool = True,
    max_retries: int = 2,
    timeout_sec: int = AI_TIMEOUT_SEC,
) -> str:
    """Call Gemini and return raw text.

    Retries transient failures with exponential backoff but never starts a new
    attempt past ``timeout_sec`` from the first call.
    """
    config_kwargs = {
        "max_output_tokens": max_tokens,
        "temperature": temperature,
    }
    if json_mode:
        config_kwargs["response_mime_type"] = "application/json"
    if system_instruction:
        config_kwargs["system_instruction"] = system_instruction
    gen_config = types.GenerateContentConfig(**config_kwargs)

    last_err = None
    deadline = time.monotonic() + timeout_sec
    for attempt in range(max_retries + 1):
        if time.monotonic() > deadline:
            raise TimeoutError(f"Gemini call exceeded {timeout_sec}s deadline")
        try:
            response = _get_client().models.generate_content(
                model=model,
                contents=prompt,
                config=gen_config,
            )
            if not response.text:
                raise ValueError("Empty response from Gemini")
            return response.text
        except Exception as e:
            last_err = e
            if attempt < max_retries:
                wait = 2 ** attempt
                logger.warning(f"[AI] Gemini attempt {attempt + 1} failed: {e}. Retrying in {wait}s...")
                time.sleep(wait)
            else:
                logger.error(f"[AI] Gemini call failed after {max_retries + 1} attempts: {e}")
    raise last_err
