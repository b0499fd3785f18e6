#!/usr/bin/env python3
"""Async Azure OpenAI helper providing `chat_completion` with optional retry, content filter
handling and normalized content extraction. Returns `None` on exhausted retries, refusals
or empty output; raises `ContentFilterError` on policy violations."""
from __future__ import annotations
from typing import List, Dict, Any, Optional, Callable
from asyncio import sleep

from openai import AsyncAzureOpenAI, OpenAIError

from config import config, get_logger
from errors import ContentFilterError

logger = get_logger("llm_client")

TRUNCATED_PLACEHOLDER = "[Truncated output: no content returned]"

_client: Any = None


def is_configured() -> bool:
    return bool(config.OPENAI_API_KEY and config.AZURE_ENDPOINT and config.OPENAI_API_VERSION and config.DEPLOYMENT_NAME)


def _get_client() -> Optional[Any]:
    """Instantiate and cache the Azure OpenAI async client if configuration is present."""
    global _client
    if _client is not None:
        return _client
    if not is_configured():
        logger.debug("Missing Azure OpenAI config; client will not initialize")
        return None
    endpoint = (
        f"https://{config.AZURE_ENDPOINT}" if not str(config.AZURE_ENDPOINT).startswith("http") else config.AZURE_ENDPOINT
    )
    _client = AsyncAzureOpenAI(
        api_key=config.OPENAI_API_KEY,
        api_version=config.OPENAI_API_VERSION,
        azure_endpoint=endpoint,
        timeout=config.SUMMARIZER_HTTP_TIMEOUT,
        max_retries=0,
    )
    return _client


def reset_client() -> None:
    """Drop the cached client (after configuration changes)."""
    global _client
    _client = None


def _content_filter_error(exc: Exception) -> Optional[ContentFilterError]:
    body = getattr(exc, "body", {}) or {}
    error_obj = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error_obj, dict):
        # Some SDK versions put the error object at the top level of the body
        error_obj = body if isinstance(body, dict) and "code" in body else None
    if not isinstance(error_obj, dict):
        return None
    code = error_obj.get("code")
    inner = error_obj.get("innererror")
    inner_code = inner.get("code") if isinstance(inner, dict) else None
    if code == "content_filter" or inner_code == "ResponsibleAIPolicyViolation":
        return ContentFilterError(message=error_obj.get("message", "Content filtered"), details=error_obj)
    return None


def _extract_text(choice: Any) -> str:
    message = getattr(choice, "message", None) or {}
    content = message.get("content") if isinstance(message, dict) else getattr(message, "content", None)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, dict):
                txt = part.get("text")
                if isinstance(txt, str) and txt.strip():
                    texts.append(txt.strip())
                elif part.get("type") not in ("text", "output_text", None):
                    logger.debug("Ignoring non-text part type=%s", part.get("type"))
        return "\n".join(texts).strip()
    return ""


def _refusal(choice: Any) -> Any:
    message = getattr(choice, "message", None) or {}
    return message.get("refusal") if isinstance(message, dict) else getattr(message, "refusal", None)


async def chat_completion(
    messages: List[Dict[str, str]] = None,
    *,
    purpose: str = "generic",
    retries: Optional[int] = None,
    postprocess: Optional[Callable[[str], str]] = None,
    client_override: Optional[Any] = None,
) -> Optional[str]:
    """Execute an Azure OpenAI chat completion. Raises `ContentFilterError` on policy violations."""
    if not messages:
        logger.error("chat_completion called without messages list")
        return None

    client = client_override or _get_client()
    if client is None:
        logger.warning("Azure OpenAI client unavailable; skipping %s", purpose)
        return None

    remaining = retries if retries is not None else config.SUMMARIZER_MAX_RETRIES
    attempt = 0

    while attempt <= remaining:
        try:
            resp = await client.chat.completions.create(model=config.DEPLOYMENT_NAME, messages=messages)
        except Exception as e:
            filtered = _content_filter_error(e)
            if filtered:
                raise filtered
            attempt += 1
            if attempt > remaining:
                logger.error("%s request failed after %d retries: %s", purpose, remaining, e)
                return None
            delay = config.SUMMARIZER_RETRY_DELAY_BASE * (2 ** (attempt - 1))
            kind = "transient OpenAI error" if isinstance(e, OpenAIError) else "unexpected error"
            logger.warning("%s %s: %s. Backoff %ss (attempt %d/%d)", purpose, kind, e, delay, attempt, remaining)
            await sleep(delay)
            continue

        choices = getattr(resp, "choices", None) or []
        if not choices:
            logger.error("No choices in %s response", purpose)
            return None

        fragments: List[str] = []
        refused = False
        for choice in choices:
            refusal = _refusal(choice)
            if refusal:
                refused = True
                logger.warning("Refusal detected in %s response: %s", purpose, refusal)
                continue
            txt = _extract_text(choice)
            if txt:
                fragments.append(txt)
        if refused and not fragments:
            logger.warning("All choices refused for %s; returning None", purpose)
            return None

        raw = "\n".join(fragments).strip()
        if not raw:
            finish_reasons = {getattr(c, "finish_reason", None) for c in choices} - {None}
            if "length" in finish_reasons:
                logger.warning("Truncated output with empty content (%s); returning placeholder", purpose)
                raw = TRUNCATED_PLACEHOLDER
            else:
                logger.error("Empty content in %s response (finish_reasons=%s)", purpose, finish_reasons)
                return None
        return postprocess(raw) if postprocess else raw

    return None


__all__ = ["chat_completion", "is_configured", "reset_client", "TRUNCATED_PLACEHOLDER"]
