#!/usr/bin/env python3
"""
Summarization providers.

A provider turns an article (URL plus plain text) into summary text or
raises ``ProviderError``. Two providers are available:

- ``openai``: Azure OpenAI chat completion with the ``entry_summary`` prompt
  from prompt.yaml
- ``kagi``: Kagi Universal Summarizer, which fetches the URL itself

Providers are third parties: slow, failing or filtered responses all end up
as ``ProviderError`` so the worker can record them on the summary record.
"""

from typing import Any, Dict, Optional

import yaml
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import ProviderError
from llm_client import chat_completion, is_configured
from telemetry import trace_span
from utils import RateLimiter, truncate_string

logger = get_logger("summary_providers")

# Maximum characters of article text sent to the model
MAX_INPUT_CHARS = 12000

KAGI_SUMMARY_URL = "https://kagi.com/mother/summary_labs"
KAGI_STATUS_MESSAGES = {
    401: "Invalid session token",
    403: "Access forbidden - check your Kagi subscription",
    429: "Rate limit exceeded - please try again later",
}

DEFAULT_SUMMARY_PROMPT = (
    "Summarize the following article in three to five sentences of plain prose. "
    "Use the language of the article and do not add information that is not in the text."
)


def load_prompts() -> Dict[str, str]:
    """Load prompts from prompt.yaml configuration file."""
    try:
        with open(config.PROMPT_CONFIG_PATH, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts if isinstance(prompts, dict) else {}
    except FileNotFoundError:
        logger.warning(f"Prompt configuration file not found at {config.PROMPT_CONFIG_PATH}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
        return {}
    except OSError as e:
        logger.error(f"OS error reading prompt configuration file: {e}")
        return {}


class SummaryProvider:
    """Base class for summarization back-ends."""

    name = "base"

    async def summarize(self, url: Optional[str], text: str) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenAISummaryProvider(SummaryProvider):
    """Summaries from an Azure OpenAI deployment."""

    name = "openai"

    def __init__(self, prompt: Optional[str] = None, client_override: Optional[Any] = None):
        self.prompt = prompt or load_prompts().get('entry_summary') or DEFAULT_SUMMARY_PROMPT
        self.client_override = client_override
        self.rate_limiter = RateLimiter(config.SUMMARIZER_REQUESTS_PER_MINUTE)

    @trace_span(
        "azure_openai.completions",
        tracer_name="summary_providers",
        attr_from_args=lambda self, url, text: {
            "azure.openai.deployment": config.DEPLOYMENT_NAME or "",
            "prompt.length": len(text or ""),
        },
    )
    async def summarize(self, url: Optional[str], text: str) -> str:
        if not text or not text.strip():
            raise ProviderError("Entry has no text to summarize")
        if self.client_override is None and not is_configured():
            raise ProviderError("Azure OpenAI is not configured")

        user_content = truncate_string(text.strip(), MAX_INPUT_CHARS)
        if url:
            user_content = f"URL: {url}\n\n{user_content}"
        messages = [
            {"role": "system", "content": self.prompt},
            {"role": "user", "content": user_content},
        ]
        await self.rate_limiter.acquire()
        # ContentFilterError is a ProviderError and propagates as-is
        result = await chat_completion(
            messages,
            purpose="entry_summary",
            client_override=self.client_override,
        )
        if not result:
            raise ProviderError("No summary returned by Azure OpenAI")
        return result.strip()


class KagiSummaryProvider(SummaryProvider):
    """Summaries from the Kagi Universal Summarizer (URL based)."""

    name = "kagi"

    def __init__(
        self,
        session_token: Optional[str] = None,
        language: Optional[str] = None,
        session: Optional[ClientSession] = None,
    ):
        self.session_token = session_token if session_token is not None else (config.KAGI_SESSION_TOKEN or "")
        self.language = language if language is not None else config.KAGI_LANGUAGE
        self._session = session
        self._owns_session = session is None

    def is_configured(self) -> bool:
        return bool(self.session_token)

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=config.SUMMARIZER_HTTP_TIMEOUT))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    @trace_span(
        "kagi.summarize",
        tracer_name="summary_providers",
        attr_from_args=lambda self, url, text: {"http.url": url or ""},
    )
    async def summarize(self, url: Optional[str], text: str) -> str:
        if not self.is_configured():
            raise ProviderError("Kagi is not configured")
        if not url:
            raise ProviderError("Entry has no URL to summarize")

        params = {"summary_type": "summary", "url": url}
        if self.language:
            params["target_language"] = self.language
        headers = {"Authorization": self.session_token, "Content-Type": "application/json"}

        try:
            async with self._get_session().get(KAGI_SUMMARY_URL, params=params, headers=headers) as response:
                if response.status != 200:
                    body = await response.text()
                    message = KAGI_STATUS_MESSAGES.get(
                        response.status, f"Kagi error ({response.status}): {truncate_string(body, 200)}"
                    )
                    raise ProviderError(message)
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise ProviderError(f"Failed to parse Kagi response: {e}") from e
        except ClientError as e:
            raise ProviderError(f"Failed to connect to Kagi: {e}") from e

        if not isinstance(payload, dict):
            raise ProviderError("Unexpected Kagi response")
        if payload.get("error"):
            raise ProviderError(str(payload["error"]))
        output = payload.get("output_text")
        if not output:
            raise ProviderError("No summary returned from Kagi")
        return str(output).strip()


def build_provider(name: Optional[str] = None) -> SummaryProvider:
    """Instantiate the configured provider."""
    selected = (name or config.SUMMARY_PROVIDER or "openai").lower()
    if selected == "kagi":
        return KagiSummaryProvider()
    if selected != "openai":
        logger.warning(f"Unknown SUMMARY_PROVIDER '{selected}', falling back to openai")
    return OpenAISummaryProvider()
