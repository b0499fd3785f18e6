import pytest

from config import config
from errors import ContentFilterError
from llm_client import TRUNCATED_PLACEHOLDER, chat_completion


class Msg:
    def __init__(self, content=None, refusal=None):
        self.content = content
        self.refusal = refusal


class FakeChoice:
    def __init__(self, message, finish_reason="stop"):
        self.message = message
        self.finish_reason = finish_reason


class FakeResp:
    def __init__(self, choices):
        self.choices = choices


def client_returning(*outcomes):
    """Fake client whose create() yields the given responses/exceptions in order."""
    calls = []

    class FakeClient:
        class chat:
            class completions:
                @staticmethod
                async def create(**kwargs):  # type: ignore
                    calls.append(kwargs)
                    outcome = outcomes[min(len(calls), len(outcomes)) - 1]
                    if isinstance(outcome, Exception):
                        raise outcome
                    return outcome

    return FakeClient(), calls


class DummyContentFilterError(Exception):
    def __init__(self):
        super().__init__("filtered")
        self.body = {
            "error": {
                "code": "content_filter",
                "message": "Content filtered by Azure OpenAI",
                "innererror": {"code": "ResponsibleAIPolicyViolation"},
                "param": None,
            }
        }


MESSAGES = [{"role": "user", "content": "test"}]


@pytest.mark.asyncio
async def test_content_filter_raises_with_details():
    client, _ = client_returning(DummyContentFilterError())
    with pytest.raises(ContentFilterError) as excinfo:
        await chat_completion(MESSAGES, purpose="test", retries=0, client_override=client)
    assert "Content filtered" in str(excinfo.value)
    assert excinfo.value.details.get("code") == "content_filter"
    assert excinfo.value.details.get("innererror", {}).get("code") == "ResponsibleAIPolicyViolation"


@pytest.mark.asyncio
async def test_truncated_empty_content_yields_placeholder():
    parts = [{"type": "reasoning", "text": ""}, {"type": "metadata", "text": ""}]
    client, _ = client_returning(FakeResp([FakeChoice(Msg(parts), finish_reason="length")]))
    result = await chat_completion(MESSAGES, purpose="entry_summary", retries=0, client_override=client)
    assert result == TRUNCATED_PLACEHOLDER


@pytest.mark.asyncio
async def test_text_parts_are_joined_and_postprocessed():
    parts = [{"type": "text", "text": " first "}, {"type": "text", "text": "second"}]
    client, _ = client_returning(FakeResp([FakeChoice(Msg(parts))]))
    result = await chat_completion(MESSAGES, retries=0, client_override=client, postprocess=str.upper)
    assert result == "FIRST\nSECOND"


@pytest.mark.asyncio
async def test_refusal_and_empty_output_return_none():
    refused, _ = client_returning(FakeResp([FakeChoice(Msg(refusal="I can't help with that"))]))
    assert await chat_completion(MESSAGES, retries=0, client_override=refused) is None

    empty, _ = client_returning(FakeResp([FakeChoice(Msg("   "))]))
    assert await chat_completion(MESSAGES, retries=0, client_override=empty) is None


@pytest.mark.asyncio
async def test_transient_errors_are_retried_then_given_up(monkeypatch):
    monkeypatch.setattr(config, 'SUMMARIZER_RETRY_DELAY_BASE', 0)
    client, calls = client_returning(RuntimeError("reset"), FakeResp([FakeChoice(Msg("ok"))]))
    assert await chat_completion(MESSAGES, retries=1, client_override=client) == "ok"
    assert len(calls) == 2

    failing, failing_calls = client_returning(RuntimeError("down"))
    assert await chat_completion(MESSAGES, retries=2, client_override=failing) is None
    assert len(failing_calls) == 3


@pytest.mark.asyncio
async def test_missing_messages_short_circuit():
    client, calls = client_returning(FakeResp([FakeChoice(Msg("unused"))]))
    assert await chat_completion([], client_override=client) is None
    assert calls == []
