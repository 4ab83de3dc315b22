from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from obitwatch.core.config import Settings
from obitwatch.services.prompts import build_prompt
from obitwatch.services.providers import (
    ClassificationProvider,
    OpenAIProvider,
    ProviderError,
    ProviderNotConfiguredError,
    ReplicateProvider,
    build_providers,
    extract_openai_output_text,
    normalize_provider_name,
)
from obitwatch.services.source import parse_source_page


def _run_with(handler, build, action):
    async def _inner() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await action(build(client))

    return asyncio.run(_inner())


def test_openai_inline_dispatch_returns_output_text() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "resp_1",
                "status": "completed",
                "output": [{"type": "message", "content": [{"type": "output_text", "text": '{"selected":[]}'}]}],
            },
        )

    dispatch = _run_with(
        handler,
        lambda client: OpenAIProvider(api_key="sk-test", base_url="https://llm.test/v1", client=client),
        lambda provider: provider.dispatch("prompt", ["A", "B"], ["B"], "openai/gpt-5-mini"),
    )

    assert dispatch.mode == "inline"
    assert dispatch.output_text == '{"selected":[]}'
    assert seen["url"] == "https://llm.test/v1/responses"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "gpt-5-mini"
    assert json.loads(seen["body"]["metadata"]["candidates"]) == ["A", "B"]
    assert json.loads(seen["body"]["metadata"]["forced"]) == ["B"]


def test_openai_dispatch_without_key_is_not_configured() -> None:
    provider = OpenAIProvider(api_key=None)
    with pytest.raises(ProviderNotConfiguredError):
        asyncio.run(provider.dispatch("prompt", ["A"], [], "gpt-5-mini"))


def test_openai_client_error_raises_provider_error() -> None:
    with pytest.raises(ProviderError):
        _run_with(
            lambda request: httpx.Response(400, json={"error": "bad"}),
            lambda client: OpenAIProvider(api_key="sk-test", client=client),
            lambda provider: provider.dispatch("prompt", ["A"], [], "gpt-5-mini"),
        )


def test_openai_webhook_retrieves_response_and_metadata() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/v1/responses/resp_9"
        return httpx.Response(
            200,
            json={
                "id": "resp_9",
                "output_text": '[{"wiki_path": "A"}]',
                "metadata": {"candidates": '["A", "B"]', "forced": '["B"]'},
            },
        )

    verdict = _run_with(
        handler,
        lambda client: OpenAIProvider(api_key="sk-test", background=True, client=client),
        lambda provider: provider.resolve_webhook({"type": "response.completed", "data": {"id": "resp_9"}}),
    )

    assert verdict.outcome == "completed"
    assert verdict.candidate_ids == ["A", "B"]
    assert verdict.forced_ids == ["B"]
    assert verdict.output_text == '[{"wiki_path": "A"}]'


def test_openai_webhook_ignores_unhandled_events() -> None:
    provider = OpenAIProvider(api_key="sk-test")
    verdict = asyncio.run(provider.resolve_webhook({"type": "response.in_progress", "data": {"id": "x"}}))
    assert verdict.outcome == "ignored"


def test_extract_openai_output_text_from_chat_shape() -> None:
    payload = {"choices": [{"message": {"content": "hello"}}]}
    assert extract_openai_output_text(payload) == "hello"


def test_replicate_dispatch_targets_model_and_webhook() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "pred_1", "status": "starting"})

    dispatch = _run_with(
        handler,
        lambda client: ReplicateProvider(
            api_token="r8_test",
            webhook_url="https://svc.test/webhooks/replicate",
            client=client,
        ),
        lambda provider: provider.dispatch("prompt", ["A"], [], "gpt-5-mini"),
    )

    assert dispatch.mode == "queued"
    assert dispatch.job_id == "pred_1"
    assert seen["path"] == "/v1/models/openai/gpt-5-mini/predictions"
    assert seen["body"]["webhook"] == "https://svc.test/webhooks/replicate"
    assert seen["body"]["webhook_events_filter"] == ["completed"]
    assert "metadata" not in seen["body"]


def test_replicate_non_openai_model_carries_metadata() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "pred_2"})

    _run_with(
        handler,
        lambda client: ReplicateProvider(api_token="r8_test", webhook_url="https://svc.test/hook", client=client),
        lambda provider: provider.dispatch("prompt", ["A", "B"], ["B"], "google/gemini-2.5-flash"),
    )

    assert seen["body"]["metadata"] == {"candidates": ["A", "B"], "forced": ["B"]}
    assert seen["body"]["input"]["thinking_level"] == "low"


def test_replicate_webhook_recovers_ids_from_prompt() -> None:
    prompt = build_prompt(
        [{"name": "A Person", "age": 70, "external_id": "A"}, {"name": "B Person", "external_id": "B"}],
        forced_ids=["B"],
    )
    provider = ReplicateProvider(api_token="r8_test", webhook_url="https://svc.test/hook")

    verdict = asyncio.run(
        provider.resolve_webhook(
            {"id": "pred_3", "status": "succeeded", "input": {"prompt": prompt}, "output": ["[", "]"]}
        )
    )

    assert verdict.outcome == "completed"
    assert verdict.candidate_ids == ["A", "B"]
    assert verdict.forced_ids == ["B"]
    assert verdict.output_text == "[]"


def test_replicate_webhook_keeps_comma_ids_from_prompt() -> None:
    html = (
        "<ul>"
        '<li><a href="/wiki/John_Smith_(politician,_born_1940)">John Smith</a>, 84, American politician.</li>'
        '<li><a href="/wiki/Jane_Doe">Jane Doe</a>, 88, American actress, singer.</li>'
        "</ul>"
    )
    records = parse_source_page(html)
    comma_id = "John_Smith_(politician,_born_1940)"
    assert [record["external_id"] for record in records] == [comma_id, "Jane_Doe"]

    prompt = build_prompt(records, forced_ids=[comma_id, "Jane_Doe"])
    provider = ReplicateProvider(api_token="r8_test", webhook_url="https://svc.test/hook")
    assert not provider.accepts_metadata(provider.default_model)

    verdict = asyncio.run(provider.resolve_webhook({"id": "pred_4", "status": "succeeded", "input": {"prompt": prompt}}))

    assert verdict.candidate_ids == [comma_id, "Jane_Doe"]
    assert verdict.forced_ids == [comma_id, "Jane_Doe"]


def test_replicate_metadata_string_keeps_comma_ids() -> None:
    provider = ReplicateProvider(api_token="r8_test", webhook_url="https://svc.test/hook")
    verdict = asyncio.run(
        provider.resolve_webhook(
            {
                "id": "pred_5",
                "status": "failed",
                "metadata": {"candidates": "Pat_(singer,_born_1950), Jane_Doe"},
            }
        )
    )

    assert verdict.candidate_ids == ["Pat_(singer,_born_1950)", "Jane_Doe"]


def test_replicate_webhook_statuses() -> None:
    provider = ReplicateProvider(api_token="r8_test", webhook_url="https://svc.test/hook")
    running = asyncio.run(provider.resolve_webhook({"id": "p", "status": "processing"}))
    failed = asyncio.run(provider.resolve_webhook({"id": "p", "status": "canceled", "metadata": {"candidates": ["A"]}}))

    assert running.outcome == "ignored"
    assert failed.outcome == "failed"
    assert failed.candidate_ids == ["A"]


def test_build_providers_wires_settings() -> None:
    settings = Settings(
        base_url="https://svc.test/",
        replicate_webhook_secret="whsec_c2VjcmV0",
        openai_background=True,
    )
    providers = build_providers(settings)

    assert providers["replicate"].webhook_url == "https://svc.test/webhooks/replicate"
    assert providers["replicate"].signing_key() == b"secret"
    assert providers["openai"].signing_key() is None
    assert providers["openai"].mode == "queued"


def test_normalize_provider_name_falls_back() -> None:
    assert normalize_provider_name(" Replicate ", "openai") == "replicate"
    assert normalize_provider_name("other", "replicate") == "replicate"
    assert normalize_provider_name(None, "bogus") == "openai"


def test_provider_missing_dispatch_cannot_be_instantiated() -> None:
    class Incomplete(ClassificationProvider):
        name = "incomplete"

        @property
        def mode(self) -> str:
            return "inline"

        def normalize_model(self, raw: str | None) -> str:
            return raw or ""

        def decode_webhook_secret(self, secret: str) -> bytes:
            return secret.encode("utf-8")

        async def resolve_webhook(self, payload: dict[str, Any]) -> Any:
            return None

    with pytest.raises(TypeError):
        Incomplete(timeout_seconds=1.0)
