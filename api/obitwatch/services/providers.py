from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from obitwatch.core.config import Settings
from obitwatch.core.http import UpstreamError, request_with_retry
from obitwatch.core.webhooks import decode_openai_secret, decode_replicate_secret
from obitwatch.services.prompts import (
    SYSTEM_PROMPT,
    candidate_ids_from_prompt,
    forced_ids_from_prompt,
    split_id_list,
)
from obitwatch.services.verdicts import coalesce_output

logger = logging.getLogger(__name__)

PROVIDER_NAMES = ("openai", "replicate")


class ProviderError(Exception):
    """Raised when a dispatch or result retrieval call to a provider fails."""


class ProviderNotConfiguredError(ProviderError):
    """Raised when a provider is selected without its credentials."""


@dataclass(slots=True)
class ProviderDispatch:
    mode: str
    model: str
    job_id: str | None = None
    status: str | None = None
    output_text: str | None = None


@dataclass(slots=True)
class WebhookVerdict:
    """Normalized webhook delivery: ``completed``, ``failed`` or ``ignored``."""

    outcome: str
    job_id: str | None = None
    status: str | None = None
    output_text: str = ""
    candidate_ids: list[str] = field(default_factory=list)
    forced_ids: list[str] = field(default_factory=list)


def _clean_ids(value: Any) -> list[str]:
    """Accept a list, a JSON-encoded list, a ", "-separated string or a single id."""
    if isinstance(value, list):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return []
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, list):
            return _clean_ids(decoded)
        return split_id_list(raw)
    return []


class ClassificationProvider(ABC):
    name: str = ""
    default_model: str = ""
    max_batch_size: int = 25
    max_drain_total: int = 100

    def __init__(
        self,
        *,
        timeout_seconds: float,
        retries: int = 1,
        backoff_seconds: float = 0.4,
        webhook_secret: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.webhook_secret = webhook_secret
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._client = client

    @property
    @abstractmethod
    def mode(self) -> str:
        """Either ``inline`` or ``queued``."""

    @property
    def is_inline(self) -> bool:
        return self.mode == "inline"

    @abstractmethod
    def normalize_model(self, raw: str | None) -> str: ...

    @abstractmethod
    def decode_webhook_secret(self, secret: str) -> bytes: ...

    def signing_key(self) -> bytes | None:
        if not self.webhook_secret:
            return None
        return self.decode_webhook_secret(self.webhook_secret)

    @abstractmethod
    async def dispatch(
        self,
        prompt: str,
        candidate_ids: Sequence[str],
        forced_ids: Sequence[str],
        model: str,
    ) -> ProviderDispatch: ...
    @abstractmethod
    async def resolve_webhook(self, payload: dict[str, Any]) -> WebhookVerdict: ...

    async def _send(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            if self._client is not None:
                response = await self._request(self._client, method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await self._request(client, method, url, **kwargs)
        except UpstreamError as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderError(f"{self.name} error {response.status_code}: {response.text[:500]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"{self.name} returned an unexpected payload")
        return payload

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await request_with_retry(
            client,
            method,
            url,
            retries=self.retries,
            backoff_seconds=self.backoff_seconds,
            timeout=self.timeout_seconds,
            **kwargs,
        )


def extract_openai_output_text(payload: dict[str, Any]) -> str:
    direct = payload.get("output_text")
    if isinstance(direct, str) and direct:
        return direct

    parts: list[str] = []
    output = payload.get("output")
    for item in output if isinstance(output, list) else []:
        if isinstance(item, str):
            parts.append(item)
            continue
        content = item.get("content") if isinstance(item, dict) else None
        for piece in content if isinstance(content, list) else []:
            if isinstance(piece, str):
                parts.append(piece)
            elif isinstance(piece, dict) and isinstance(piece.get("text"), str):
                parts.append(piece["text"])
    if parts:
        return "".join(parts)

    choices = payload.get("choices")
    for choice in choices if isinstance(choices, list) else []:
        if not isinstance(choice, dict):
            continue
        message = choice.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            parts.append(message["content"])
        if isinstance(choice.get("text"), str):
            parts.append(choice["text"])
    return "".join(parts)


class OpenAIProvider(ClassificationProvider):
    """Responses API. Inline unless background mode hands results to the webhook."""

    name = "openai"
    default_model = "gpt-5-mini"
    max_batch_size = 40
    max_drain_total = 200
    handled_events = {"response.completed", "response.failed", "response.cancelled"}

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.openai.com/v1",
        default_model: str | None = None,
        background: bool = False,
        timeout_seconds: float = 120.0,
        webhook_secret: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, webhook_secret=webhook_secret, client=client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.background = background
        if default_model:
            self.default_model = self.normalize_model(default_model)

    @property
    def mode(self) -> str:
        return "queued" if self.background else "inline"

    def normalize_model(self, raw: str | None) -> str:
        trimmed = (raw or "").strip()
        if not trimmed:
            return self.default_model
        if trimmed.startswith("openai/"):
            return trimmed[len("openai/") :]
        return trimmed

    def decode_webhook_secret(self, secret: str) -> bytes:
        return decode_openai_secret(secret)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderNotConfiguredError("OW_OPENAI_API_KEY is not configured")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def dispatch(
        self,
        prompt: str,
        candidate_ids: Sequence[str],
        forced_ids: Sequence[str],
        model: str,
    ) -> ProviderDispatch:
        model = self.normalize_model(model)
        body: dict[str, Any] = {
            "model": model,
            "input": prompt,
            "max_output_tokens": 16384,
            "background": self.background,
        }
        metadata: dict[str, str] = {}
        if candidate_ids:
            metadata["candidates"] = json.dumps(list(candidate_ids))
        if forced_ids:
            metadata["forced"] = json.dumps(list(forced_ids))
        if metadata:
            body["metadata"] = metadata

        payload = await self._send("POST", f"{self.base_url}/responses", headers=self._headers(), json=body)
        job_id = payload.get("id") if isinstance(payload.get("id"), str) else None
        status = payload.get("status") if isinstance(payload.get("status"), str) else None
        if self.background:
            logger.info("openai response queued id=%s model=%s candidates=%s", job_id, model, len(candidate_ids))
            return ProviderDispatch(mode="queued", model=model, job_id=job_id, status=status)
        return ProviderDispatch(
            mode="inline",
            model=model,
            job_id=job_id,
            status=status,
            output_text=extract_openai_output_text(payload).strip(),
        )

    async def retrieve(self, response_id: str) -> dict[str, Any]:
        return await self._send(
            "GET",
            f"{self.base_url}/responses/{quote(response_id, safe='')}",
            headers=self._headers(),
        )

    async def resolve_webhook(self, payload: dict[str, Any]) -> WebhookVerdict:
        event_type = str(payload.get("type") or "").strip()
        if event_type not in self.handled_events:
            return WebhookVerdict(outcome="ignored", status=event_type or None)

        data = payload.get("data")
        response_id = str(data.get("id") or "").strip() if isinstance(data, dict) else ""
        if not response_id:
            raise ValueError("missing response id")

        response = await self.retrieve(response_id)
        metadata = response.get("metadata") if isinstance(response.get("metadata"), dict) else {}
        candidates = _clean_ids(metadata.get("candidates"))
        forced = _clean_ids(metadata.get("forced"))
        if event_type != "response.completed":
            return WebhookVerdict(
                outcome="failed",
                job_id=response_id,
                status=event_type,
                candidate_ids=candidates,
                forced_ids=forced,
            )
        return WebhookVerdict(
            outcome="completed",
            job_id=response_id,
            status=event_type,
            output_text=extract_openai_output_text(response).strip(),
            candidate_ids=candidates,
            forced_ids=forced,
        )


class ReplicateProvider(ClassificationProvider):
    """Predictions API; results always arrive through the completion webhook."""

    name = "replicate"
    default_model = "openai/gpt-5-mini"
    max_batch_size = 60
    max_drain_total = 60
    failed_statuses = {"failed", "canceled", "cancelled"}

    def __init__(
        self,
        *,
        api_token: str | None,
        webhook_url: str,
        base_url: str = "https://api.replicate.com/v1",
        default_model: str | None = None,
        timeout_seconds: float = 30.0,
        webhook_secret: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, webhook_secret=webhook_secret, client=client)
        self.api_token = api_token
        self.webhook_url = webhook_url
        self.base_url = base_url.rstrip("/")
        if default_model:
            self.default_model = self.normalize_model(default_model)

    @property
    def mode(self) -> str:
        return "queued"

    def normalize_model(self, raw: str | None) -> str:
        trimmed = (raw or "").strip()
        if not trimmed:
            return self.default_model
        if "/" not in trimmed:
            return f"openai/{trimmed}"
        return trimmed

    def decode_webhook_secret(self, secret: str) -> bytes:
        return decode_replicate_secret(secret)

    @staticmethod
    def accepts_metadata(model: str) -> bool:
        # Hosted OpenAI models reject unknown top-level fields.
        return not model.startswith("openai/")

    def build_input(self, prompt: str, model: str) -> dict[str, Any]:
        if model.startswith("openai/"):
            return {
                "prompt": prompt,
                "system_prompt": SYSTEM_PROMPT,
                "verbosity": "low",
                "reasoning_effort": "minimal",
                "max_completion_tokens": 12288,
            }
        if "gemini" in model:
            return {
                "prompt": prompt,
                "images": [],
                "videos": [],
                "temperature": 0.8,
                "top_p": 0.95,
                "thinking_level": "low",
                "max_output_tokens": 12288,
            }
        return {"prompt": prompt}

    async def dispatch(
        self,
        prompt: str,
        candidate_ids: Sequence[str],
        forced_ids: Sequence[str],
        model: str,
    ) -> ProviderDispatch:
        if not self.api_token:
            raise ProviderNotConfiguredError("OW_REPLICATE_API_TOKEN is not configured")
        model = self.normalize_model(model)
        body: dict[str, Any] = {
            "stream": False,
            "input": self.build_input(prompt, model),
            "webhook": self.webhook_url,
            "webhook_events_filter": ["completed"],
        }
        if self.accepts_metadata(model):
            metadata: dict[str, Any] = {"candidates": list(candidate_ids)}
            if forced_ids:
                metadata["forced"] = list(forced_ids)
            body["metadata"] = metadata

        payload = await self._send(
            "POST",
            f"{self.base_url}/models/{model}/predictions",
            headers={"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"},
            json=body,
        )
        job_id = payload.get("id") if isinstance(payload.get("id"), str) else None
        logger.info("replicate prediction queued id=%s model=%s candidates=%s", job_id, model, len(candidate_ids))
        return ProviderDispatch(
            mode="queued",
            model=model,
            job_id=job_id,
            status=payload.get("status") if isinstance(payload.get("status"), str) else None,
        )

    async def resolve_webhook(self, payload: dict[str, Any]) -> WebhookVerdict:
        status = str(payload.get("status") or "").strip().lower()
        job_id = payload.get("id") if isinstance(payload.get("id"), str) else None
        if status != "succeeded" and status not in self.failed_statuses:
            return WebhookVerdict(outcome="ignored", job_id=job_id, status=status or None)

        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
        model_input = payload.get("input") if isinstance(payload.get("input"), dict) else {}
        prompt = model_input.get("prompt") if isinstance(model_input.get("prompt"), str) else ""

        candidates = _clean_ids(metadata.get("candidates")) or candidate_ids_from_prompt(prompt)
        forced = (
            _clean_ids(metadata.get("forced"))
            or _clean_ids(metadata.get("forcedPaths"))
            or forced_ids_from_prompt(prompt)
        )
        if status in self.failed_statuses:
            return WebhookVerdict(
                outcome="failed",
                job_id=job_id,
                status=status,
                candidate_ids=candidates,
                forced_ids=forced,
            )
        return WebhookVerdict(
            outcome="completed",
            job_id=job_id,
            status=status,
            output_text=coalesce_output(payload.get("output")).strip(),
            candidate_ids=candidates,
            forced_ids=forced,
        )


def build_providers(settings: Settings, client: httpx.AsyncClient | None = None) -> dict[str, ClassificationProvider]:
    return {
        "openai": OpenAIProvider(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            default_model=settings.openai_model,
            background=settings.openai_background,
            timeout_seconds=max(settings.fetch_timeout_seconds, settings.openai_timeout_seconds),
            webhook_secret=settings.openai_webhook_secret,
            client=client,
        ),
        "replicate": ReplicateProvider(
            api_token=settings.replicate_api_token,
            webhook_url=f"{settings.base_url.rstrip('/')}/webhooks/replicate",
            base_url=settings.replicate_base_url,
            default_model=settings.replicate_model,
            timeout_seconds=settings.replicate_timeout_seconds,
            webhook_secret=settings.replicate_webhook_secret,
            client=client,
        ),
    }


def normalize_provider_name(raw: str | None, fallback: str) -> str:
    candidate = (raw or "").strip().lower()
    if candidate in PROVIDER_NAMES:
        return candidate
    return fallback if fallback in PROVIDER_NAMES else "openai"
