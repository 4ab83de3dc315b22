import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from obitwatch.api.deps import get_providers, get_reconciler
from obitwatch.core.config import Settings, get_settings
from obitwatch.core.security import is_manual_override
from obitwatch.core.webhooks import verify_webhook
from obitwatch.services.providers import ClassificationProvider, ProviderError
from obitwatch.services.repository import RepositoryUnavailableError
from obitwatch.services.verdicts import VerdictReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/replicate")
async def replicate_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    providers: dict[str, ClassificationProvider] = Depends(get_providers),
    reconciler: VerdictReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    return await _handle_delivery(request, providers["replicate"], settings, reconciler)


@router.post("/openai")
async def openai_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    providers: dict[str, ClassificationProvider] = Depends(get_providers),
    reconciler: VerdictReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    return await _handle_delivery(request, providers["openai"], settings, reconciler)


async def _handle_delivery(
    request: Request,
    provider: ClassificationProvider,
    settings: Settings,
    reconciler: VerdictReconciler,
) -> dict[str, Any]:
    # The exact bytes are signed; verify before parsing.
    raw_body = await request.body()

    if not is_manual_override(request.headers.get("Authorization"), settings):
        signing_key = provider.signing_key()
        if signing_key is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="webhook secret is not configured")
        verification = verify_webhook(
            webhook_id=request.headers.get("webhook-id"),
            timestamp=request.headers.get("webhook-timestamp"),
            signature_header=request.headers.get("webhook-signature"),
            raw_body=raw_body,
            secret=signing_key,
            max_age_seconds=settings.webhook_max_age_seconds,
        )
        if not verification.ok:
            logger.warning("webhook rejected provider=%s reason=%s", provider.name, verification.reason)
            raise HTTPException(status_code=verification.code, detail=verification.reason)

    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    try:
        delivery = await provider.resolve_webhook(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ProviderError as exc:
        logger.warning("webhook result retrieval failed provider=%s error=%s", provider.name, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="failed to retrieve result") from exc

    response: dict[str, Any] = {
        "ok": True,
        "provider": provider.name,
        "job_id": delivery.job_id,
        "status": delivery.status,
    }
    if delivery.outcome == "ignored":
        response["ignored"] = True
        return response

    try:
        if delivery.outcome == "failed":
            summary = await reconciler.mark_errored(delivery.candidate_ids)
        else:
            summary = await reconciler.apply(delivery.output_text, delivery.candidate_ids, delivery.forced_ids)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    logger.info(
        "webhook applied provider=%s job_id=%s outcome=%s candidates=%s",
        provider.name,
        delivery.job_id,
        delivery.outcome,
        len(delivery.candidate_ids),
    )
    response["candidates"] = len(delivery.candidate_ids)
    response.update(summary.as_dict())
    return response
