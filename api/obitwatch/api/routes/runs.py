import logging

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from obitwatch.api.deps import get_pipeline, get_rate_limiter
from obitwatch.core.config import Settings, get_settings
from obitwatch.core.security import client_identifier, is_manual_override
from obitwatch.schemas.runs import RunRequest, RunResponse
from obitwatch.services.pipeline import Pipeline
from obitwatch.services.rate_limit import RateLimiter, parse_rate_windows
from obitwatch.services.repository import RepositoryError, RepositoryUnavailableError
from obitwatch.services.source import SourceFetchError

router = APIRouter()
logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60


@router.post("/run", response_model=RunResponse)
async def trigger_run(
    request: Request,
    payload: RunRequest | None = Body(default=None),
    settings: Settings = Depends(get_settings),
    limiter: RateLimiter = Depends(get_rate_limiter),
    pipeline: Pipeline = Depends(get_pipeline),
    authorization: str | None = Header(default=None, alias="Authorization"),
):
    # Counted before auth so unauthorized attempts are limited too.
    identifier = client_identifier(request)
    try:
        limit = await limiter.check("run", identifier, parse_rate_windows(settings.run_rate_limits))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not limit.allowed:
        exceeded = limit.exceeded
        logger.warning(
            "run rate limit exceeded client=%s window=%ss count=%s limit=%s",
            identifier,
            exceeded.window_seconds if exceeded else None,
            exceeded.count if exceeded else None,
            exceeded.limit if exceeded else None,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too Many Requests",
            headers={"Retry-After": str(limit.retry_after or DEFAULT_RETRY_AFTER_SECONDS)},
        )

    if not is_manual_override(authorization, settings):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    options = (payload or RunRequest()).to_options()
    try:
        result = await pipeline.run(options)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (SourceFetchError, RepositoryError) as exc:
        logger.exception("run failed mode=%s", "reprocess" if options.targeted else "scan")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"ok": False, "error": str(exc)})

    return RunResponse(**result.as_dict())
