from fastapi import APIRouter, Depends, HTTPException, Query, status

from obitwatch.core.security import require_run_token
from obitwatch.schemas.records import RecordOut, RecordRejectRequest, Verdict
from obitwatch.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=list[RecordOut])
async def list_records(
    _: str = Depends(require_run_token),
    repository=Depends(get_repository),
    verdict: Verdict | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[RecordOut]:
    try:
        rows = await repository.list_records(verdict=verdict, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return [RecordOut(**row) for row in rows]


@router.get("/{record_id}", response_model=RecordOut)
async def get_record(
    record_id: int,
    _: str = Depends(require_run_token),
    repository=Depends(get_repository),
) -> RecordOut:
    try:
        row = await repository.get_record(record_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return RecordOut(**row)


@router.post("/{record_id}/reject", response_model=RecordOut)
async def reject_record(
    record_id: int,
    payload: RecordRejectRequest,
    _: str = Depends(require_run_token),
    repository=Depends(get_repository),
) -> RecordOut:
    try:
        row = await repository.reject_record(record_id, payload.reason)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return RecordOut(**row)
