from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from feedwatch.core.auth import Principal
from feedwatch.core.security import get_user_principal
from feedwatch.jobs.scheduler import RunEnqueueError, enqueue_manual_poll, enqueue_manual_purge
from feedwatch.schemas.runs import RunAccepted, RunOut
from feedwatch.services.repository import RepositoryError, RepositoryUnavailableError, get_repository

router = APIRouter()


def _enqueue_failed(exc: RunEnqueueError) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"message": "run could not be enqueued", "run_id": exc.run_id},
    )


@router.post("/poll", response_model=RunAccepted, status_code=http_status.HTTP_202_ACCEPTED)
async def trigger_poll(
    principal: Principal = Depends(get_user_principal),
    repository=Depends(get_repository),
) -> RunAccepted:
    try:
        run_id = await enqueue_manual_poll(repository, principal.subject)
    except RunEnqueueError as exc:
        raise _enqueue_failed(exc) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RunAccepted(run_id=run_id)


@router.post("/purge", response_model=RunAccepted, status_code=http_status.HTTP_202_ACCEPTED)
async def trigger_purge(
    principal: Principal = Depends(get_user_principal),
    repository=Depends(get_repository),
) -> RunAccepted:
    try:
        run_id = await enqueue_manual_purge(repository, principal.subject)
    except RunEnqueueError as exc:
        raise _enqueue_failed(exc) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RunAccepted(run_id=run_id)


@router.get("", response_model=list[RunOut])
async def list_runs(
    limit: int = Query(default=20, ge=1, le=200),
    principal: Principal = Depends(get_user_principal),
    repository=Depends(get_repository),
) -> list[RunOut]:
    try:
        rows = await repository.list_runs(principal.subject, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [RunOut(**row) for row in rows]


@router.get("/{run_id}", response_model=RunOut)
async def get_run(
    run_id: str,
    principal: Principal = Depends(get_user_principal),
    repository=Depends(get_repository),
) -> RunOut:
    try:
        row = await repository.get_run(principal.subject, run_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="run not found")
    return RunOut(**row)
