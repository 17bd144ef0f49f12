from fastapi import APIRouter, Query
from pydantic import BaseModel

from slotbooker.models.schemas import AttemptLog
from slotbooker.services.database_service import database_service

router = APIRouter(prefix="/api/logs", tags=["logs"])


class PurgeLogsRequest(BaseModel):
    ids: list[int]


@router.get("", response_model=list[AttemptLog])
async def list_logs(limit: int = Query(default=50, ge=1, le=500)) -> list[AttemptLog]:
    return await database_service.get_logs(limit=limit)


@router.delete("")
async def purge_logs(request: PurgeLogsRequest) -> dict[str, int]:
    deleted = await database_service.delete_logs(request.ids)
    return {"deleted": deleted}
