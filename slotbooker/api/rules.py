from datetime import datetime, time

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from slotbooker.config import settings
from slotbooker.models.schemas import BookingRule
from slotbooker.services.database_service import database_service

router = APIRouter(prefix="/api/rules", tags=["rules"])

NON_NULLABLE_FIELDS = (
    "day_of_week",
    "target_time",
    "trigger_time",
    "duration_minutes",
    "activity",
    "enabled",
)


class RuleCreateRequest(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6)
    target_time: time
    trigger_time: time = time(0, 0)
    duration_minutes: int = Field(default=60, gt=0)
    activity: str | None = None
    playground_order: list[str] | None = None
    enabled: bool = True


class RuleUpdateRequest(BaseModel):
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    target_time: time | None = None
    trigger_time: time | None = None
    duration_minutes: int | None = Field(default=None, gt=0)
    activity: str | None = None
    playground_order: list[str] | None = None
    enabled: bool | None = None


class RuleResponse(BaseModel):
    id: int
    day_of_week: int
    target_time: time
    trigger_time: time
    duration_minutes: int
    activity: str
    playground_order: list[str] | None
    enabled: bool
    created_at: datetime


def to_response(rule: BookingRule) -> RuleResponse:
    return RuleResponse(**rule.model_dump())


@router.get("", response_model=list[RuleResponse])
async def list_rules() -> list[RuleResponse]:
    rules = await database_service.get_rules()
    return [to_response(r) for r in rules]


@router.post("", response_model=RuleResponse, status_code=201)
async def create_rule(request: RuleCreateRequest) -> RuleResponse:
    rule = BookingRule(
        day_of_week=request.day_of_week,
        target_time=request.target_time,
        trigger_time=request.trigger_time,
        duration_minutes=request.duration_minutes,
        activity=request.activity or settings.default_activity,
        playground_order=request.playground_order or None,
        enabled=request.enabled,
    )
    created = await database_service.create_rule(rule)
    return to_response(created)


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: int) -> RuleResponse:
    rule = await database_service.get_rule(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return to_response(rule)


@router.put("/{rule_id}", response_model=RuleResponse)
async def update_rule(rule_id: int, request: RuleUpdateRequest) -> RuleResponse:
    """
    Partially update a rule.

    Only fields present in the body are changed. An explicit null or empty
    list for playground_order clears the preference.
    """
    changes = request.model_dump(exclude_unset=True)
    for field in NON_NULLABLE_FIELDS:
        if field in changes and changes[field] is None:
            raise HTTPException(status_code=422, detail=f"{field} cannot be null")

    rule = await database_service.update_rule(rule_id, **changes)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return to_response(rule)


@router.delete("/{rule_id}")
async def delete_rule(rule_id: int) -> dict[str, str | int]:
    deleted = await database_service.delete_rule(rule_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Rule not found")
    return {"status": "deleted", "rule_id": rule_id}
