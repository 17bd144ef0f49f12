"""
Scheduled job endpoints for an external scheduler.

An external cron (e.g. Cloud Scheduler) can drive booking ticks through this
module instead of, or in addition to, the in-process tick loop. Both share the
tick guard, so overlapping ticks are skipped either way. The endpoint is
secured with OIDC token authentication (preferred) or an API key.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from pydantic import BaseModel

from slotbooker.api.deps import get_scheduler
from slotbooker.config import settings
from slotbooker.models.schemas import AttemptResult, AttemptStatus
from slotbooker.services.tick_scheduler import TickScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


class TickResult(BaseModel):
    executed_at: datetime
    skipped: bool
    rules_evaluated: int
    succeeded: int
    failed: int
    failed_rule_ids: list[int]
    error: str | None = None
    results: list[AttemptResult]


def verify_oidc_token(authorization: str, request: Request) -> bool:
    """
    Verify an OIDC token from the scheduler.

    Returns True if the token is valid and from the expected service account.
    """
    if not authorization.startswith("Bearer "):
        return False

    token = authorization[7:]

    try:
        claims = id_token.verify_oauth2_token(  # type: ignore[no-untyped-call]
            token, google_requests.Request(), None
        )

        email = claims.get("email", "")
        if settings.scheduler_service_account and email != settings.scheduler_service_account:
            logger.warning(
                f"OIDC token email mismatch: expected {settings.scheduler_service_account}, "
                f"got {email}"
            )
            return False

        logger.info(f"OIDC token verified for service account: {email}")
        return True
    except google_auth_exceptions.GoogleAuthError as e:
        logger.warning(f"OIDC token verification failed: {e}")
        return False
    except ValueError as e:
        logger.warning(f"OIDC token validation error: {e}")
        return False


def verify_scheduler_auth(
    request: Request,
    authorization: str | None = Header(None, description="Bearer token for OIDC authentication"),
    x_scheduler_api_key: str | None = Header(
        None, description="API key for scheduler authentication"
    ),
) -> None:
    """Accept an OIDC bearer token first, then fall back to X-Scheduler-API-Key."""
    if authorization and verify_oidc_token(authorization, request):
        return

    if x_scheduler_api_key:
        if settings.scheduler_api_key and x_scheduler_api_key == settings.scheduler_api_key:
            return
        raise HTTPException(
            status_code=401,
            detail="Invalid scheduler API key",
        )

    raise HTTPException(
        status_code=401,
        detail="Authentication required. Provide OIDC token or X-Scheduler-API-Key header.",
    )


@router.post("/run-tick", response_model=TickResult)
async def run_tick(
    _: None = Depends(verify_scheduler_auth),
    scheduler: TickScheduler = Depends(get_scheduler),
) -> TickResult:
    """
    Run one scheduler tick now.

    Due rules are attempted sequentially through the booking pipeline. When a
    tick is already running the call returns immediately with skipped=true.
    """
    now = scheduler.pipeline.now()
    report = await scheduler.tick(now)

    succeeded = sum(1 for r in report.attempts if r.status == AttemptStatus.SUCCESS)
    failed = sum(
        1
        for r in report.attempts
        if r.status in (AttemptStatus.FAILED, AttemptStatus.PAYMENT_FAILED)
    )
    return TickResult(
        executed_at=now,
        skipped=report.skipped,
        rules_evaluated=report.rules_evaluated,
        succeeded=succeeded,
        failed=failed,
        failed_rule_ids=report.failed_rule_ids,
        error=report.error,
        results=report.attempts,
    )
