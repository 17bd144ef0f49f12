from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "service": "slotbooker"}


@router.get("/")
async def root() -> dict[str, str | dict[str, str]]:
    return {
        "service": "SlotBooker - Weekly Slot Booking Automation",
        "version": "0.1.0",
        "endpoints": {
            "health": "/health",
            "dashboard": "/api/dashboard",
            "rules": "/api/rules",
            "logs": "/api/logs",
            "jobs": "/jobs/run-tick",
        },
    }
