from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends

from ..application import Application, get_application
from ..auth import get_internal_api_key_dependency
from ..schemas import ReminderRunOut

router = APIRouter(
    prefix="/api/int",
    tags=["internal"],
    dependencies=[Depends(get_internal_api_key_dependency())],
)


# PUBLIC_INTERFACE
@router.post(
    "/process_reminders",
    response_model=ReminderRunOut,
    summary="Process reminders",
    description=(
        "Claim the todo entries that are due, or whose reminder is due, in the current "
        "minute and send their notifications. Called by an external scheduler; an entry "
        "is notified at most once per minute window however often this is called."
    ),
    responses={401: {"description": "Missing or invalid internal API key"}},
)
def process_reminders(application: Application = Depends(get_application)) -> ReminderRunOut:
    result = application.process_reminders()
    return ReminderRunOut(**asdict(result))
