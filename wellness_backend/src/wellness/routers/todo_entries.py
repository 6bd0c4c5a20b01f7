from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from ..application import Application, get_application
from ..auth import get_user_claims
from ..models import UserClaims
from ..schemas import ClearCompletedOut, TodoEntryIn, TodoEntryOut

router = APIRouter(
    prefix="/api/user/todo_entries",
    tags=["todo entries"],
)


# Declared before /{entry_id} so the literal path wins
# PUBLIC_INTERFACE
@router.delete(
    "/clear_completed_entries",
    response_model=ClearCompletedOut,
    summary="Clear completed todo entries",
    description="Delete all completed entries of the calling user and cancel their pending notifications.",
)
def clear_completed_entries(
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> ClearCompletedOut:
    return ClearCompletedOut(deleted=application.delete_completed_todo_entries(claims))


# PUBLIC_INTERFACE
@router.get(
    "",
    response_model=List[TodoEntryOut],
    summary="List todo entries",
    description="List the calling user's todo entries in creation order.",
)
def list_todo_entries(
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> List[TodoEntryOut]:
    return [TodoEntryOut(**e) for e in application.get_todo_entries(claims)]  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.post(
    "",
    response_model=TodoEntryOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create todo entry",
    description=(
        "Create a todo entry. When reminder_type is not 'none', a notification is "
        "scheduled for each of due_date_time and reminder_date_time that is set."
    ),
    responses={
        201: {"description": "Todo entry created"},
        400: {"description": "Unknown category"},
    },
)
def create_todo_entry(
    payload: TodoEntryIn,
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> TodoEntryOut:
    created = application.create_todo_entry(claims, payload.model_dump())
    return TodoEntryOut(**created)  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.get(
    "/{entry_id}",
    response_model=TodoEntryOut,
    summary="Get todo entry",
    responses={404: {"description": "Todo entry not found"}},
)
def get_todo_entry(
    entry_id: str,
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> TodoEntryOut:
    item = application.get_todo_entry(claims, entry_id)
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Todo entry not found")
    return TodoEntryOut(**item)  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.put(
    "/{entry_id}",
    response_model=TodoEntryOut,
    summary="Replace todo entry",
    description=(
        "Replace an existing todo entry. Pending notifications are kept when their "
        "instant is unchanged and replaced when it changed."
    ),
    responses={
        404: {"description": "Todo entry not found"},
        400: {"description": "Unknown category"},
    },
)
def put_todo_entry(
    entry_id: str,
    payload: TodoEntryIn,
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> TodoEntryOut:
    updated = application.update_todo_entry(claims, entry_id, payload.model_dump())
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Todo entry not found")
    return TodoEntryOut(**updated)  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.delete(
    "/{entry_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete todo entry",
    responses={204: {"description": "Todo entry deleted"}, 404: {"description": "Todo entry not found"}},
)
def delete_todo_entry(
    entry_id: str,
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> None:
    if not application.delete_todo_entry(claims, entry_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Todo entry not found")
    return None
