from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from ..application import Application, get_application
from ..auth import get_user_claims
from ..models import UserClaims
from ..schemas import TodoCategoryIn, TodoCategoryOut

router = APIRouter(
    prefix="/api/user/todo_categories",
    tags=["todo categories"],
)


# PUBLIC_INTERFACE
@router.get(
    "",
    response_model=List[TodoCategoryOut],
    summary="List todo categories",
    description="List the calling user's todo categories sorted by name.",
)
def list_todo_categories(
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> List[TodoCategoryOut]:
    return [TodoCategoryOut(**c) for c in application.get_todo_categories(claims)]  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.post(
    "",
    response_model=TodoCategoryOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create todo category",
    responses={201: {"description": "Category created"}},
)
def create_todo_category(
    payload: TodoCategoryIn,
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> TodoCategoryOut:
    created = application.create_todo_category(claims, payload.model_dump())
    return TodoCategoryOut(**created)  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.get(
    "/{category_id}",
    response_model=TodoCategoryOut,
    summary="Get todo category",
    responses={404: {"description": "Category not found"}},
)
def get_todo_category(
    category_id: str,
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> TodoCategoryOut:
    item = application.get_todo_category(claims, category_id)
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Todo category not found")
    return TodoCategoryOut(**item)  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.put(
    "/{category_id}",
    response_model=TodoCategoryOut,
    summary="Update todo category",
    description="Replace a category. Entries referencing it pick up the new name and color.",
    responses={404: {"description": "Category not found"}},
)
def update_todo_category(
    category_id: str,
    payload: TodoCategoryIn,
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> TodoCategoryOut:
    updated = application.update_todo_category(claims, category_id, payload.model_dump())
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Todo category not found")
    return TodoCategoryOut(**updated)  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.delete(
    "/{category_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete todo category",
    description="Delete a category. Entries referencing it are kept without a category.",
    responses={204: {"description": "Category deleted"}, 404: {"description": "Category not found"}},
)
def delete_todo_category(
    category_id: str,
    claims: UserClaims = Depends(get_user_claims),
    application: Application = Depends(get_application),
) -> None:
    if not application.delete_todo_category(claims, category_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Todo category not found")
    return None
