from fastapi import APIRouter, Depends, status
from typing import List

from schemas.plan_schema import Plan, PlanCreate
from core.errors import NotFoundError
from services.firestore_service import FirestoreService
from api.dependencies import get_firestore_service, http_error

router = APIRouter(
    prefix="/plans",
    tags=["Plans"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=List[Plan])
async def list_plans(service: FirestoreService = Depends(get_firestore_service)):
    try:
        return await service.fetch_plans()
    except Exception as e:
        raise http_error(e)


@router.post("", response_model=Plan, status_code=status.HTTP_201_CREATED)
async def create_plan(body: PlanCreate, service: FirestoreService = Depends(get_firestore_service)):
    try:
        return await service.save_plan(Plan(**body.model_dump()))
    except Exception as e:
        raise http_error(e)


@router.put("/{plan_id}", response_model=Plan)
async def update_plan(plan_id: str, body: PlanCreate, service: FirestoreService = Depends(get_firestore_service)):
    try:
        existing = await service.fetch_plan(plan_id)
        if existing is None:
            raise NotFoundError()
        return await service.save_plan(Plan(**{**existing.model_dump(), **body.model_dump()}))
    except Exception as e:
        raise http_error(e)


@router.delete("/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(plan_id: str, service: FirestoreService = Depends(get_firestore_service)):
    try:
        await service.delete_plan(plan_id)
    except Exception as e:
        raise http_error(e)
