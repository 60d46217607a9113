from fastapi import APIRouter, Depends, status
from typing import List

from schemas.travel_plan_schema import TravelPlan, TravelPlanCreate, JoinTravelPlanRequest
from core.errors import NotFoundError
from services.firestore_service import FirestoreService
from api.dependencies import get_firestore_service, http_error

router = APIRouter(
    prefix="/travel-plans",
    tags=["Travel Plans"],
    responses={404: {"description": "Not found"}},
)


async def _load_plan(service: FirestoreService, plan_id: str) -> TravelPlan:
    """Looks in the caller's own collection first, then in the shared one."""
    plan = await service.fetch_travel_plan(plan_id)
    if plan is None:
        plan = await service.fetch_travel_plan(plan_id, shared=True)
    if plan is None:
        raise NotFoundError()
    return plan


@router.get("", response_model=List[TravelPlan])
async def list_travel_plans(service: FirestoreService = Depends(get_firestore_service)):
    """Own travel plans together with the ones shared with the caller."""
    try:
        return await service.fetch_travel_plans()
    except Exception as e:
        raise http_error(e)


@router.post("", response_model=TravelPlan, status_code=status.HTTP_201_CREATED)
async def create_travel_plan(
    body: TravelPlanCreate,
    service: FirestoreService = Depends(get_firestore_service),
):
    try:
        plan = TravelPlan(**body.model_dump())
        return await service.save_travel_plan(plan)
    except Exception as e:
        raise http_error(e)


@router.put("/{plan_id}", response_model=TravelPlan)
async def update_travel_plan(
    plan_id: str,
    body: TravelPlanCreate,
    service: FirestoreService = Depends(get_firestore_service),
):
    try:
        existing = await _load_plan(service, plan_id)
        previous_image = existing.local_image_file_name
        updated = await service.save_travel_plan(TravelPlan(**{**existing.model_dump(), **body.model_dump()}))
        if previous_image and previous_image != updated.local_image_file_name:
            service.delete_travel_plan_image_locally(previous_image)
        return updated
    except Exception as e:
        raise http_error(e)


@router.delete("/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_travel_plan(plan_id: str, service: FirestoreService = Depends(get_firestore_service)):
    try:
        plan = await _load_plan(service, plan_id)
        await service.delete_travel_plan(plan)
    except Exception as e:
        raise http_error(e)


@router.post("/{plan_id}/share", response_model=TravelPlan)
async def share_travel_plan(plan_id: str, service: FirestoreService = Depends(get_firestore_service)):
    """Turns a private plan into a shared one and returns it with its share code."""
    try:
        plan = await _load_plan(service, plan_id)
        return await service.share_travel_plan(plan)
    except Exception as e:
        raise http_error(e)


@router.post("/join", response_model=TravelPlan)
async def join_travel_plan(
    body: JoinTravelPlanRequest,
    service: FirestoreService = Depends(get_firestore_service),
):
    try:
        return await service.join_travel_plan_by_share_code(body.share_code)
    except Exception as e:
        raise http_error(e)
