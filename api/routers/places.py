from fastapi import APIRouter, Depends, status
from typing import List

from schemas.place_schema import VisitedPlace, VisitedPlaceCreate
from core.errors import NotFoundError
from services.firestore_service import FirestoreService
from api.dependencies import get_firestore_service, http_error

router = APIRouter(
    prefix="/places",
    tags=["Visited Places"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=List[VisitedPlace])
async def list_places(service: FirestoreService = Depends(get_firestore_service)):
    """Visited places of the caller, newest first."""
    try:
        return await service.fetch_places()
    except Exception as e:
        raise http_error(e)


@router.post("", response_model=VisitedPlace, status_code=status.HTTP_201_CREATED)
async def create_place(body: VisitedPlaceCreate, service: FirestoreService = Depends(get_firestore_service)):
    try:
        return await service.save_place(VisitedPlace(**body.model_dump()))
    except Exception as e:
        raise http_error(e)


@router.put("/{place_id}", response_model=VisitedPlace)
async def update_place(place_id: str, body: VisitedPlaceCreate, service: FirestoreService = Depends(get_firestore_service)):
    try:
        existing = await service.fetch_place(place_id)
        if existing is None:
            raise NotFoundError()
        return await service.update_place(VisitedPlace(**{**existing.model_dump(), **body.model_dump()}))
    except Exception as e:
        raise http_error(e)


@router.delete("/{place_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_place(place_id: str, service: FirestoreService = Depends(get_firestore_service)):
    try:
        await service.delete_place(place_id)
    except Exception as e:
        raise http_error(e)
