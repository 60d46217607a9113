from fastapi import Depends, HTTPException, Request, status

from core.errors import (
    APIClientError,
    AuthenticationRequiredError,
    InvalidPayloadError,
    NotFoundError,
    RemoteOperationError,
)
from core.security import get_current_user_id
from services.firestore_service import FirestoreService
from services.migration_service import CloudKitMigrationService


def get_firestore_service(request: Request, user_id: str = Depends(get_current_user_id)) -> FirestoreService:
    """The shared Firestore service, acting for the caller of this request."""
    return request.app.state.firestore_service.bound_to(user_id)


def get_migration_service(request: Request) -> CloudKitMigrationService:
    return request.app.state.migration_service


def http_error(e: Exception) -> HTTPException:
    """Translates a storage error into the HTTP response the routers return."""
    if isinstance(e, AuthenticationRequiredError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, InvalidPayloadError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, RemoteOperationError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Storage backend error: {e}")
    if isinstance(e, APIClientError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return HTTPException(status_code=500, detail=f"An unexpected error occurred: {e}")
