from fastapi import APIRouter, Depends, status

from schemas.migration_schema import MigrationReport, MigrationStatus
from core.security import get_current_user_id
from services.migration_service import CloudKitMigrationService
from api.dependencies import get_migration_service, http_error

router = APIRouter(
    prefix="/migration",
    tags=["CloudKit Migration"],
    responses={404: {"description": "Not found"}},
)


@router.get("/status", response_model=MigrationStatus)
async def migration_status(
    user_id: str = Depends(get_current_user_id),
    migration: CloudKitMigrationService = Depends(get_migration_service),
):
    return MigrationStatus(state=migration.state(user_id), migration_key=migration.flag_key(user_id))


@router.post("/run", response_model=MigrationReport)
async def run_migration(
    user_id: str = Depends(get_current_user_id),
    migration: CloudKitMigrationService = Depends(get_migration_service),
):
    """
    Copies the caller's CloudKit records into Firestore. Does nothing once the
    migration has completed; a failed run can simply be retried.
    """
    try:
        return await migration.migrate_all_data(user_id)
    except Exception as e:
        raise http_error(e)


@router.delete("/flag", status_code=status.HTTP_204_NO_CONTENT)
async def reset_migration_flag(
    user_id: str = Depends(get_current_user_id),
    migration: CloudKitMigrationService = Depends(get_migration_service),
):
    """Clears the caller's own completion flag."""
    migration.reset_migration_flag(user_id)
