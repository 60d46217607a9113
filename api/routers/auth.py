from fastapi import APIRouter, Depends

from schemas.user_schema import UserInfo
from core.security import get_current_user

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"],
    responses={404: {"description": "Not found"}},
)


@router.get("/me", response_model=UserInfo)
async def read_users_me(current_user: dict = Depends(get_current_user)):
    """
    The authenticated caller. Accounts are created on the device through
    Firebase Auth, so this is the only auth endpoint.
    """
    firebase_claims = current_user.get("firebase") or {}
    return UserInfo(
        uid=current_user["uid"],
        email=current_user.get("email"),
        full_name=current_user.get("name"),
        email_verified=bool(current_user.get("email_verified", False)),
        sign_in_provider=firebase_claims.get("sign_in_provider"),
    )
