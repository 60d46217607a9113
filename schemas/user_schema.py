from pydantic import BaseModel, EmailStr


class UserInfo(BaseModel):
    """The caller as seen by Firebase Auth."""
    uid: str
    email: EmailStr | None = None
    full_name: str | None = None
    email_verified: bool = False
    sign_in_provider: str | None = None
