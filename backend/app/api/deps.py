from typing import Optional
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import get_db
from app.services.auth import auth_service
from app.services.billing import billing_service
from app.models.user import User

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = auth_service.decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")

    # First authenticated request creates the user with the starting grant
    user = await billing_service.ensure_user(db, str(payload["sub"]), email=payload.get("email"))

    if user.is_blocked or user.deleted_at is not None:
        raise HTTPException(status_code=403, detail="User is blocked")

    return user
