from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt
from jose.exceptions import JWTError
from pydantic import BaseModel

import settings
from errors import AuthenticationRequired

router = APIRouter()

# auto_error=False: отсутствие токена превращаем в AuthenticationRequired (401)
bearer_scheme = HTTPBearer(auto_error=False)


class Me(BaseModel):
    user_id: str


# ─── Utility functions ─────────────────────────────────────────────────────────
def decode_user_id(token: str) -> str:
    """Validate a bearer token issued by the identity provider; returns its subject."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise AuthenticationRequired("Invalid token")
    uid = payload.get("sub")
    if not uid:
        raise AuthenticationRequired("Invalid token")
    return uid


# ─── Dependency: get_current_user_id ───────────────────────────────────────────
async def get_current_user_id(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    if creds is None or not creds.credentials:
        raise AuthenticationRequired("Missing bearer token")
    return decode_user_id(creds.credentials)

@router.get("/me", response_model=Me)
async def me(user_id: str = Depends(get_current_user_id)):
    return Me(user_id=user_id)
