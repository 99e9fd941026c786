from typing import Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.security import verify_access_token
from core.exceptions import credentials_exception, forbidden_exception
from database import db
from models.common import UserRole

bearer_scheme = HTTPBearer(auto_error=False)


async def load_user_from_token(token: Optional[str]) -> Optional[dict]:
    """Utilisateur actif correspondant au token, sinon None (utilisé aussi par le websocket)."""
    if not token:
        return None
    payload = verify_access_token(token)
    if not payload or not payload.get("sub"):
        return None
    user = await db.users.find_one({"user_id": payload["sub"]}, {"_id": 0})
    if not user or not user.get("is_active", True):
        return None
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    if not credentials:
        raise credentials_exception()
    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise credentials_exception()

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception()

    user = await db.users.find_one({"user_id": user_id}, {"_id": 0})
    if not user:
        raise credentials_exception()
    if not user.get("is_active", True):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Compte désactivé",
        )
    return user


def require_role(*roles: UserRole):
    """
    Dépendance qui vérifie que l'utilisateur connecté possède l'un des rôles donnés.
    Usage : Depends(require_role(UserRole.COURIER, UserRole.ADMIN))
    """
    async def _check(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("role") not in [r.value for r in roles]:
            raise forbidden_exception()
        return current_user
    return _check


def get_notifier(request: Request):
    """Bus d'événements démarré par le lifespan (None hors application)."""
    return getattr(request.app.state, "notifier", None)


# Raccourcis pratiques
require_admin = require_role(UserRole.ADMIN)
require_merchant = require_role(UserRole.MERCHANT, UserRole.ADMIN)
require_courier = require_role(UserRole.COURIER, UserRole.ADMIN)
require_customer = require_role(UserRole.CUSTOMER)
