"""
Konipai CRM - Auth des routes /crm

Le frontend se connecte directement à PocketBase (admins.authWithPassword via
le proxy /api). Chaque appel /crm porte ce token en Bearer; il est vérifié
auprès de PocketBase avant toute lecture ou mutation.
"""

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import logging

from services.pocketbase import PocketBaseError

logger = logging.getLogger("auth")
security = HTTPBearer(auto_error=False)


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
):
    """Récupère l'admin connecté depuis le token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Non authentifié")

    try:
        admin = await request.app.state.pocketbase.verify_admin_token(credentials.credentials)
    except PocketBaseError as e:
        logger.error(f"Token verification failed: {e}")
        raise HTTPException(status_code=503, detail="Authentification indisponible")

    if admin is None:
        raise HTTPException(status_code=401, detail="Session expirée")

    return admin
