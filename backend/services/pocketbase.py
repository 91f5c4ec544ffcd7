"""
Konipai CRM - Client PocketBase

Client REST asynchrone (httpx) vers la base PocketBase hébergée.
Une instance par process, créée par `build_pocketbase_client()` et injectée
(app.state / dépendances FastAPI), jamais de singleton module.

Auth admin:
- token + authenticated_at + expires_at (claim `exp` du JWT, sinon TTL config)
- ré-authentification à la demande si le token est expiré ou rejeté (401)
- retry borné, backoff linéaire, UNIQUEMENT sur erreurs réseau

Erreurs (distinctes, gérées différemment en amont):
- RecordNotFoundError   → 404
- AuthExpiredError      → 401/403 persistant après ré-auth
- PocketBaseAuthError   → identifiants refusés
- PocketBaseNetworkError→ connexion / timeout
- PocketBaseError       → toute autre réponse non 2xx
"""

import asyncio
import base64
import json
import logging
import time
from typing import Optional, Dict, Any, List

import httpx

import config

logger = logging.getLogger("pocketbase")

DEFAULT_TIMEOUT = 30.0
FULL_LIST_BATCH = 500


class PocketBaseError(Exception):
    """Erreur générique PocketBase"""

    def __init__(self, message: str, status: int = 0, data: Optional[dict] = None):
        super().__init__(message)
        self.status = status
        self.data = data or {}


class RecordNotFoundError(PocketBaseError):
    pass


class AuthExpiredError(PocketBaseError):
    pass


class PocketBaseAuthError(PocketBaseError):
    pass


class PocketBaseNetworkError(PocketBaseError):
    pass


def _token_expiry(token: str) -> Optional[float]:
    """Lit le claim `exp` d'un JWT sans vérifier la signature"""
    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
        exp = claims.get("exp")
        return float(exp) if exp else None
    except (IndexError, ValueError, AttributeError):
        return None


class PocketBaseClient:
    """Accès aux collections PocketBase avec auth admin paresseuse"""

    def __init__(
        self,
        base_url: str,
        admin_email: str = "",
        admin_password: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        auth_timeout: float = 10.0,
        max_auth_retries: int = 3,
        auth_retry_delay: float = 1.0,
        token_ttl: int = 1209600,
        sleep=asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.admin_email = admin_email
        self.admin_password = admin_password
        self.http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=DEFAULT_TIMEOUT)
        self.auth_timeout = auth_timeout
        self.max_auth_retries = max_auth_retries
        self.auth_retry_delay = auth_retry_delay
        self.token_ttl = token_ttl
        self._sleep = sleep

        self.token: Optional[str] = None
        self.authenticated_at: Optional[float] = None
        self.expires_at: Optional[float] = None

    # ==================== AUTH ====================

    @property
    def is_authenticated(self) -> bool:
        if not self.token or self.expires_at is None:
            return False
        return time.time() < self.expires_at

    def invalidate(self):
        self.token = None
        self.authenticated_at = None
        self.expires_at = None

    async def authenticate(self) -> str:
        """
        Auth admin avec retry borné sur erreurs réseau.

        Tentatives: 1 + max_auth_retries, attente (n+1) * auth_retry_delay.
        Identifiants refusés → PocketBaseAuthError immédiate (pas de retry).
        """
        attempt = 0
        while True:
            try:
                resp = await self.http.post(
                    "/api/admins/auth-with-password",
                    json={"identity": self.admin_email, "password": self.admin_password},
                    timeout=self.auth_timeout,
                )
            except httpx.TransportError as e:
                logger.error(f"Admin authentication failed (attempt {attempt + 1}): {e}")
                if attempt >= self.max_auth_retries:
                    raise PocketBaseNetworkError(
                        f"Failed to authenticate after {attempt + 1} attempts: {e}"
                    ) from e
                delay = (attempt + 1) * self.auth_retry_delay
                logger.info(f"Retrying authentication in {delay}s...")
                await self._sleep(delay)
                attempt += 1
                continue

            if resp.status_code != 200:
                raise PocketBaseAuthError(
                    f"Admin authentication rejected ({resp.status_code})",
                    status=resp.status_code,
                    data=_safe_json(resp),
                )

            token = resp.json().get("token")
            if not token:
                raise PocketBaseAuthError("Admin authentication returned no token", status=resp.status_code)

            now = time.time()
            self.token = token
            self.authenticated_at = now
            self.expires_at = _token_expiry(token) or (now + self.token_ttl)
            logger.info("Admin authenticated successfully")
            return token

    async def ensure_auth(self) -> str:
        if self.is_authenticated:
            return self.token
        return await self.authenticate()

    async def verify_admin_token(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Vérifie le token d'un admin connecté au frontend (POST /api/admins/auth-refresh).

        Returns:
            Le record admin, ou None si PocketBase refuse le token

        Raises:
            PocketBaseNetworkError: PocketBase injoignable
        """
        try:
            resp = await self.http.post(
                "/api/admins/auth-refresh",
                headers={"Authorization": token},
                timeout=self.auth_timeout,
            )
        except httpx.TransportError as e:
            raise PocketBaseNetworkError(f"PocketBase unreachable: {e}") from e

        if resp.status_code in (400, 401, 403, 404):
            return None
        if resp.status_code >= 400:
            data = _safe_json(resp)
            raise PocketBaseError(
                data.get("message") or f"PocketBase error {resp.status_code}",
                status=resp.status_code,
                data=data,
            )
        return _safe_json(resp).get("admin") or {}

    # ==================== HTTP ====================

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """
        Requête authentifiée. Un 401 déclenche UNE ré-auth + UN rejeu.
        """
        await self.ensure_auth()
        resp = await self._send(method, path, **kwargs)

        if resp.status_code == 401:
            logger.warning(f"PocketBase token rejected on {method} {path}, re-authenticating")
            self.invalidate()
            await self.authenticate()
            resp = await self._send(method, path, **kwargs)
            if resp.status_code == 401:
                raise AuthExpiredError("PocketBase authentication expired", status=401, data=_safe_json(resp))

        if resp.status_code == 404:
            raise RecordNotFoundError(f"Record not found: {path}", status=404, data=_safe_json(resp))
        if resp.status_code == 403:
            raise AuthExpiredError("PocketBase access forbidden", status=403, data=_safe_json(resp))
        if resp.status_code >= 400:
            data = _safe_json(resp)
            raise PocketBaseError(
                data.get("message") or f"PocketBase error {resp.status_code}",
                status=resp.status_code,
                data=data,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = self.token
        try:
            return await self.http.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise PocketBaseNetworkError(f"PocketBase unreachable: {e}") from e

    # ==================== RECORDS ====================

    async def get(self, collection: str, record_id: str, expand: Optional[str] = None) -> Dict[str, Any]:
        params = {"expand": expand} if expand else None
        return await self._request("GET", f"/api/collections/{collection}/records/{record_id}", params=params)

    async def update(self, collection: str, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/api/collections/{collection}/records/{record_id}", json=patch)

    async def create(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/api/collections/{collection}/records", json=data)

    async def delete(self, collection: str, record_id: str) -> None:
        await self._request("DELETE", f"/api/collections/{collection}/records/{record_id}")

    async def list(
        self,
        collection: str,
        page: int = 1,
        per_page: int = 30,
        filter: Optional[str] = None,
        sort: Optional[str] = None,
        expand: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Retourne {page, perPage, totalItems, totalPages, items}"""
        params = {"page": page, "perPage": per_page}
        if filter:
            params["filter"] = filter
        if sort:
            params["sort"] = sort
        if expand:
            params["expand"] = expand
        return await self._request("GET", f"/api/collections/{collection}/records", params=params)

    async def get_full_list(
        self,
        collection: str,
        filter: Optional[str] = None,
        sort: Optional[str] = None,
        expand: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        items = []
        page = 1
        while True:
            result = await self.list(collection, page=page, per_page=FULL_LIST_BATCH, filter=filter, sort=sort, expand=expand)
            batch = result.get("items", [])
            items.extend(batch)
            if len(batch) < FULL_LIST_BATCH or page >= result.get("totalPages", page):
                return items
            page += 1

    async def close(self):
        await self.http.aclose()


def quote_filter(value) -> str:
    """Littéral chaîne pour une expression `filter` PocketBase (guillemets et antislash échappés)"""
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _safe_json(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
        return data if isinstance(data, dict) else {"data": data}
    except ValueError:
        return {"message": resp.text}


def build_pocketbase_client(http_client: Optional[httpx.AsyncClient] = None) -> PocketBaseClient:
    """Factory: client configuré depuis l'environnement"""
    return PocketBaseClient(
        base_url=config.POCKETBASE_URL,
        admin_email=config.POCKETBASE_ADMIN_EMAIL,
        admin_password=config.POCKETBASE_ADMIN_PASSWORD,
        http_client=http_client,
        auth_timeout=config.POCKETBASE_AUTH_TIMEOUT,
        max_auth_retries=config.POCKETBASE_AUTH_RETRIES,
        auth_retry_delay=config.POCKETBASE_AUTH_RETRY_DELAY,
        token_ttl=config.POCKETBASE_TOKEN_TTL,
    )
