"""
Service d'envoi WhatsApp (API Business tierce)

Format API:
- POST /send-message   {number, message, variables?}
- GET  /status

Ne lève jamais: toute erreur devient un SendResult(success=False).
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import httpx

import config
from models import SendResult

logger = logging.getLogger("whatsapp_sender")


def format_phone_number(phone: str, country_code: str = "91") -> str:
    """Chiffres uniquement, indicatif pays ajouté s'il manque"""
    cleaned = re.sub(r"\D", "", phone or "")
    if not cleaned.startswith(country_code):
        cleaned = country_code + cleaned
    return cleaned


class WhatsAppSender:
    """Client de l'API WhatsApp"""

    def __init__(
        self,
        api_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        country_code: str = "91",
    ):
        self.api_url = api_url.rstrip("/")
        self.http = http_client or httpx.AsyncClient(base_url=self.api_url, timeout=timeout)
        self.country_code = country_code

    async def send_message(
        self,
        phone: str,
        message: str,
        variables: Optional[Dict[str, str]] = None,
    ) -> SendResult:
        number = format_phone_number(phone, self.country_code)
        payload: Dict[str, Any] = {"number": number, "message": message}
        if variables:
            payload["variables"] = variables

        logger.info(f"Sending WhatsApp message to {number}")
        return await self._post("/send-message", payload)

    async def check_status(self) -> SendResult:
        try:
            resp = await self.http.get("/status")
            data = _json_or_empty(resp)
            return SendResult(
                success=resp.status_code < 400,
                message=data.get("message") or data.get("status") or f"HTTP {resp.status_code}",
                status=data.get("status"),
                timestamp=_now(),
            )
        except httpx.HTTPError as e:
            logger.error(f"Error checking WhatsApp status: {e}")
            return SendResult(success=False, message="Failed to check WhatsApp status", error=str(e), status="failed")

    async def _post(self, path: str, payload: Dict[str, Any]) -> SendResult:
        try:
            resp = await self.http.post(path, json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"WhatsApp API timeout: {path}")
            return SendResult(success=False, message="WhatsApp API timeout", error=str(e), status="failed", timestamp=_now())
        except httpx.HTTPError as e:
            logger.warning(f"WhatsApp API connection error: {e}")
            return SendResult(success=False, message="WhatsApp API unreachable", error=str(e), status="failed", timestamp=_now())

        data = _json_or_empty(resp)

        if resp.status_code >= 400:
            error = data.get("message") or data.get("error") or f"WhatsApp API responded with status: {resp.status_code}"
            logger.error(f"WhatsApp API error {resp.status_code}: {error}")
            return SendResult(success=False, message=error, error=error, status="failed", timestamp=_now())

        return SendResult(
            success=data.get("success", True) is not False,
            message=data.get("message") or "Message sent",
            message_id=_as_str(data.get("messageId") or data.get("id")),
            status=data.get("status") or "sent",
            timestamp=data.get("timestamp") or _now(),
        )

    async def close(self):
        await self.http.aclose()


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _as_str(value) -> Optional[str]:
    return str(value) if value is not None else None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_whatsapp_sender(http_client: Optional[httpx.AsyncClient] = None) -> WhatsAppSender:
    return WhatsAppSender(
        api_url=config.WHATSAPP_API_URL,
        http_client=http_client,
        timeout=config.WHATSAPP_TIMEOUT,
        country_code=config.WHATSAPP_COUNTRY_CODE,
    )
