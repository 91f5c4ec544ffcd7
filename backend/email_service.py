"""
Service d'emails Konipai CRM
- SendGrid  : API transactionnelle
- EmailJS   : service de délivrance côté client (API REST)
- Mailpit   : capture / relais local (dev, staging)

Contrat commun: send(to, subject, body, template_vars=None) -> SendResult
Les erreurs de configuration (clé manquante) renvoient un SendResult en échec,
jamais une exception.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import httpx
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content

import config
from models import SendResult, NotificationKind

logger = logging.getLogger("email_service")

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
EMAILJS_API_URL = "https://api.emailjs.com/api/v1.0/email/send"


def is_valid_email(email: str) -> bool:
    return bool(email) and bool(EMAIL_REGEX.match(email))


def apply_template_vars(body: str, template_vars: Optional[Dict[str, Any]] = None) -> str:
    """Remplacement littéral des {{variables}}"""
    if not template_vars:
        return body
    for key, value in template_vars.items():
        body = body.replace("{{" + key + "}}", str(value))
    return body


def strip_html(html: str) -> str:
    text = re.sub(r"<br\s*/?>", "\n", html)
    return re.sub(r"<[^>]+>", "", text).strip()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _failed(message: str) -> SendResult:
    return SendResult(success=False, message=message, error=message, status="failed", timestamp=_now())


class EmailProvider:
    """Base commune: validation destinataire + substitution des variables"""

    name = "base"

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        template_vars: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        if not is_valid_email(to):
            logger.warning(f"[{self.name}] Invalid email address format: {to!r}")
            return _failed("Invalid email address format")

        html = apply_template_vars(body, template_vars)
        try:
            return await self._deliver(to, subject, html, template_vars or {})
        except httpx.HTTPError as e:
            logger.error(f"[{self.name}] Exception envoi email: {e}")
            return _failed(str(e))

    async def _deliver(self, to: str, subject: str, html: str, template_vars: Dict[str, Any]) -> SendResult:
        raise NotImplementedError

    async def close(self):
        pass


# ==================== SENDGRID ====================

class SendGridEmailProvider(EmailProvider):
    """Envoi via l'API SendGrid (SDK synchrone, exécuté dans un thread)"""

    name = "sendgrid"

    def __init__(self, api_key: str, sender: str, sender_name: str = "Konipai"):
        self.api_key = api_key
        self.sender = sender
        self.sender_name = sender_name

    def _send_email(self, to_email: str, subject: str, html_content: str) -> SendResult:
        if not self.api_key:
            logger.error("SENDGRID_API_KEY non configurée")
            return _failed("SENDGRID_API_KEY is not configured")

        try:
            message = Mail(
                from_email=Email(self.sender, self.sender_name),
                to_emails=To(to_email),
                subject=subject,
                html_content=Content("text/html", html_content)
            )

            sg = SendGridAPIClient(self.api_key)
            response = sg.send(message)

            if response.status_code in [200, 202]:
                logger.info(f"Email envoyé à {to_email}: {subject}")
                message_id = None
                if response.headers:
                    message_id = response.headers.get("X-Message-Id")
                return SendResult(success=True, message="Email sent", message_id=message_id, status="sent", timestamp=_now())
            else:
                logger.error(f"Erreur envoi email: {response.status_code}")
                return _failed(f"SendGrid responded with status: {response.status_code}")

        except Exception as e:
            # python-http-client lève ses propres HTTPError, hors hiérarchie httpx
            logger.error(f"Exception envoi email: {str(e)}")
            return _failed(str(e))

    async def _deliver(self, to, subject, html, template_vars):
        return await asyncio.to_thread(self._send_email, to, subject, html)


# ==================== EMAILJS ====================

EMAILJS_TEMPLATE_IDS = {kind.value: f"template_{kind.value}" for kind in NotificationKind}
EMAILJS_TEMPLATE_IDS[NotificationKind.ABANDONED_CART.value] = "template_abandoned_cart"


class EmailJSProvider(EmailProvider):
    """
    Envoi via l'API REST EmailJS.
    Le template EmailJS est choisi par template_vars["templateName"].
    """

    name = "emailjs"

    def __init__(
        self,
        service_id: str,
        user_id: str,
        access_token: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        template_ids: Optional[Dict[str, str]] = None,
    ):
        self.service_id = service_id
        self.user_id = user_id
        self.access_token = access_token
        self.http = http_client or httpx.AsyncClient(timeout=30.0)
        self.template_ids = template_ids or EMAILJS_TEMPLATE_IDS

    async def _deliver(self, to, subject, html, template_vars):
        if not self.user_id:
            logger.error("EmailJS User ID is missing")
            return _failed("EmailJS User ID is missing")
        if not self.service_id:
            logger.error("EmailJS Service ID is missing")
            return _failed("EmailJS Service ID is missing")

        template_name = template_vars.get("templateName", "custom_email")
        template_id = self.template_ids.get(template_name)
        if not template_id:
            return _failed(f"Template {template_name} is not configured")

        payload = {
            "service_id": self.service_id,
            "template_id": template_id,
            "user_id": self.user_id,
            "template_params": {
                "to_email": to,
                "subject": subject,
                "message": html,
                **{k: str(v) for k, v in template_vars.items()},
            },
        }
        if self.access_token:
            payload["accessToken"] = self.access_token

        logger.info(f"Sending {template_name} email to: {to}")
        resp = await self.http.post(EMAILJS_API_URL, json=payload)
        if resp.status_code != 200:
            logger.error(f"EmailJS error {resp.status_code}: {resp.text}")
            return _failed(resp.text or f"EmailJS responded with status: {resp.status_code}")

        return SendResult(success=True, message="Email sent successfully", status="sent", timestamp=_now())

    async def close(self):
        await self.http.aclose()


# ==================== MAILPIT ====================

class MailpitProvider(EmailProvider):
    """Envoi via l'API HTTP de Mailpit (POST /api/v1/send)"""

    name = "mailpit"

    def __init__(self, api_url: str, sender: str, http_client: Optional[httpx.AsyncClient] = None):
        self.api_url = api_url.rstrip("/")
        self.sender = sender
        self.http = http_client or httpx.AsyncClient(timeout=30.0)

    async def _deliver(self, to, subject, html, template_vars):
        payload = {
            "From": {"Email": self.sender},
            "To": [{"Email": to}],
            "Subject": subject,
            "HTML": html,
            "Text": strip_html(html),
        }
        resp = await self.http.post(f"{self.api_url}/send", json=payload)
        if resp.status_code >= 400:
            logger.error(f"Mailpit error {resp.status_code}: {resp.text}")
            return _failed(f"Mailpit responded with status: {resp.status_code}")

        try:
            message_id = resp.json().get("ID")
        except ValueError:
            message_id = None
        logger.info(f"Email envoyé à {to}: {subject}")
        return SendResult(
            success=True,
            message="Email sent",
            message_id=message_id or f"mailpit-{int(datetime.now(timezone.utc).timestamp() * 1000)}",
            status="sent",
            timestamp=_now(),
        )

    async def close(self):
        await self.http.aclose()


# ==================== FACTORY ====================

def build_email_sender(provider: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None) -> EmailProvider:
    """Construit le provider configuré (EMAIL_PROVIDER)"""
    provider = (provider or config.EMAIL_PROVIDER).lower()

    if provider == "sendgrid":
        return SendGridEmailProvider(config.SENDGRID_API_KEY, config.EMAIL_FROM)
    if provider == "emailjs":
        return EmailJSProvider(
            config.EMAILJS_SERVICE_ID,
            config.EMAILJS_USER_ID,
            config.EMAILJS_ACCESS_TOKEN,
            http_client=http_client,
        )
    if provider == "mailpit":
        return MailpitProvider(config.MAILPIT_API_URL, config.EMAIL_FROM, http_client=http_client)

    raise ValueError(f"Unknown EMAIL_PROVIDER: {provider}. Valides: sendgrid, emailjs, mailpit")


# ==================== CONTENU ====================

EMAIL_SUBJECTS = {
    NotificationKind.ORDER_CONFIRMATION.value: "Order Confirmation - #{order_id}",
    NotificationKind.PAYMENT_SUCCESS.value: "Payment Received - Order #{order_id}",
    NotificationKind.PAYMENT_FAILED.value: "Payment Failed - Order #{order_id}",
    NotificationKind.ORDER_SHIPPED.value: "Your Order Has Shipped - #{order_id}",
    NotificationKind.OUT_FOR_DELIVERY.value: "Out for Delivery - Order #{order_id}",
    NotificationKind.ORDER_DELIVERED.value: "Order Delivered - #{order_id}",
    NotificationKind.REFUND_CONFIRMATION.value: "Refund Processed - Order #{order_id}",
}


def render_notification_email(kind: str, order_id: str, message: str) -> tuple:
    """
    Habille un message de notification (texte WhatsApp) en email HTML.
    Returns: (subject, html)
    """
    subject = EMAIL_SUBJECTS.get(kind, "Update on your order #{order_id}").format(order_id=order_id)
    body_html = message.replace("\n", "<br>")

    html_content = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; background-color: #f5f5f5; }}
            .container {{ max-width: 600px; margin: 0 auto; background: white; border-radius: 8px; overflow: hidden; }}
            .header {{ background: #111827; color: white; padding: 20px; text-align: center; }}
            .content {{ padding: 30px; line-height: 1.5; }}
            .footer {{ background: #F9FAFB; padding: 15px; text-align: center; font-size: 12px; color: #6B7280; }}
        </style>
    </head>
    <body>
        <div class="container">
            <div class="header"><h1>{subject}</h1></div>
            <div class="content">{body_html}</div>
            <div class="footer">Konipai - Notifications commande</div>
        </div>
    </body>
    </html>
    """
    return subject, html_content
