"""
Service de journalisation des notifications

Collections PocketBase: whatsapp_activities, email_activities
Une erreur de journalisation est loggée puis ignorée (ne bloque jamais l'envoi).
"""

import json
import logging

from config import now_iso
from models import NotificationChannel, SendResult
from services.pocketbase import PocketBaseError, quote_filter

logger = logging.getLogger("activity_logger")

ACTIVITY_COLLECTIONS = {
    NotificationChannel.WHATSAPP.value: "whatsapp_activities",
    NotificationChannel.EMAIL.value: "email_activities",
}


async def log_notification_activity(
    client,
    channel: str,
    order_id: str,
    template_name: str,
    recipient: str,
    result: SendResult,
    message: str = "",
    subject: str = None,
):
    """
    Enregistre une tentative d'envoi

    status: sent | failed
    message_content: JSON {message, response}
    """
    entry = {
        "order_id": order_id,
        "template_name": template_name,
        "recipient": recipient,
        "status": "sent" if result.success else "failed",
        "message_content": json.dumps({
            "message": message,
            "response": {
                "success": result.success,
                "message": result.message or "",
                "error": result.error,
                "timestamp": result.timestamp,
            },
        }, ensure_ascii=False),
        "timestamp": now_iso(),
    }
    if subject:
        entry["subject"] = subject

    try:
        await client.create(ACTIVITY_COLLECTIONS[channel], entry)
    except PocketBaseError as e:
        logger.error(f"Error logging {channel} activity for order {order_id}: {e}")
        return None
    return entry


async def get_order_activities(client, order_id: str, channel: str = NotificationChannel.WHATSAPP.value, limit: int = 50):
    """Historique des notifications d'une commande, plus récentes d'abord"""
    result = await client.list(
        ACTIVITY_COLLECTIONS[channel],
        page=1,
        per_page=limit,
        filter=f"order_id = {quote_filter(order_id)}",
        sort="-timestamp",
    )
    return {"activities": result.get("items", []), "total": result.get("totalItems", 0)}
