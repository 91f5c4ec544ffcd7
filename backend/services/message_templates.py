"""
Konipai CRM - Templates de messages

- Lecture des templates (collection whatsapp_templates), doublons: le plus récent gagne
- Substitution littérale des {{variables}} (aucun échappement)
- Messages de secours codés en dur, un par type de notification
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any

from pydantic import ValidationError

from models import Order, Template, NotificationKind
from services.pocketbase import PocketBaseError, quote_filter

logger = logging.getLogger("message_templates")

TEMPLATES_COLLECTION = "whatsapp_templates"

# Variables remplies automatiquement à partir de la commande
COMMON_VARIABLES = ["customerName", "orderId", "amount", "orderDate", "productDetails"]
REQUIRED_VARIABLES = ["customerName", "orderId"]

VARIABLE_REGEX = re.compile(r"\{\{([^}]+)\}\}")


# ==================== STORE ====================

class TemplateStore:
    """Lecture seule des templates PocketBase"""

    def __init__(self, client, collection: str = TEMPLATES_COLLECTION):
        self.client = client
        self.collection = collection

    async def list_unique(self) -> List[Template]:
        """Un template par nom: le dernier créé l'emporte"""
        records = await self.client.get_full_list(self.collection, sort="created")
        unique: Dict[str, Template] = {}
        for record in records:
            try:
                template = Template.model_validate(record)
            except ValidationError as e:
                logger.warning(f"Skipping malformed template {record.get('id')}: {e}")
                continue
            unique[template.name] = template
        return sorted(unique.values(), key=lambda t: t.name)

    async def get_content(self, name: str) -> Optional[str]:
        """
        Contenu du template actif `name`, ou None si absent / inactif /
        store indisponible (le dispatcher bascule alors sur le message de secours).
        """
        try:
            result = await self.client.list(
                self.collection,
                page=1,
                per_page=1,
                filter=f"name = {quote_filter(name)}",
                sort="-created",
            )
        except PocketBaseError as e:
            logger.warning(f"Template store unavailable for {name}: {e}")
            return None

        items = result.get("items", []) if result else []
        if not items:
            return None

        try:
            template = Template.model_validate(items[0])
        except ValidationError as e:
            logger.warning(f"Malformed template {name}: {e}")
            return None
        if not template.is_active or not template.content:
            return None
        return template.content


# ==================== RENDU ====================

def format_order_date(created: Optional[str]) -> str:
    """Date PocketBase ("2024-05-01 10:00:00.000Z") → 01/05/2024"""
    if created:
        try:
            parsed = datetime.fromisoformat(created.replace(" ", "T").replace("Z", "+00:00"))
            return parsed.strftime("%d/%m/%Y")
        except ValueError:
            logger.debug(f"Unparseable order date: {created}")
    return datetime.now(timezone.utc).strftime("%d/%m/%Y")


def format_amount(value: Any) -> str:
    """1499.0 → "1499", 1499.5 → "1499.5" """
    if value is None or value == "":
        return ""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value)
    if number.is_integer():
        return str(int(number))
    return f"{number:g}"


def format_product_details(items: List[Dict[str, Any]]) -> str:
    """Bloc récapitulatif: "2x Tote Bag - ₹499" + total"""
    if not items:
        return ""
    lines = [f"{item['quantity']}x {item['name']} - ₹{format_amount(item['price'])}" for item in items]
    total = sum(item["price"] * item["quantity"] for item in items)
    return "*Order Details:*\n" + "\n".join(lines) + f"\n\n*Total: ₹{format_amount(total)}*"


def base_parameters(order: Order) -> Dict[str, str]:
    """Variables communes dérivées de la commande"""
    params = {
        "customerName": order.customer_name or "",
        "orderId": order.id,
        "amount": format_amount(order.amount),
        "orderDate": format_order_date(order.created),
        "productDetails": "",
    }
    if order.customer_phone:
        params["phone"] = order.customer_phone
    if order.customer_email:
        params["email"] = order.customer_email
    if order.shipping_address_text:
        params["address"] = order.shipping_address_text
    return params


def render_template(content: str, parameters: Dict[str, str]) -> str:
    """Remplacement littéral, les placeholders inconnus restent en place"""
    for key, value in parameters.items():
        content = content.replace("{{" + key + "}}", value if value is not None else "")
    return content


def extract_variables(content: str) -> List[str]:
    seen = []
    for name in VARIABLE_REGEX.findall(content or ""):
        if name not in seen:
            seen.append(name)
    return seen


def validate_template_variables(content: str) -> Dict[str, Any]:
    """
    Vérifie la présence des variables obligatoires.
    feedbackLink devient obligatoire dès que le template y fait référence.
    """
    variables = extract_variables(content)
    required = list(REQUIRED_VARIABLES)
    if "{{feedbackLink}}" in (content or ""):
        required.append("feedbackLink")
    missing = [v for v in required if v not in variables]
    return {
        "all_variables": variables,
        "custom_variables": [v for v in variables if v not in COMMON_VARIABLES],
        "missing_variables": missing,
        "is_valid": not missing,
    }


# ==================== MESSAGES DE SECOURS ====================

def fallback_message(kind: str, p: Dict[str, str]) -> str:
    """Message codé en dur quand le template est introuvable. "" si type inconnu."""
    message = _fallback_body(kind, p)
    if message and p.get("additionalInfo"):
        message += f"\n\n{p['additionalInfo']}"
    return message


def _fallback_body(kind: str, p: Dict[str, str]) -> str:
    name = p.get("customerName", "")
    order_id = p.get("orderId", "")

    if kind == NotificationKind.ORDER_CONFIRMATION.value:
        details = p.get("productDetails") or f"*Total: ₹{p.get('amount', '')}*"
        return (
            f"🎉 *Order Confirmation* 🎉\n\nHi {name},\n\nYour order #{order_id} has been confirmed!\n\n"
            f"{details}\n\nThank you for your order! We'll notify you when it ships."
        )
    if kind == NotificationKind.PAYMENT_SUCCESS.value:
        message = (
            f"✅ *Payment Successful* ✅\n\nHi {name},\n\nYour payment of ₹{p.get('amount', '')} "
            f"for order #{order_id} has been successfully received.\n\nThank you for your purchase!"
        )
        if p.get("orderLink"):
            message += f"\n\nTrack it here: {p['orderLink']}"
        return message
    if kind == NotificationKind.PAYMENT_FAILED.value:
        message = (
            f"⚠️ *Payment Failed* ⚠️\n\nHi {name},\n\nWe were unable to process your payment of "
            f"₹{p.get('amount', '')} for order #{order_id}."
        )
        if p.get("retryLink"):
            message += f"\n\nYou can retry your payment here: {p['retryLink']}"
        return message + "\n\nLet us know if you need help."
    if kind == NotificationKind.ORDER_SHIPPED.value:
        return (
            f"📦 *Order Shipped* 📦\n\nHi {name},\n\nYour order #{order_id} has been shipped!\n\n"
            f"Tracking: {p.get('trackingLink', '')}\nCarrier: {p.get('carrier', '')}\n\n"
            f"You will receive your package soon. Thank you for your patience!"
        )
    if kind == NotificationKind.OUT_FOR_DELIVERY.value:
        return (
            f"🚚 *Out for Delivery* 🚚\n\nHi {name},\n\nYour order #{order_id} is out for delivery "
            f"and will arrive today!\n\nPlease ensure someone is available to receive the package."
        )
    if kind == NotificationKind.ORDER_DELIVERED.value:
        message = f"🎉 *Order Delivered* 🎉\n\nHi {name},\n\nYour order #{order_id} has been delivered!"
        if p.get("feedbackLink"):
            message += f"\n\nWe hope you love your purchase. Please share your feedback here: {p['feedbackLink']}"
        return message + "\n\nThank you for shopping with us!"
    if kind == NotificationKind.REQUEST_REVIEW.value:
        message = (
            f"⭐ *How Was Your Experience?* ⭐\n\nHi {name},\n\nWe hope you're enjoying your recent "
            f"purchase (Order #{order_id}).\n\nWe'd love to hear your feedback!"
        )
        if p.get("reviewLink"):
            message += f"\n\nLeave a quick review here: {p['reviewLink']}"
        return message
    if kind == NotificationKind.REFUND_CONFIRMATION.value:
        amount = p.get("refundAmount") or p.get("amount", "")
        return (
            f"💰 *Refund Confirmation* 💰\n\nHi {name},\n\nWe've processed a refund of ₹{amount} "
            f"for your order #{order_id}.\n\nThe refund should appear in your account within "
            f"5-7 business days, depending on your bank's processing time."
        )
    if kind == NotificationKind.REORDER_REMINDER.value:
        return (
            f"🔔 *Time to Reorder?* 🔔\n\nHi {name},\n\nIt's been a while since your last purchase "
            f"(Order #{order_id}).\n\nRunning low on supplies? We're here to help you restock!"
        )
    if kind == NotificationKind.ABANDONED_CART.value:
        return f"🛒 Hi {name}, you left something in your cart! Complete your order whenever you're ready."
    return ""
