"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Konipai CRM - Notification Dispatcher                                       ║
║                                                                              ║
║  TABLE DE TRANSITION → NOTIFICATION                                          ║
║                                                                              ║
║  status (si modifié par le patch):                                           ║
║    processing        → PAYMENT_SUCCESS si payment_status (avant) = paid      ║
║    shipped           → ORDER_SHIPPED (tracking, transporteur)                ║
║    out_for_delivery  → OUT_FOR_DELIVERY                                      ║
║    delivered         → ORDER_DELIVERED (lien feedback)                       ║
║    cancelled         → REFUND_CONFIRMATION si refund_amount présent          ║
║                                                                              ║
║  payment_status (si modifié par le patch):                                   ║
║    paid              → PAYMENT_SUCCESS                                       ║
║    failed            → PAYMENT_FAILED (lien retry)                           ║
║                                                                              ║
║  RÈGLES:                                                                     ║
║  - pas de customer_phone → aucun envoi, aucune erreur                        ║
║  - envoi en tâche de fond (fire-and-forget), jamais attendu par la requête   ║
║  - aucune relance, aucune file d'attente: échec = log uniquement             ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import asyncio
import base64
import json
import logging
import time
from typing import List, Optional, Dict, Any, Set, Callable, Awaitable

from models import (
    Order,
    OrderStatus,
    PaymentStatus,
    NotificationKind,
    NotificationChannel,
    NotificationAction,
    OrderTransition,
    SendResult,
    DEFAULT_CARRIER,
)
from services.message_templates import (
    base_parameters,
    render_template,
    fallback_message,
    format_amount,
    format_product_details,
)
from services.activity_logger import log_notification_activity
from email_service import is_valid_email, render_notification_email

logger = logging.getLogger("notification_dispatcher")


# ════════════════════════════════════════════════════════════════════════════
# LIENS
# ════════════════════════════════════════════════════════════════════════════

def tracking_fallback_link(origin: str, order_id: str) -> str:
    return f"{origin.rstrip('/')}/track/{order_id}"


def feedback_link(origin: str, order_id: str) -> str:
    return f"{origin.rstrip('/')}/feedback/{order_id}"


def retry_payment_link(origin: str, order_id: str) -> str:
    return f"{origin.rstrip('/')}/checkout/retry/{order_id}"


def order_link(origin: str, order_id: str) -> str:
    return f"{origin.rstrip('/')}/orders/{order_id}"


def review_link(origin: str, order_id: str, product_id: str = "", user_id: str = "") -> str:
    """Lien du formulaire d'avis: /feedback?token=<base64 {orderId, productId, userId, timestamp}>"""
    payload = {
        "orderId": order_id,
        "productId": product_id,
        "userId": user_id,
        "timestamp": int(time.time() * 1000),
    }
    token = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
    return f"{origin.rstrip('/')}/feedback?token={token}"


# ════════════════════════════════════════════════════════════════════════════
# PLANIFICATION (pure, sans I/O)
# ════════════════════════════════════════════════════════════════════════════

def _action(kind, order: Order, extra: Optional[Dict[str, str]] = None, body: Optional[str] = None) -> NotificationAction:
    parameters = base_parameters(order)
    if extra:
        parameters.update(extra)
    return NotificationAction(
        kind=getattr(kind, "value", kind),
        order_id=order.id,
        recipient_phone=order.customer_phone.strip(),
        recipient_email=order.customer_email or None,
        parameters=parameters,
        body=body,
    )


def plan_status_notification(order: Order, transition: OrderTransition, origin: str) -> Optional[NotificationAction]:
    """Dimension status. `order` = record APRÈS update."""
    if not transition.status_changed:
        return None

    patch = transition.patch
    new_status = transition.new_status

    if new_status == OrderStatus.PROCESSING.value:
        # payment_status lu avant l'écriture
        if transition.old_payment_status == PaymentStatus.PAID.value:
            return _action(NotificationKind.PAYMENT_SUCCESS, order, {"orderLink": order_link(origin, order.id)})
        return None

    if new_status == OrderStatus.SHIPPED.value:
        tracking = patch.get("tracking_link") or order.tracking_link or tracking_fallback_link(origin, order.id)
        carrier = patch.get("shipping_carrier") or order.shipping_carrier or DEFAULT_CARRIER
        return _action(NotificationKind.ORDER_SHIPPED, order, {"trackingLink": tracking, "carrier": carrier})

    if new_status == OrderStatus.OUT_FOR_DELIVERY.value:
        return _action(NotificationKind.OUT_FOR_DELIVERY, order)

    if new_status == OrderStatus.DELIVERED.value:
        return _action(NotificationKind.ORDER_DELIVERED, order, {"feedbackLink": feedback_link(origin, order.id)})

    if new_status == OrderStatus.CANCELLED.value:
        if not (patch.get("refund_amount") or order.refund_amount):
            return None
        refund = patch.get("refund_amount") or order.refund_amount or order.total_amount or order.total
        amount = format_amount(refund)
        return _action(NotificationKind.REFUND_CONFIRMATION, order, {"refundAmount": amount, "amount": amount})

    return None


def plan_payment_notification(order: Order, transition: OrderTransition, origin: str) -> Optional[NotificationAction]:
    """Dimension payment_status"""
    if not transition.payment_status_changed:
        return None

    if transition.new_payment_status == PaymentStatus.PAID.value:
        return _action(NotificationKind.PAYMENT_SUCCESS, order, {"orderLink": order_link(origin, order.id)})

    if transition.new_payment_status == PaymentStatus.FAILED.value:
        return _action(NotificationKind.PAYMENT_FAILED, order, {"retryLink": retry_payment_link(origin, order.id)})

    return None


def plan_notifications(order: Order, transition: OrderTransition, origin: str) -> List[NotificationAction]:
    """
    0, 1 ou 2 actions. Les deux dimensions sont évaluées indépendamment.
    """
    if not order.has_phone:
        return []

    actions = []
    for planner in (plan_status_notification, plan_payment_notification):
        action = planner(order, transition, origin)
        if action:
            actions.append(action)
    return actions


def plan_order_confirmation(order: Order, items: List[Dict[str, Any]]) -> Optional[NotificationAction]:
    if not order.has_phone:
        return None
    return _action(
        NotificationKind.ORDER_CONFIRMATION,
        order,
        {"productDetails": format_product_details(items)},
    )


def plan_feedback_request(order: Order, origin: str, product_id: str = "", user_id: str = "") -> Optional[NotificationAction]:
    """Demande d'avis envoyée à la main par le support (REQUEST_REVIEW)"""
    if not order.has_phone:
        return None
    return _action(
        NotificationKind.REQUEST_REVIEW,
        order,
        {"reviewLink": review_link(origin, order.id, product_id, user_id)},
    )


CUSTOM_MESSAGE = "custom_message"


def plan_manual_message(
    order: Order,
    origin: str,
    template: Optional[str] = None,
    body: Optional[str] = None,
    additional_info: str = "",
) -> Optional[NotificationAction]:
    """
    Message WhatsApp choisi par le support: un template (tous les types,
    y compris relance panier / réachat) ou un texte libre.

    Tous les liens sont fournis, le template n'utilise que ceux qu'il référence.
    """
    if not order.has_phone:
        return None

    extra = {
        "orderLink": order_link(origin, order.id),
        "retryLink": retry_payment_link(origin, order.id),
        "trackingLink": order.tracking_link or tracking_fallback_link(origin, order.id),
        "carrier": order.shipping_carrier or DEFAULT_CARRIER,
        "feedbackLink": feedback_link(origin, order.id),
        "reviewLink": review_link(origin, order.id),
        "refundAmount": format_amount(order.refund_amount or order.total_amount or order.total),
    }
    if additional_info:
        extra["additionalInfo"] = additional_info

    return _action(template or CUSTOM_MESSAGE, order, extra, body=body)


# ════════════════════════════════════════════════════════════════════════════
# ENVOI (tâches de fond)
# ════════════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """
    Envoie les actions planifiées en tâche de fond.

    Le résultat n'est observable que par les logs et les collections
    *_activities; jamais par la valeur de retour de la mutation.
    Seuls les envois manuels (`deliver`) sont attendus par l'appelant.
    """

    def __init__(
        self,
        whatsapp,
        templates=None,
        activity_client=None,
        email_sender=None,
        email_enabled: bool = False,
    ):
        self.whatsapp = whatsapp
        self.templates = templates
        self.activity_client = activity_client
        self.email_sender = email_sender
        self.email_enabled = email_enabled
        self._tasks: Set[asyncio.Task] = set()

    # ---- Entrées ----

    def dispatch(self, order: Order, transition: OrderTransition, origin: str) -> Optional[asyncio.Task]:
        actions = plan_notifications(order, transition, origin)
        if not actions:
            logger.debug(f"No notification for order {order.id} ({transition.old_status} → {transition.new_status})")
            return None
        return self.submit(actions)

    def dispatch_order_created(
        self,
        order: Order,
        load_items: Callable[[], Awaitable[List[Dict[str, Any]]]],
    ) -> Optional[asyncio.Task]:
        """Confirmation de commande; les lignes sont lues dans la tâche de fond"""
        if not order.has_phone:
            return None
        return self._spawn(self._confirm_order(order, load_items))

    def submit(self, actions: List[NotificationAction]) -> asyncio.Task:
        return self._spawn(self._run(actions))

    async def deliver(self, action: NotificationAction):
        """Envoi immédiat (action manuelle du support), résultat retourné à l'appelant"""
        return await self.send_action(action)

    async def wait_idle(self):
        """Attend les envois en cours (tests, arrêt du process)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # ---- Exécution ----

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, actions: List[NotificationAction]):
        await asyncio.gather(*(self._safe_send(action) for action in actions))

    async def _confirm_order(self, order: Order, load_items):
        try:
            items = await load_items()
        except Exception:
            logger.exception(f"Could not load items for order {order.id}, confirming without details")
            items = []
        action = plan_order_confirmation(order, items)
        if action:
            await self._safe_send(action)

    async def _safe_send(self, action: NotificationAction):
        try:
            await self.send_action(action)
        except Exception:
            logger.exception(f"Failed to send {action.kind} notification for order {action.order_id}")

    async def render(self, action: NotificationAction) -> str:
        if action.body:
            return render_template(action.body, action.parameters)

        content = None
        if self.templates is not None:
            content = await self.templates.get_content(action.kind)
        if content:
            return render_template(content, action.parameters)

        logger.info(f"Template content not found for {action.kind}, using fallback")
        return fallback_message(action.kind, action.parameters)

    async def send_action(self, action: NotificationAction) -> Optional[SendResult]:
        """Rend, envoie, journalise. None si le message est vide (rien envoyé)."""
        body = await self.render(action)
        if not body:
            logger.warning(f"Empty message for {action.kind} (order {action.order_id}), not sent")
            return None

        result = await self.whatsapp.send_message(action.recipient_phone, body)
        if result.success:
            logger.info(f"{action.kind} sent to {action.recipient_phone} for order {action.order_id}")
        else:
            logger.error(f"Failed to send {action.kind} for order {action.order_id}: {result.message}")

        if self.activity_client is not None:
            await log_notification_activity(
                self.activity_client,
                NotificationChannel.WHATSAPP.value,
                action.order_id,
                action.kind,
                action.recipient_phone,
                result,
                message=body,
            )

        if self.email_enabled and self.email_sender is not None and is_valid_email(action.recipient_email or ""):
            await self._send_email(action, body)

        return result

    async def _send_email(self, action: NotificationAction, body: str):
        subject, html = render_notification_email(action.kind, action.order_id, body)
        result = await self.email_sender.send(
            action.recipient_email,
            subject,
            html,
            {"templateName": action.kind, "orderId": action.order_id},
        )
        if not result.success:
            logger.error(f"Failed to email {action.kind} for order {action.order_id}: {result.message}")

        if self.activity_client is not None:
            await log_notification_activity(
                self.activity_client,
                NotificationChannel.EMAIL.value,
                action.order_id,
                action.kind,
                action.recipient_email,
                result,
                message=body,
                subject=subject,
            )
