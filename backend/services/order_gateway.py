"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Konipai CRM - Order Mutation Gateway                                        ║
║                                                                              ║
║  update_order: lecture snapshot → écriture patch → comparaison → dispatch    ║
║                                                                              ║
║  - erreur de persistance: remontée telle quelle, AUCUN dispatch              ║
║  - erreur de notification: loggée, jamais remontée                           ║
║                                                                              ║
║  NOTE: lecture puis écriture sans verrou ni transaction. Deux updates         ║
║  concurrents sur la même commande peuvent comparer un snapshot périmé.       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Optional, Dict, Any, Union

from config import now_iso
from models import Order, OrderUpdate, OrderCreate, OrderTransition
from services.pocketbase import quote_filter
from services.notification_dispatcher import plan_feedback_request, plan_manual_message

logger = logging.getLogger("order_gateway")

ORDERS_COLLECTION = "orders"
ORDER_ITEMS_COLLECTION = "order_items"
ORDER_EXPAND = "user,coupon_id"


class OrderNotificationError(Exception):
    """Envoi manuel impossible (pas de téléphone, message vide)"""
    pass


class OrderGateway:
    """Mutations de commandes + déclenchement des notifications"""

    def __init__(self, client, dispatcher=None, collection: str = ORDERS_COLLECTION):
        self.client = client
        self.dispatcher = dispatcher
        self.collection = collection

    # ==================== LECTURE ====================

    async def get_order(self, order_id: str, expand: Optional[str] = ORDER_EXPAND) -> Dict[str, Any]:
        return await self.client.get(self.collection, order_id, expand=expand)

    async def list_orders(
        self,
        page: int = 1,
        per_page: int = 100,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        sort: str = "-created",
    ) -> Dict[str, Any]:
        filters = []
        if status:
            filters.append(f"status = {quote_filter(status)}")
        if payment_status:
            filters.append(f"payment_status = {quote_filter(payment_status)}")

        result = await self.client.list(
            self.collection,
            page=page,
            per_page=per_page,
            filter=" && ".join(filters) or None,
            sort=sort,
            expand=ORDER_EXPAND,
        )
        return {
            "items": result.get("items", []),
            "totalItems": result.get("totalItems", 0),
            "page": result.get("page", page),
            "perPage": result.get("perPage", per_page),
        }

    async def get_order_items(self, order_id: str):
        """Lignes de commande avec produit, format {id, product_id, name, price, quantity, image}"""
        records = await self.client.get_full_list(
            ORDER_ITEMS_COLLECTION,
            filter=f"order_id = {quote_filter(order_id)}",
            expand="product_id",
        )
        items = []
        for record in records:
            product = (record.get("expand") or {}).get("product_id") or {}
            images = product.get("images") or []
            items.append({
                "id": record.get("id"),
                "product_id": product.get("id") or record.get("product_id"),
                "name": product.get("name") or "Unknown Product",
                "price": _to_float(record.get("price")),
                "quantity": _to_int(record.get("quantity"), default=1),
                "image": images[0] if images else None,
            })
        return items

    # ==================== MUTATIONS ====================

    async def create_order(self, data: Union[OrderCreate, Dict[str, Any]]) -> Dict[str, Any]:
        """Création + confirmation WhatsApp en tâche de fond (lignes lues dans la tâche)"""
        payload = data.to_record() if isinstance(data, OrderCreate) else dict(data)
        record = await self.client.create(self.collection, payload)
        logger.info(f"Order {record.get('id')} created")

        if self.dispatcher is not None and record.get("customer_phone"):
            try:
                order = Order.model_validate(record)
                self.dispatcher.dispatch_order_created(order, lambda: self.get_order_items(order.id))
            except Exception:
                logger.exception(f"Error sending order confirmation for {record.get('id')}")

        return record

    async def update_order(
        self,
        order_id: str,
        patch: Union[OrderUpdate, Dict[str, Any]],
        origin: str = "",
    ) -> Dict[str, Any]:
        """
        Applique un patch partiel et déclenche les notifications.

        Args:
            order_id: ID de la commande (doit exister)
            patch: champs à modifier, les autres restent inchangés
            origin: origine publique pour les liens (feedback, tracking, retry)

        Returns:
            Le record mis à jour, quel que soit le sort des notifications

        Raises:
            RecordNotFoundError, PocketBaseError: remontées sans modification
        """
        data = patch.to_patch() if isinstance(patch, OrderUpdate) else dict(patch)

        current = await self.client.get(self.collection, order_id)
        record = await self.client.update(self.collection, order_id, data)

        transition = OrderTransition(
            old_status=current.get("status"),
            new_status=data.get("status"),
            old_payment_status=current.get("payment_status"),
            new_payment_status=data.get("payment_status"),
            patch=data,
        )

        if transition.has_changes:
            logger.info(
                f"Order {order_id}: status {transition.old_status} → {data.get('status', transition.old_status)}, "
                f"payment {transition.old_payment_status} → {data.get('payment_status', transition.old_payment_status)}"
            )
            self._notify(record, transition, origin)

        return record

    async def delete_order(self, order_id: str) -> None:
        await self.client.delete(self.collection, order_id)
        logger.info(f"Order {order_id} deleted")

    # ==================== ENVOIS MANUELS ====================

    async def request_feedback(self, order_id: str, origin: str = "") -> Dict[str, Any]:
        """
        Demande d'avis (REQUEST_REVIEW) envoyée par le support, attendue par la requête.

        Si l'envoi réussit, la commande est marquée feedback_request_sent(_at).

        Returns:
            {"result": SendResult, "order": record}

        Raises:
            OrderNotificationError: pas de téléphone ou message vide
            RecordNotFoundError, PocketBaseError: remontées sans modification
        """
        record = await self.get_order(order_id)
        order = Order.model_validate(record)
        items = await self.get_order_items(order_id)

        action = plan_feedback_request(
            order,
            origin,
            product_id=(items[0].get("product_id") or "") if items else "",
            user_id=_first_user(record.get("user")),
        )
        if action is None:
            raise OrderNotificationError(f"Order {order_id} has no customer phone")

        result = await self._deliver(action)
        if result.success:
            record = await self.client.update(self.collection, order_id, {
                "feedback_request_sent": True,
                "feedback_request_sent_at": now_iso(),
            })
            logger.info(f"Feedback request sent for order {order_id}")
        return {"result": result, "order": record}

    async def send_whatsapp(
        self,
        order_id: str,
        template: Optional[str] = None,
        message: Optional[str] = None,
        additional_info: str = "",
        origin: str = "",
    ):
        """Message WhatsApp manuel: template choisi ou texte libre (mêmes variables)"""
        record = await self.get_order(order_id)
        action = plan_manual_message(
            Order.model_validate(record),
            origin,
            template=template,
            body=message,
            additional_info=additional_info,
        )
        if action is None:
            raise OrderNotificationError(f"Order {order_id} has no customer phone")
        return await self._deliver(action)

    async def _deliver(self, action):
        if self.dispatcher is None:
            raise OrderNotificationError("Notifications are not configured")
        result = await self.dispatcher.deliver(action)
        if result is None:
            raise OrderNotificationError(f"Empty message for {action.kind}, nothing sent")
        return result

    def _notify(self, record: Dict[str, Any], transition: OrderTransition, origin: str):
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.dispatch(Order.model_validate(record), transition, origin)
        except Exception:
            logger.exception(f"Notification dispatch failed for order {record.get('id')}")


def _to_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _first_user(value) -> str:
    """Le champ relation `user` peut être un ID ou une liste d'IDs"""
    if isinstance(value, list):
        return value[0] if value else ""
    return value or ""
