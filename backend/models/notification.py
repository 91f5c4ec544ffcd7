"""
Konipai CRM - Modèles Notification

NotificationAction: éphémère, construite par transition, consommée une fois.
OrderTransition: snapshot avant/après d'un update de commande.
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum


class NotificationKind(str, Enum):
    """Noms de templates WhatsApp / email"""
    ABANDONED_CART = "abandoned_cart_reminder"
    ORDER_CONFIRMATION = "order_confirmation"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    ORDER_SHIPPED = "order_shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    ORDER_DELIVERED = "order_delivered"
    REQUEST_REVIEW = "request_review"
    REFUND_CONFIRMATION = "refund_confirmation"
    REORDER_REMINDER = "reorder_reminder"


class NotificationChannel(str, Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class NotificationAction(BaseModel):
    kind: str
    order_id: str
    recipient_phone: str
    recipient_email: Optional[str] = None
    parameters: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None  # message saisi à la main (remplace template / fallback)


class OrderTransition(BaseModel):
    """
    Changement d'état sur un seul appel update.

    old_* = snapshot lu AVANT l'écriture.
    new_* = valeur fournie dans le patch (None si non fournie).
    """
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    old_payment_status: Optional[str] = None
    new_payment_status: Optional[str] = None
    patch: Dict[str, Any] = Field(default_factory=dict)

    @property
    def status_changed(self) -> bool:
        return bool(self.new_status) and self.new_status != self.old_status

    @property
    def payment_status_changed(self) -> bool:
        return bool(self.new_payment_status) and self.new_payment_status != self.old_payment_status

    @property
    def has_changes(self) -> bool:
        return self.status_changed or self.payment_status_changed


class SendResult(BaseModel):
    """Réponse standardisée de tous les senders (jamais d'exception)"""
    success: bool
    message: str = ""
    message_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    timestamp: Optional[str] = None
