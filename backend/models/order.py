"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Konipai CRM - Modèle Order                                                  ║
║                                                                              ║
║  LIFECYCLE (ordre canonique):                                                ║
║  pending → processing → shipped → out_for_delivery → delivered               ║
║  cancelled: atteignable depuis n'importe quel état non terminal              ║
║                                                                              ║
║  RÈGLE: aucune transition n'est bloquée (override manuel par le support)     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, List, Dict, Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, field_validator
from enum import Enum


class OrderStatus(str, Enum):
    """Statuts du cycle de vie d'une commande"""
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


VALID_ORDER_STATUSES = [s.value for s in OrderStatus]
VALID_PAYMENT_STATUSES = [s.value for s in PaymentStatus]

DEFAULT_CARRIER = "Our Delivery Partner"


class Order(BaseModel):
    """
    Record PocketBase de la collection `orders`.

    PocketBase renvoie 0 / "" pour les champs non renseignés,
    donc "présent" = truthy pour les montants et les liens.
    """
    model_config = ConfigDict(extra="allow")

    id: str
    status: str = OrderStatus.PENDING.value
    payment_status: str = PaymentStatus.PENDING.value

    customer_name: Optional[str] = ""
    customer_email: Optional[str] = ""
    customer_phone: Optional[str] = ""
    shipping_address_text: Optional[str] = ""

    total: Optional[float] = 0
    total_amount: Optional[float] = 0
    subtotal: Optional[float] = 0
    refund_amount: Optional[float] = 0

    tracking_link: Optional[str] = ""
    shipping_carrier: Optional[str] = ""

    created: Optional[str] = ""
    updated: Optional[str] = ""

    @property
    def has_phone(self) -> bool:
        return bool(self.customer_phone and self.customer_phone.strip())

    @property
    def amount(self):
        """Montant affiché au client ({{amount}})"""
        return self.total or self.total_amount or 0


class OrderUpdate(BaseModel):
    """
    Patch partiel: seuls les champs explicitement fournis sont envoyés.
    Utiliser `to_patch()` (exclude_unset), jamais `model_dump()` brut.
    """
    model_config = ConfigDict(extra="allow")

    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address_text: Optional[str] = None
    total: Optional[float] = None
    total_amount: Optional[float] = None
    refund_amount: Optional[float] = None
    tracking_link: Optional[str] = None
    shipping_carrier: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("tracking_link")
    @classmethod
    def check_tracking_link(cls, value):
        if value and urlsplit(value).scheme not in ("http", "https"):
            raise ValueError("tracking_link doit être une URL http(s)")
        return value

    def to_patch(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class OrderCreate(BaseModel):
    """
    Création d'une commande

    Exemple:
    {
        "customer_name": "Asha",
        "customer_phone": "9876543210",
        "total": 1499,
        "status": "pending",
        "payment_status": "pending"
    }
    """
    model_config = ConfigDict(extra="allow")

    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    user: Optional[List[str]] = None
    customer_name: Optional[str] = ""
    customer_email: Optional[str] = ""
    customer_phone: Optional[str] = ""
    shipping_address_text: Optional[str] = ""
    products: Optional[str] = None
    subtotal: Optional[float] = 0
    total: float = 0
    total_amount: Optional[float] = None
    notes: Optional[str] = ""

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
