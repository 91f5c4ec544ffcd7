"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Konipai CRM - Models Package                                                ║
║                                                                              ║
║  Exports tous les modèles pour import facile                                 ║
║  from models import Order, OrderUpdate, NotificationKind, etc.               ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from .order import (
    OrderStatus,
    PaymentStatus,
    Order,
    OrderUpdate,
    OrderCreate,
    VALID_ORDER_STATUSES,
    VALID_PAYMENT_STATUSES,
    DEFAULT_CARRIER,
)

from .notification import (
    NotificationKind,
    NotificationChannel,
    NotificationAction,
    OrderTransition,
    SendResult,
)

from .template import Template
