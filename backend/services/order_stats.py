"""
Konipai CRM - Statistiques commandes (dashboard)
"""

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from models import OrderStatus

MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def parse_created(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace(" ", "T").replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_dashboard_metrics(orders: List[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    total_orders = len(orders)
    pending_orders = sum(
        1 for o in orders if o.get("status") in (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)
    )
    completed_orders = sum(1 for o in orders if o.get("status") == OrderStatus.DELIVERED.value)
    total_revenue = sum(o.get("total") or 0 for o in orders)

    revenue_today = 0
    for o in orders:
        created = parse_created(o.get("created"))
        if created and created >= today:
            revenue_today += o.get("total") or 0

    return {
        "total_orders": total_orders,
        "pending_orders": pending_orders,
        "completed_orders": completed_orders,
        "total_revenue": total_revenue,
        "average_order_value": total_revenue / total_orders if total_orders else 0,
        "revenue_today": revenue_today,
    }


def compute_monthly_revenue(orders: List[Dict[str, Any]], year: int) -> List[Dict[str, Any]]:
    """Revenu par mois (Jan..Dec) pour `year`"""
    monthly = OrderedDict((m, 0) for m in MONTHS)
    for o in orders:
        created = parse_created(o.get("created"))
        if created and created.year == year:
            monthly[MONTHS[created.month - 1]] += o.get("total") or 0
    return [{"month": m, "revenue": r} for m, r in monthly.items()]


async def get_dashboard_metrics(client) -> Dict[str, Any]:
    orders = await client.get_full_list("orders", sort="-created")
    return compute_dashboard_metrics(orders)


async def get_monthly_revenue(client, year: Optional[int] = None) -> List[Dict[str, Any]]:
    orders = await client.get_full_list("orders", sort="created")
    return compute_monthly_revenue(orders, year or datetime.now(timezone.utc).year)
