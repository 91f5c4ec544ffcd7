"""
Konipai CRM - Routes Orders

- Liste / détail / création / mise à jour / suppression
- Les notifications WhatsApp partent en tâche de fond après update/création
- Demande d'avis et message WhatsApp manuel (envoi attendu, résultat retourné)
- Statistiques dashboard

Toutes les routes exigent un token admin PocketBase (Bearer).
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, model_validator
from typing import Optional
import logging

import config
from models import OrderCreate, OrderUpdate, VALID_ORDER_STATUSES, VALID_PAYMENT_STATUSES
from routes.auth import get_current_user
from services.order_gateway import OrderGateway, OrderNotificationError
from services.order_stats import get_dashboard_metrics, get_monthly_revenue
from services.activity_logger import get_order_activities
from services.pocketbase import PocketBaseError, RecordNotFoundError

router = APIRouter(prefix="/orders", tags=["Orders"], dependencies=[Depends(get_current_user)])
logger = logging.getLogger("orders")


# ==================== HELPERS ====================

def get_order_gateway(request: Request) -> OrderGateway:
    return request.app.state.order_gateway


def get_pocketbase(request: Request):
    return request.app.state.pocketbase


def request_origin(request: Request) -> str:
    """Origine des liens envoyés aux clients: PUBLIC_ORIGIN, sinon header Origin, sinon URL de base"""
    if config.PUBLIC_ORIGIN:
        return config.PUBLIC_ORIGIN.rstrip("/")
    origin = request.headers.get("origin")
    if origin and origin != "null":
        return origin.rstrip("/")
    return str(request.base_url).rstrip("/")


class WhatsAppMessageRequest(BaseModel):
    """Template choisi OU texte libre (exactement un des deux)"""
    template: Optional[str] = None
    message: Optional[str] = None
    additional_info: Optional[str] = ""

    @model_validator(mode="after")
    def check_one_source(self):
        if bool(self.template) == bool(self.message):
            raise ValueError("Provide either template or message")
        return self


def send_result_response(result) -> dict:
    return {
        "success": result.success,
        "message": result.message,
        "messageId": result.message_id,
        "status": result.status,
    }


def persistence_error(e: PocketBaseError, order_id: Optional[str] = None) -> HTTPException:
    if isinstance(e, RecordNotFoundError):
        return HTTPException(status_code=404, detail=f"Order {order_id} not found" if order_id else "Not found")
    logger.error(f"PocketBase error: {e}")
    return HTTPException(status_code=502, detail=f"Database error: {e}")


# ==================== STATS ====================

@router.get("/stats/dashboard")
async def dashboard_metrics(client=Depends(get_pocketbase)):
    """Totaux, commandes en cours / livrées, revenu total et du jour"""
    try:
        return await get_dashboard_metrics(client)
    except PocketBaseError as e:
        raise persistence_error(e)


@router.get("/stats/monthly-revenue")
async def monthly_revenue(year: Optional[int] = Query(None), client=Depends(get_pocketbase)):
    try:
        return {"months": await get_monthly_revenue(client, year)}
    except PocketBaseError as e:
        raise persistence_error(e)


# ==================== CRUD ====================

@router.get("")
async def list_orders(
    page: int = Query(1, ge=1),
    per_page: int = Query(100, ge=1, le=500),
    status: Optional[str] = Query(None, description="Filtrer par statut"),
    payment_status: Optional[str] = Query(None),
    gateway: OrderGateway = Depends(get_order_gateway),
):
    """Liste des commandes, plus récentes d'abord"""
    if status and status not in VALID_ORDER_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status. Valid: {VALID_ORDER_STATUSES}")
    if payment_status and payment_status not in VALID_PAYMENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid payment_status. Valid: {VALID_PAYMENT_STATUSES}")
    try:
        return await gateway.list_orders(page=page, per_page=per_page, status=status, payment_status=payment_status)
    except PocketBaseError as e:
        raise persistence_error(e)


@router.get("/{order_id}")
async def get_order(order_id: str, gateway: OrderGateway = Depends(get_order_gateway)):
    try:
        return await gateway.get_order(order_id)
    except PocketBaseError as e:
        raise persistence_error(e, order_id)


@router.get("/{order_id}/items")
async def get_order_items(order_id: str, gateway: OrderGateway = Depends(get_order_gateway)):
    try:
        items = await gateway.get_order_items(order_id)
    except PocketBaseError as e:
        raise persistence_error(e, order_id)
    return {"items": items, "count": len(items)}


@router.get("/{order_id}/activities")
async def order_activities(
    order_id: str,
    channel: str = Query("whatsapp", pattern="^(whatsapp|email)$"),
    client=Depends(get_pocketbase),
):
    """Historique des notifications envoyées pour une commande"""
    try:
        return await get_order_activities(client, order_id, channel)
    except PocketBaseError as e:
        raise persistence_error(e, order_id)


@router.post("")
async def create_order(data: OrderCreate, gateway: OrderGateway = Depends(get_order_gateway)):
    try:
        return await gateway.create_order(data)
    except PocketBaseError as e:
        raise persistence_error(e)


@router.patch("/{order_id}")
async def update_order(
    order_id: str,
    data: OrderUpdate,
    request: Request,
    gateway: OrderGateway = Depends(get_order_gateway),
):
    """
    Mise à jour partielle.

    La réponse ne dépend jamais des notifications (envoyées en arrière-plan).
    Aucune validation de transition: tout statut peut remplacer tout statut.
    """
    try:
        return await gateway.update_order(order_id, data, origin=request_origin(request))
    except PocketBaseError as e:
        raise persistence_error(e, order_id)


@router.delete("/{order_id}")
async def delete_order(order_id: str, gateway: OrderGateway = Depends(get_order_gateway)):
    try:
        await gateway.delete_order(order_id)
    except PocketBaseError as e:
        raise persistence_error(e, order_id)
    return {"success": True, "id": order_id}


# ==================== ENVOIS MANUELS ====================

@router.post("/{order_id}/feedback-request")
async def send_feedback_request(
    order_id: str,
    request: Request,
    gateway: OrderGateway = Depends(get_order_gateway),
):
    """Envoie la demande d'avis et marque la commande (feedback_request_sent)"""
    try:
        sent = await gateway.request_feedback(order_id, origin=request_origin(request))
    except OrderNotificationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PocketBaseError as e:
        raise persistence_error(e, order_id)
    return {**send_result_response(sent["result"]), "order": sent["order"]}


@router.post("/{order_id}/whatsapp")
async def send_whatsapp_message(
    order_id: str,
    data: WhatsAppMessageRequest,
    request: Request,
    gateway: OrderGateway = Depends(get_order_gateway),
):
    """Message WhatsApp manuel (template au choix, ex. abandoned_cart, ou texte libre)"""
    try:
        result = await gateway.send_whatsapp(
            order_id,
            template=data.template,
            message=data.message,
            additional_info=data.additional_info or "",
            origin=request_origin(request),
        )
    except OrderNotificationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PocketBaseError as e:
        raise persistence_error(e, order_id)
    return send_result_response(result)
