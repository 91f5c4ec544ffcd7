"""
Konipai CRM - API Backend

- /crm/*                     API commandes + notifications
- /api, /email-api, /whatsapp-api   reverse proxy
- /*                         frontend buildé (dist/), fallback index.html

Démarre avec:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import FileResponse
import asyncio
import logging

import httpx

import config
from email_service import build_email_sender
from services.pocketbase import build_pocketbase_client
from services.whatsapp_sender import build_whatsapp_sender
from services.message_templates import TemplateStore
from services.notification_dispatcher import NotificationDispatcher
from services.order_gateway import OrderGateway

# Configuration logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("konipai")

# Créer l'app
app = FastAPI(
    title="Konipai CRM",
    description="CRM commandes / produits avec notifications WhatsApp et email",
    version="1.0.0"
)


# ==================== CORS ====================

def cors_headers() -> dict:
    return {
        "Access-Control-Allow-Origin": config.CORS_ORIGINS,
        "Access-Control-Allow-Methods": "GET, HEAD, PUT, PATCH, POST, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization, Accept, X-Requested-With, Cache-Control",
        "Access-Control-Max-Age": "86400",
    }


@app.middleware("http")
async def cors_and_request_log(request: Request, call_next):
    """CORS sur toutes les réponses, preflight OPTIONS → 200 immédiat"""
    logger.info(f"{request.method} {request.url.path}")
    if request.method == "OPTIONS":
        response = Response(status_code=200)
    else:
        response = await call_next(request)
    response.headers.update(cors_headers())
    return response


# ==================== IMPORT DES ROUTES ====================

from routes import orders, notifications, proxy

app.include_router(orders.router, prefix="/crm")
app.include_router(notifications.router, prefix="/crm")
app.include_router(proxy.router)


@app.get("/crm")
async def root():
    return {
        "name": "Konipai CRM API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


# ==================== SERVICES ====================

def init_services(target: FastAPI):
    """Construit les clients et les injecte dans app.state"""
    pocketbase = build_pocketbase_client()
    whatsapp = build_whatsapp_sender()
    email_sender = build_email_sender()
    templates = TemplateStore(pocketbase)

    dispatcher = NotificationDispatcher(
        whatsapp,
        templates=templates,
        activity_client=pocketbase,
        email_sender=email_sender,
        email_enabled=config.NOTIFY_EMAIL_ENABLED,
    )

    target.state.pocketbase = pocketbase
    target.state.whatsapp = whatsapp
    target.state.email_sender = email_sender
    target.state.templates = templates
    target.state.dispatcher = dispatcher
    target.state.order_gateway = OrderGateway(pocketbase, dispatcher)
    target.state.proxy_client = httpx.AsyncClient(timeout=60.0)


@app.on_event("startup")
async def startup():
    init_services(app)
    logger.info("🚀 Konipai CRM démarré")
    logger.info(f"API Proxy: {config.API_URL}")
    logger.info(f"Email API Proxy: {config.EMAIL_API_URL}")
    logger.info(f"WhatsApp API Proxy: {config.WHATSAPP_API_URL}")
    logger.info(f"Email provider: {config.EMAIL_PROVIDER} (notifications email: {config.NOTIFY_EMAIL_ENABLED})")


async def close_services(target: FastAPI):
    """Laisse finir les notifications en cours, puis ferme les clients"""
    state = target.state
    try:
        await asyncio.wait_for(state.dispatcher.wait_idle(), timeout=config.NOTIFY_SHUTDOWN_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(f"{state.dispatcher.pending} notification(s) still pending at shutdown, abandoned")
    await state.pocketbase.close()
    await state.whatsapp.close()
    await state.email_sender.close()
    await state.proxy_client.aclose()


@app.on_event("shutdown")
async def shutdown():
    await close_services(app)


# ==================== FRONTEND ====================

@app.get("/{full_path:path}", include_in_schema=False)
async def serve_frontend(full_path: str):
    """Fichiers statiques de dist/, sinon index.html (routing côté client)"""
    dist = config.DIST_DIR.resolve()
    index = dist / "index.html"
    if not index.is_file():
        raise HTTPException(status_code=404, detail="Not found")

    if full_path:
        candidate = (dist / full_path).resolve()
        if candidate.is_file() and dist in candidate.parents:
            return FileResponse(candidate)
    return FileResponse(index)
