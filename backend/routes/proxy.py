"""
Konipai CRM - Reverse proxy

/api/*           → API_URL
/email-api/*     → EMAIL_API_URL
/whatsapp-api/*  → WHATSAPP_API_URL

Le préfixe est retiré avant transfert. Les en-têtes CORS sont ajoutés par le
middleware de server.py, y compris sur les erreurs de proxy.
"""

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from urllib.parse import urlsplit
import logging

import httpx

import config

router = APIRouter(tags=["Proxy"])
logger = logging.getLogger("proxy")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]

# En-têtes à ne pas recopier (hop-by-hop, recalculés par le client/serveur)
REQUEST_SKIP_HEADERS = {"host", "content-length", "connection", "keep-alive", "transfer-encoding", "upgrade"}
RESPONSE_SKIP_HEADERS = {"content-length", "content-encoding", "transfer-encoding", "connection", "keep-alive"}


def proxy_targets() -> dict:
    return {
        "api": config.API_URL,
        "email-api": config.EMAIL_API_URL,
        "whatsapp-api": config.WHATSAPP_API_URL,
    }


def get_proxy_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.proxy_client


def build_target_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def _origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


async def forward(prefix: str, path: str, request: Request, client: httpx.AsyncClient) -> Response:
    base = proxy_targets()[prefix]
    url = build_target_url(base, path)

    headers = {k: v for k, v in request.headers.items() if k.lower() not in REQUEST_SKIP_HEADERS}
    if prefix == "whatsapp-api":
        # L'API WhatsApp attend sa propre origine
        headers["origin"] = _origin_of(base)

    logger.info(f"Proxying {request.method} /{prefix}/{path} → {url}")

    try:
        upstream = await client.request(
            request.method,
            url,
            params=request.query_params,
            headers=headers,
            content=await request.body(),
        )
    except httpx.HTTPError as e:
        logger.error(f"{prefix} proxy error: {e}")
        label = "WhatsApp API" if prefix == "whatsapp-api" else "upstream API"
        return JSONResponse(
            status_code=500,
            content={"message": f"Error connecting to {label}", "error": str(e)},
        )

    logger.info(f"{prefix} proxy response: {upstream.status_code} for {request.method} /{prefix}/{path}")
    response_headers = {
        k: v for k, v in upstream.headers.items() if k.lower() not in RESPONSE_SKIP_HEADERS
    }
    return Response(content=upstream.content, status_code=upstream.status_code, headers=response_headers)


@router.api_route("/api/{path:path}", methods=PROXY_METHODS)
async def proxy_api(path: str, request: Request, client: httpx.AsyncClient = Depends(get_proxy_client)):
    return await forward("api", path, request, client)


@router.api_route("/email-api/{path:path}", methods=PROXY_METHODS)
async def proxy_email_api(path: str, request: Request, client: httpx.AsyncClient = Depends(get_proxy_client)):
    return await forward("email-api", path, request, client)


@router.api_route("/whatsapp-api/{path:path}", methods=PROXY_METHODS)
async def proxy_whatsapp_api(path: str, request: Request, client: httpx.AsyncClient = Depends(get_proxy_client)):
    return await forward("whatsapp-api", path, request, client)
