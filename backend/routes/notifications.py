"""
Konipai CRM - Routes Notifications

- Statut de l'API WhatsApp
- Templates (lecture seule, dédoublonnés par nom)
- Validation des variables d'un contenu de template
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
import logging

from services.message_templates import validate_template_variables
from routes.auth import get_current_user
from services.pocketbase import PocketBaseError

router = APIRouter(prefix="/notifications", tags=["Notifications"], dependencies=[Depends(get_current_user)])
logger = logging.getLogger("notifications")


class TemplateContent(BaseModel):
    content: str


def get_whatsapp_sender(request: Request):
    return request.app.state.whatsapp


def get_template_store(request: Request):
    return request.app.state.templates


@router.get("/whatsapp/status")
async def whatsapp_status(sender=Depends(get_whatsapp_sender)):
    result = await sender.check_status()
    return {"connected": result.success, "status": result.status, "message": result.message}


@router.get("/templates")
async def list_templates(store=Depends(get_template_store)):
    try:
        templates = await store.list_unique()
    except PocketBaseError as e:
        logger.error(f"Error fetching unique templates: {e}")
        raise HTTPException(status_code=502, detail=f"Database error: {e}")
    return {
        "templates": [t.model_dump(by_alias=True) for t in templates],
        "count": len(templates),
    }


@router.post("/templates/validate")
async def validate_template(data: TemplateContent):
    return validate_template_variables(data.content)
