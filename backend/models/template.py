"""
Konipai CRM - Modèle Template (collection whatsapp_templates)
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class Template(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    name: str
    content: str = ""
    is_active: bool = Field(default=True, alias="isActive")
    requires_additional_info: bool = Field(default=False, alias="requiresAdditionalInfo")
    additional_info_label: Optional[str] = Field(default="", alias="additionalInfoLabel")
    additional_info_placeholder: Optional[str] = Field(default="", alias="additionalInfoPlaceholder")
    description: Optional[str] = ""
    created: Optional[str] = ""
    updated: Optional[str] = ""
