"""
Configuration Pydantic schemas.

Rules are accepted in their wire form (`{id, type, params}` with camelCase
parameter names) and validated by the store before anything is written.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class ConfigurationCreateRequest(BaseModel):
    """Create a configuration."""

    organization_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    rules: List[Dict[str, Any]] = Field(default_factory=list, description="Ordered rule list")
    output_format: Optional[Dict[str, Any]] = Field(None, description="CSV output options")
    callback_url: Optional[str] = Field(None, description="Legacy webhook URL")
    webhook_id: Optional[str] = Field(None, description="Selected organization webhook")

    class Config:
        json_schema_extra = {
            "example": {
                "organization_id": "org_123",
                "name": "Monthly report cleanup",
                "rules": [
                    {"id": "r1", "type": "SELECT_WORKSHEET", "params": {"type": "name", "value": "Data"}},
                    {"id": "r2", "type": "DELETE_ROWS", "params": {"method": "condition",
                                                                    "condition": {"type": "empty"}}},
                    {"id": "r3", "type": "DELETE_COLUMNS", "params": {"columns": ["Notes"]}}
                ],
                "output_format": {"type": "CSV", "delimiter": ",", "includeHeaders": True}
            }
        }


class ConfigurationUpdateRequest(BaseModel):
    """Save a new version of a configuration. Omitted fields are unchanged."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    rules: Optional[List[Dict[str, Any]]] = None
    output_format: Optional[Dict[str, Any]] = None
    callback_url: Optional[str] = None
    webhook_id: Optional[str] = None


class ConfigurationResponse(BaseModel):
    """Configuration with its current version."""

    id: str
    organization_id: str
    name: str
    description: Optional[str] = None
    version: int
    rules: List[Dict[str, Any]]
    output_format: Optional[Dict[str, Any]] = None
    callback_url: Optional[str] = None
    webhook_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
