"""
API response schemas for the ingress, relay and diagnostics endpoints.
"""
from typing import Optional
from pydantic import BaseModel


class WebhookAck(BaseModel):
    """Body returned to providers. HTTP status is always 200."""
    status: str  # received, error
    message: str
    log_id: Optional[str] = None


class DiagnosticMatch(BaseModel):
    log: dict
    match_type: str  # direct_field, text_match
    match_path: Optional[str] = None


class DiagnosticSearchResponse(BaseModel):
    term: str
    total: int
    matches: list[DiagnosticMatch]


class WebhookLogListResponse(BaseModel):
    total: int
    logs: list[dict]
    limit: int
    offset: int
    pages: int


class ReplayResponse(BaseModel):
    log_id: str
    status: str
    error_message: Optional[str] = None
