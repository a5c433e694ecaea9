"""Request/response schemas for the page, publish and claim endpoints."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PageCreate(BaseModel):
    """Schema for creating an empty draft page."""
    title: Optional[str] = Field(None, max_length=200)


class DraftSaveRequest(BaseModel):
    """Schema for saving the working document.

    ``doc`` is validated by the service, not by FastAPI, so failures surface
    as the service's own ValidationError.
    """
    doc: Dict[str, Any]
    base_server_revision: Optional[int] = None  # Omit to skip the revision check
    local_revision: Optional[int] = None


class DraftSaveResponse(BaseModel):
    success: bool = True
    page_id: str
    server_revision: int
    accepted_local_revision: Optional[int] = None
    updated_at: Optional[datetime] = None


class AnonymousDraftRequest(BaseModel):
    doc: Dict[str, Any]


class AnonymousDraftResponse(BaseModel):
    success: bool = True
    page_id: str
    anonymous_token: str
    server_revision: int


class PublishRequest(BaseModel):
    """Publish the given document.

    ``base_server_revision`` is the revision the caller believes current.
    On the implicit endpoint it may be omitted and the stored revision is used.
    """
    doc: Dict[str, Any]
    base_server_revision: Optional[int] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "base_server_revision": 3,
                    "doc": {
                        "version": 1,
                        "title": "My corner",
                        "blocks": [
                            {"id": "b1", "type": "text", "x": 10, "y": 10, "width": 200, "height": 40,
                             "content": {"text": "Hello"}},
                        ],
                    },
                }
            ]
        }
    }


class PublishResponse(BaseModel):
    success: bool = True
    page_id: str
    slug: str
    public_url: str
    storage_key: Optional[str] = None
    published_revision: int
    server_revision: int
    published_at: datetime
    warnings: List[str] = []


class PageResponse(BaseModel):
    """Schema for page response (owner view)."""
    id: str
    title: Optional[str] = None
    slug: Optional[str] = None
    user_id: Optional[str] = None
    draft_content: Dict[str, Any] = {}
    draft_background: Optional[Dict[str, Any]] = None
    published_content: Optional[Dict[str, Any]] = None
    published_background: Optional[Dict[str, Any]] = None
    server_revision: int
    published_revision: Optional[int] = None
    is_published: bool
    published_at: Optional[datetime] = None
    has_unpublished_changes: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PublicPageResponse(BaseModel):
    """Published snapshot served dynamically when no artifact is cached."""
    slug: str
    title: Optional[str] = None
    content: Dict[str, Any]
    background: Optional[Dict[str, Any]] = None
    published_revision: int
    published_at: Optional[datetime] = None


class ClaimResponse(BaseModel):
    success: bool = True
    claimed: int
    page_ids: List[str] = []


class DevLoginRequest(BaseModel):
    """Stand-in for an external identity assertion (development only)."""
    subject: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = None
    display_name: Optional[str] = None


class DevLoginResponse(BaseModel):
    user_id: str
    token: str
    claimed: int
    claimed_page_ids: List[str] = []


class MeResponse(BaseModel):
    authenticated: bool
    user_id: Optional[str] = None
    anonymous_token: Optional[str] = None


class CleanupRequest(BaseModel):
    max_age_minutes: Optional[int] = Field(None, ge=1)


class CleanupResponse(BaseModel):
    success: bool = True
    deleted: int
    remaining: int
    max_age_minutes: int
