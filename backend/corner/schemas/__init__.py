"""Pydantic schemas for request/response validation."""

from .page import (
    PageDoc,
    Block,
    TextBlock,
    LinkBlock,
    ImageBlock,
    BackgroundConfig,
    parse_page_doc,
    empty_page_doc,
    validate_page_doc,
)
from .publish import (
    PageCreate,
    PageResponse,
    PublicPageResponse,
    DraftSaveRequest,
    DraftSaveResponse,
    AnonymousDraftRequest,
    AnonymousDraftResponse,
    PublishRequest,
    PublishResponse,
    ClaimResponse,
    DevLoginRequest,
    DevLoginResponse,
    MeResponse,
    CleanupRequest,
    CleanupResponse,
)

__all__ = [
    "PageDoc", "Block", "TextBlock", "LinkBlock", "ImageBlock", "BackgroundConfig",
    "parse_page_doc", "empty_page_doc", "validate_page_doc",
    "PageCreate", "PageResponse", "PublicPageResponse",
    "DraftSaveRequest", "DraftSaveResponse",
    "AnonymousDraftRequest", "AnonymousDraftResponse",
    "PublishRequest", "PublishResponse",
    "ClaimResponse", "DevLoginRequest", "DevLoginResponse", "MeResponse",
    "CleanupRequest", "CleanupResponse",
]
