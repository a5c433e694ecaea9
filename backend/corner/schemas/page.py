"""Page document schemas.

The whole canvas is one JSON document. It is parsed into a ``PageDoc`` once,
at the boundary of each operation that accepts it, and everything downstream
(renderer, repository) works with the typed value.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

import pydantic
from pydantic import BaseModel, Field, field_validator

from ..exceptions import ValidationError


class BlockStyle(BaseModel):
    """Constrained style options; each maps to a predefined CSS class."""
    align: Optional[Literal["left", "center", "right"]] = None
    card: Optional[bool] = None
    radius: Optional[Literal["none", "sm", "md", "lg", "full"]] = None
    shadow: Optional[Literal["none", "sm", "md", "lg"]] = None

    model_config = {"extra": "forbid"}


class TextContent(BaseModel):
    text: str = Field(..., max_length=50_000)


class LinkContent(BaseModel):
    label: str = Field(..., max_length=500)
    url: str = Field(..., max_length=2000)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https", "mailto"):
            raise ValueError("Link URL must use http, https or mailto")
        return v


class ImageContent(BaseModel):
    url: str = Field(..., max_length=2000)
    alt: Optional[str] = Field(None, max_length=500)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        # blob: and data: URLs only exist in the author's browser.
        if urlparse(v).scheme not in ("http", "https"):
            raise ValueError("Image URL must be an uploaded http(s) asset")
        return v


class _BlockBase(BaseModel):
    id: str = Field(..., min_length=1, max_length=100)
    x: float = Field(..., ge=-10_000, le=10_000)
    y: float = Field(..., ge=-10_000, le=10_000)
    width: float = Field(..., gt=0, le=5_000)
    height: float = Field(..., gt=0, le=5_000)
    rotation: Optional[float] = Field(None, ge=-180, le=180)
    style: Optional[BlockStyle] = None


class TextBlock(_BlockBase):
    type: Literal["text"]
    content: TextContent


class LinkBlock(_BlockBase):
    type: Literal["link"]
    content: LinkContent


class ImageBlock(_BlockBase):
    type: Literal["image"]
    content: ImageContent


Block = Annotated[Union[TextBlock, LinkBlock, ImageBlock], Field(discriminator="type")]


class SolidBackground(BaseModel):
    color: str = Field(..., max_length=50)


class GradientBackground(BaseModel):
    type: Literal["linear", "radial"] = "linear"
    color_a: str = Field(..., max_length=50)
    color_b: str = Field(..., max_length=50)
    angle: float = Field(0, ge=0, le=360)


class BackgroundConfig(BaseModel):
    """Page background. Only the section matching ``mode`` is used."""
    mode: Literal["solid", "gradient"]
    solid: Optional[SolidBackground] = None
    gradient: Optional[GradientBackground] = None


class PageDoc(BaseModel):
    """The entire page as one document."""

    # Schema version for forward compatibility
    version: Literal[1] = 1
    title: Optional[str] = Field(None, max_length=200)
    bio: Optional[str] = Field(None, max_length=1000)
    theme_id: str = Field("default", max_length=50)
    theme_overrides: Optional[Dict[str, Any]] = None
    blocks: List[Block] = []
    background: Optional[BackgroundConfig] = None

    def content_json(self) -> Dict[str, Any]:
        """Document body as stored in the content columns (background kept apart)."""
        return self.model_dump(mode="json", exclude={"background"}, exclude_none=True)

    def background_json(self) -> Optional[Dict[str, Any]]:
        if self.background is None:
            return None
        return self.background.model_dump(mode="json", exclude_none=True)

    def serialized_size(self) -> int:
        """Size in bytes of the canonical JSON encoding."""
        payload = self.model_dump(mode="json", exclude_none=True)
        return len(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def parse_page_doc(data: Any) -> PageDoc:
    """Validate raw input into a PageDoc.

    Raises:
        ValidationError: naming the first offending field.
    """
    if isinstance(data, PageDoc):
        return data
    try:
        return PageDoc.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        path = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid document: {path}: {first.get('msg')}", field=path or None)


def empty_page_doc(title: Optional[str] = None) -> PageDoc:
    return PageDoc(title=title)


def validate_page_doc(data: Any, max_blocks: int, max_bytes: int) -> PageDoc:
    """Parse *data* and enforce the block-count and size limits.

    The single validation boundary for every operation accepting a document.

    Raises:
        ValidationError: before any side effect has happened.
    """
    doc = parse_page_doc(data)
    if len(doc.blocks) > max_blocks:
        raise ValidationError(f"Too many blocks (max {max_blocks})", field="blocks")
    size = doc.serialized_size()
    if size > max_bytes:
        raise ValidationError(f"Document too large ({size} bytes, max {max_bytes})", field="doc")
    return doc
