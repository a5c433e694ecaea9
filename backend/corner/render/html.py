"""Minimal static HTML renderer.

A pure function of the document: no I/O, no clock, so rendering the same
document twice yields identical bytes.
"""

from html import escape
from typing import List, Optional

from ..schemas.page import BackgroundConfig, Block, ImageBlock, LinkBlock, PageDoc, TextBlock

_BASE_CSS = (
    "*{box-sizing:border-box}"
    "body{margin:0;font-family:system-ui,sans-serif}"
    ".canvas{position:relative;min-height:100vh}"
    ".block{position:absolute;overflow:hidden}"
    ".align-left{text-align:left}.align-center{text-align:center}.align-right{text-align:right}"
    ".card{background:#fff;padding:8px}"
    ".radius-sm{border-radius:4px}.radius-md{border-radius:8px}"
    ".radius-lg{border-radius:16px}.radius-full{border-radius:9999px}"
    ".shadow-sm{box-shadow:0 1px 2px rgba(0,0,0,.15)}"
    ".shadow-md{box-shadow:0 4px 8px rgba(0,0,0,.15)}"
    ".shadow-lg{box-shadow:0 10px 24px rgba(0,0,0,.2)}"
)


def _background_css(background: Optional[BackgroundConfig]) -> str:
    if background is None:
        return ""
    if background.mode == "solid" and background.solid:
        return f"background:{escape(background.solid.color)};"
    if background.mode == "gradient" and background.gradient:
        g = background.gradient
        if g.type == "radial":
            return f"background:radial-gradient({escape(g.color_a)},{escape(g.color_b)});"
        return f"background:linear-gradient({g.angle:g}deg,{escape(g.color_a)},{escape(g.color_b)});"
    return ""


def _classes(block: Block) -> str:
    classes = ["block"]
    style = block.style
    if style is not None:
        if style.align:
            classes.append(f"align-{style.align}")
        if style.card:
            classes.append("card")
        if style.radius and style.radius != "none":
            classes.append(f"radius-{style.radius}")
        if style.shadow and style.shadow != "none":
            classes.append(f"shadow-{style.shadow}")
    return " ".join(classes)


def _position(block: Block) -> str:
    css = f"left:{block.x:g}px;top:{block.y:g}px;width:{block.width:g}px;height:{block.height:g}px;"
    if block.rotation:
        css += f"transform:rotate({block.rotation:g}deg);"
    return css


def _inner(block: Block) -> str:
    if isinstance(block, TextBlock):
        return escape(block.content.text).replace("\n", "<br>")
    if isinstance(block, LinkBlock):
        return (
            f'<a href="{escape(block.content.url, quote=True)}" rel="noopener noreferrer">'
            f"{escape(block.content.label)}</a>"
        )
    if isinstance(block, ImageBlock):
        alt = escape(block.content.alt or "", quote=True)
        return f'<img src="{escape(block.content.url, quote=True)}" alt="{alt}" style="width:100%;height:100%;object-fit:cover">'
    return ""


def render_page_html(doc: PageDoc) -> str:
    """Render *doc* to a complete HTML page."""
    title = escape(doc.title or "My corner")
    parts: List[str] = [
        "<!DOCTYPE html>",
        '<html lang="en"><head><meta charset="utf-8">',
        '<meta name="viewport" content="width=device-width, initial-scale=1">',
        f"<title>{title}</title>",
        f"<style>{_BASE_CSS}</style>",
        "</head>",
        f'<body style="{_background_css(doc.background)}">',
        f'<main class="canvas" data-theme="{escape(doc.theme_id, quote=True)}">',
    ]
    if doc.bio:
        parts.append(f'<p class="bio">{escape(doc.bio)}</p>')
    for block in doc.blocks:
        parts.append(
            f'<div class="{_classes(block)}" data-block-id="{escape(block.id, quote=True)}" '
            f'style="{_position(block)}">{_inner(block)}</div>'
        )
    parts.append("</main></body></html>")
    return "\n".join(parts)
