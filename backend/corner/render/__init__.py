"""Renderers turning a page document into a static artifact."""

from .html import render_page_html

__all__ = ["render_page_html"]
