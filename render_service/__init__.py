"""
Render Service - headless Chromium rendering of CRM web views to PDF.

One renderer, parameterized by a render profile (standard auto-height,
fixed A4 print, magazine). Launched lazily per render so a single browser
process is alive at a time.
"""

from .renderer import (
    MAGAZINE_PROFILE,
    PRINT_PROFILE,
    RENDER_PROFILES,
    STANDARD_PROFILE,
    PdfRenderer,
    RenderError,
    RenderProfile,
    get_profile,
)

from version import __version__

__all__ = [
    "MAGAZINE_PROFILE",
    "PRINT_PROFILE",
    "RENDER_PROFILES",
    "STANDARD_PROFILE",
    "PdfRenderer",
    "RenderError",
    "RenderProfile",
    "get_profile",
]
