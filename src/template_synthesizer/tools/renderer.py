"""Document rendering: page composition, rasterization and the combined PDF.

The rasterizer is an opaque engine behind the ``RenderEngine`` protocol.
``PlaywrightEngine`` drives headless Chromium and is stateless per call, so
one instance may be shared by concurrent runs.
"""

from __future__ import annotations

import io
import logging
import re
import time
from datetime import date
from html.parser import HTMLParser
from typing import Iterable, Protocol

from PIL import Image

from ..models import (
    DEFAULT_ASSET_SUFFIXES,
    Document,
    EngineUnavailableError,
    RenderError,
    RenderOutput,
    SynthesisError,
    TemplateMetadata,
)
from .placeholders import build_stand_ins, resolve_markup, special_values

logger = logging.getLogger(__name__)

_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)

# Elements without a closing tag
_VOID_ELEMENTS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "source", "track", "wbr",
})


# ---------------------------------------------------------------------------
# Engine protocol
# ---------------------------------------------------------------------------

class RenderEngine(Protocol):
    """Turns complete HTML pages into PNG rasters of a fixed viewport."""

    def rasterize(self, html_pages: list[str], width: int, height: int, scale: float = 1.0) -> list[bytes]: ...


class PlaywrightEngine:
    """Headless Chromium rasterizer.

    A browser is launched per call.  Launch failures raise
    ``EngineUnavailableError``; failures while loading or capturing a page
    raise ``RenderError``.
    """

    def __init__(self, timeout: int = 60) -> None:
        self.timeout = timeout

    def rasterize(self, html_pages: list[str], width: int, height: int, scale: float = 1.0) -> list[bytes]:
        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import sync_playwright

        timeout_ms = self.timeout * 1000
        try:
            with sync_playwright() as p:
                try:
                    browser = p.chromium.launch(headless=True)
                except PlaywrightError as exc:
                    raise EngineUnavailableError(f"Could not launch Chromium: {exc}") from exc
                try:
                    ctx = browser.new_context(
                        viewport={"width": width, "height": height},
                        device_scale_factor=scale,
                    )
                    page = ctx.new_page()
                    rasters: list[bytes] = []
                    for html in html_pages:
                        page.set_content(html, wait_until="load", timeout=timeout_ms)
                        rasters.append(page.screenshot(full_page=False, type="png", timeout=timeout_ms))
                    ctx.close()
                    return rasters
                finally:
                    browser.close()
        except SynthesisError:
            raise
        except PlaywrightError as exc:
            raise RenderError(f"Chromium failed to render the page: {exc}") from exc


# ---------------------------------------------------------------------------
# Page composition
# ---------------------------------------------------------------------------

class _BalanceChecker(HTMLParser):
    """Tracks open elements to detect unclosed or stray closing tags."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.stack: list[str] = []
        self.errors: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag not in _VOID_ELEMENTS:
            self.stack.append(tag)

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        pass

    def handle_endtag(self, tag: str) -> None:
        if tag in _VOID_ELEMENTS:
            return
        if not self.stack or self.stack[-1] != tag:
            expected = f"</{self.stack[-1]}>" if self.stack else "nothing"
            self.errors.append(f"unexpected </{tag}> (expected {expected})")
            if tag in self.stack:
                while self.stack and self.stack.pop() != tag:
                    pass
            return
        self.stack.pop()


def check_balance(markup: str, location: str) -> None:
    """Raise ``RenderError`` if *markup* has unbalanced element tags."""
    checker = _BalanceChecker()
    checker.feed(markup)
    checker.close()
    errors = list(checker.errors)
    if checker.stack:
        errors.append("unclosed " + ", ".join(f"<{t}>" for t in checker.stack))
    if errors:
        raise RenderError(f"{location}: malformed markup: {'; '.join(errors)}")


def strip_comments(markup: str) -> str:
    return _COMMENT_RE.sub("", markup)


def _band(content: str, height: int, width: int, name: str) -> str:
    return (
        f'<div class="{name}" style="display: flex; flex-shrink: 0; width: {width}px; '
        f'height: {height}px; overflow: hidden">{content}</div>'
    )


def compose_page_html(
    document: Document,
    index: int,
    resolved_body: str,
    resolved_header: str | None,
    resolved_footer: str | None,
) -> str:
    """Wrap one resolved page (0-based *index*) in a fixed-size HTML document."""
    width, height = document.dimensions()
    header_height = document.header.height if document.header else 0
    footer_height = document.footer.height if document.footer else 0
    body_height = max(height - header_height - footer_height, 0)

    parts = []
    if resolved_header is not None:
        parts.append(_band(resolved_header, header_height, width, "header"))
    parts.append(
        f'<div class="body" style="display: flex; flex-direction: column; width: {width}px; '
        f'height: {body_height}px; overflow: hidden">{resolved_body}</div>'
    )
    if resolved_footer is not None:
        parts.append(_band(resolved_footer, footer_height, width, "footer"))

    return (
        "<!DOCTYPE html>\n"
        f'<html><head><meta charset="utf-8"><title>page {index + 1}</title>'
        "<style>*{box-sizing:border-box} html,body{margin:0;padding:0;background:#ffffff}"
        "div{display:flex}</style></head>"
        f'<body><div class="page" style="flex-direction: column; width: {width}px; height: {height}px; '
        f'background-color: #ffffff">{"".join(parts)}</div></body></html>'
    )


def build_page_html(
    document: Document,
    metadata: TemplateMetadata | None,
    *,
    run_date: date,
    suffixes: Iterable[str] = DEFAULT_ASSET_SUFFIXES,
) -> list[str]:
    """Resolve stand-ins and compose every page of *document* into HTML.

    Raises:
        RenderError: if the document has no pages or any markup is malformed.
    """
    if not document.pages:
        raise RenderError("The document has no pages to render.")

    stand_ins = build_stand_ins(document, metadata, suffixes)
    total = len(document.pages)
    html_pages: list[str] = []
    for i, page in enumerate(document.pages):
        specials = special_values(i + 1, total, run_date)

        def resolve(markup: str | None, location: str) -> str | None:
            if markup is None:
                return None
            cleaned = strip_comments(markup)
            check_balance(cleaned, location)
            return resolve_markup(cleaned, stand_ins, specials)

        header = page.header_override if page.header_override is not None else (
            document.header.content if document.header else None
        )
        footer = page.footer_override if page.footer_override is not None else (
            document.footer.content if document.footer else None
        )
        body = resolve(page.body, f"page {i + 1}")
        html_pages.append(compose_page_html(
            document, i, body or "",
            resolve(header, f"page {i + 1} header"),
            resolve(footer, f"page {i + 1} footer"),
        ))
    return html_pages


# ---------------------------------------------------------------------------
# Combined artifact
# ---------------------------------------------------------------------------

def combine_pdf(rasters: list[bytes], scale: float = 1.0, stamp: date | None = None) -> bytes:
    """Stack page rasters into one multi-page PDF at 96 DPI page geometry.

    *stamp* fixes the PDF creation and modification dates so the same rasters
    always produce the same bytes; without it Pillow uses the current time.
    """
    images = [Image.open(io.BytesIO(r)).convert("RGB") for r in rasters]
    dates: dict[str, time.struct_time] = {}
    if stamp is not None:
        dates = {"creationDate": stamp.timetuple(), "modDate": stamp.timetuple()}
    buf = io.BytesIO()
    images[0].save(
        buf, format="PDF", save_all=True, append_images=images[1:], resolution=96.0 * scale, **dates,
    )
    return buf.getvalue()


def render_document(
    document: Document,
    metadata: TemplateMetadata | None,
    engine: RenderEngine,
    *,
    run_date: date,
    scale: float = 1.0,
    suffixes: Iterable[str] = DEFAULT_ASSET_SUFFIXES,
) -> RenderOutput:
    """Render *document* with stand-ins into page rasters and a combined PDF.

    Raises:
        RenderError: recoverable failure (bad markup, engine rejected a page).
        EngineUnavailableError: the engine could not be started.
    """
    html_pages = build_page_html(document, metadata, run_date=run_date, suffixes=suffixes)
    width, height = document.dimensions()
    try:
        rasters = engine.rasterize(html_pages, width, height, scale)
    except SynthesisError:
        raise
    except Exception as exc:
        raise RenderError(f"Renderer error: {exc}") from exc

    if len(rasters) != len(html_pages):
        raise RenderError(f"Renderer returned {len(rasters)} image(s) for {len(html_pages)} page(s).")
    try:
        combined = combine_pdf(rasters, scale, stamp=run_date)
    except OSError as exc:
        raise RenderError(f"Could not combine page rasters: {exc}") from exc
    logger.info("Rendered %d page(s) at %dx%d", len(rasters), width, height)
    return RenderOutput(page_rasters=rasters, combined_artifact=combined)
