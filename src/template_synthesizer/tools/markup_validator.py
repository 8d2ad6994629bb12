"""Deterministic markup validator for the flexbox page dialect.

Runs before every render attempt.  No LLM calls, no rendering.  Only box
containers (``div``), text runs (``span``, ``p``), images and inline SVG are
expressible by the rasterizer; everything else is reported as an issue.
"""

from __future__ import annotations

import re
from html.parser import HTMLParser

from ..models import Document, ValidationIssue


# ---------------------------------------------------------------------------
# Dialect capability set
# ---------------------------------------------------------------------------

_TABLE_TAGS = frozenset({"table", "thead", "tbody", "tfoot", "tr", "td", "th", "caption", "colgroup", "col"})
_LIST_TAGS = frozenset({"ul", "ol", "li", "dl", "dt", "dd"})
_ANCHOR_TAGS = frozenset({"a"})
_FORM_TAGS = frozenset({"form", "input", "button", "select", "option", "textarea", "label", "fieldset"})

DISALLOWED_ELEMENTS: frozenset[str] = _TABLE_TAGS | _LIST_TAGS | _ANCHOR_TAGS | _FORM_TAGS

_ELEMENT_HINTS: dict[frozenset[str], str] = {
    _TABLE_TAGS: "build rows and cells from flex <div>s",
    _LIST_TAGS: "use flex <div> rows with a small bullet <div>",
    _ANCHOR_TAGS: "use a styled <span>",
    _FORM_TAGS: "draw the control with styled <div>s",
}

_DISALLOWED_CSS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"display\s*:\s*(?:inline-)?grid\b", re.IGNORECASE),
     "display: grid is not supported; use flexbox"),
    (re.compile(r"\bgrid-(?:template|area|column|row)[\w-]*\s*:", re.IGNORECASE),
     "grid placement properties are not supported; use flexbox"),
    (re.compile(r"display\s*:\s*(?:inline-)?table", re.IGNORECASE),
     "table layout is not supported; use flexbox"),
    (re.compile(r"position\s*:\s*(?:fixed|sticky)\b", re.IGNORECASE),
     "position: fixed/sticky is not supported; use relative or absolute"),
    (re.compile(r"\bcalc\s*\(", re.IGNORECASE),
     "calc() is not supported; use fixed values"),
    (re.compile(r"\bvar\s*\(", re.IGNORECASE),
     "var() style variables are not supported; use literal values"),
    (re.compile(r"\bhsla?\s*\(", re.IGNORECASE),
     "HSL colors are not supported; use hex or rgb/rgba"),
]

_DATA_URI_RE = re.compile(r"data:image/[\w.+-]+;base64,[A-Za-z0-9+/=\s]*", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Markup scanning
# ---------------------------------------------------------------------------

class _MarkupScanner(HTMLParser):
    """Collects element names, inline styles and image attributes."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.tag_counts: dict[str, int] = {}
        self.styles: list[str] = []
        self.images: list[dict[str, str | None]] = []
        self._in_style = False

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        self.tag_counts[tag] = self.tag_counts.get(tag, 0) + 1
        attr_map = dict(attrs)
        style = attr_map.get("style")
        if style:
            self.styles.append(style)
        if tag == "img":
            self.images.append(attr_map)
        elif tag == "style":
            self._in_style = True

    def handle_endtag(self, tag: str) -> None:
        if tag == "style":
            self._in_style = False

    def handle_data(self, data: str) -> None:
        if self._in_style:
            self.styles.append(data)


def _element_hint(tag: str) -> str:
    for group, hint in _ELEMENT_HINTS.items():
        if tag in group:
            return hint
    return "use <div>, <span>, <p>, <img> or <svg>"


def _describe_image(attrs: dict[str, str | None]) -> str:
    src = attrs.get("src") or ""
    if src.lower().startswith("data:"):
        src = "data:..."
    return f'<img src="{src[:60]}">' if src else "<img>"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_markup(markup: str, location: str) -> list[ValidationIssue]:
    """Return the structural issues found in one page body or band.

    Checks performed, in order:
    1. Disallowed elements (tables, lists, anchors, form controls)
    2. Disallowed styling (grid, table layout, fixed/sticky, calc, var, HSL)
    3. Inline embedded image payloads
    4. ``<img>`` elements missing ``width``/``height`` attributes
    """
    issues: list[ValidationIssue] = []

    scanner = _MarkupScanner()
    scanner.feed(markup)
    scanner.close()

    # 1. Element vocabulary
    for tag in sorted(scanner.tag_counts):
        if tag in DISALLOWED_ELEMENTS:
            count = scanner.tag_counts[tag]
            plural = "s" if count != 1 else ""
            issues.append(ValidationIssue(
                location=location,
                message=f"<{tag}> is not supported ({count} occurrence{plural}); {_element_hint(tag)}",
            ))

    # 2. Styling constructs; one issue per construct
    style_text = "\n".join(scanner.styles)
    for pattern, message in _DISALLOWED_CSS:
        if pattern.search(style_text):
            issues.append(ValidationIssue(location=location, message=message))

    # 3. Embedded binary image data anywhere in the markup
    payloads = len(_DATA_URI_RE.findall(markup))
    if payloads:
        plural = "s" if payloads != 1 else ""
        issues.append(ValidationIssue(
            location=location,
            message=(
                f"{payloads} inline embedded image payload{plural} found; "
                "reference an image token such as {{PRODUCT_IMAGE}} instead"
            ),
        ))

    # 4. Structural image dimensions
    for attrs in scanner.images:
        missing = [name for name in ("width", "height") if not attrs.get(name)]
        if missing:
            issues.append(ValidationIssue(
                location=location,
                message=(
                    f"{_describe_image(attrs)} is missing the {' and '.join(missing)} "
                    "attribute (style properties alone are not enough)"
                ),
            ))

    return issues


def validate_document(document: Document) -> list[ValidationIssue]:
    """Validate every page body, band and per-page override of *document*."""
    issues: list[ValidationIssue] = []
    if document.header is not None:
        issues.extend(validate_markup(document.header.content, "header"))
    if document.footer is not None:
        issues.extend(validate_markup(document.footer.content, "footer"))

    for index, page in enumerate(document.pages, start=1):
        issues.extend(validate_markup(page.body, f"page {index}"))
        if page.header_override is not None:
            issues.extend(validate_markup(page.header_override, f"page {index} header"))
        if page.footer_override is not None:
            issues.extend(validate_markup(page.footer_override, f"page {index} footer"))
    return issues


def format_issues(issues: list[ValidationIssue]) -> str:
    """Render *issues* as the text returned to the reasoning service."""
    lines = [f"Validation failed with {len(issues)} issue(s); nothing was rendered:"]
    lines.extend(f"- {issue}" for issue in issues)
    return "\n".join(lines)
