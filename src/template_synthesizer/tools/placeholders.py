"""Stand-in values for unresolved field and asset tokens.

Tokens use ``{{NAME}}`` or ``{{NAME:default}}`` syntax.  Before every render
the live document and metadata are scanned and each token is swapped for a
visible literal (fields) or a neutral placeholder bitmap (image assets), so a
render never fails because real data is missing.  Nothing here is written
back into the document.
"""

from __future__ import annotations

import base64
import io
import re
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
from typing import Any, Iterable

from PIL import Image, ImageDraw

from ..models import DEFAULT_ASSET_SUFFIXES, Document, FieldType, TemplateField, TemplateMetadata

TOKEN_RE = re.compile(r"\{\{(\w+)(?::([^}]*))?\}\}")
_IMG_SRC_TOKEN_RE = re.compile(r"""(\bsrc\s*=\s*["'])\{\{(\w+)(?::[^}]*)?\}\}(["'])""", re.IGNORECASE)

SPECIAL_VARIABLES: tuple[str, ...] = ("pageNumber", "totalPages", "date", "dateFormatted")

PLACEHOLDER_FILL = "#e5e7eb"
PLACEHOLDER_BORDER = "#9ca3af"


# ---------------------------------------------------------------------------
# Asset suffix taxonomy
# ---------------------------------------------------------------------------

def is_asset_token(name: str, suffixes: Iterable[str] = DEFAULT_ASSET_SUFFIXES) -> bool:
    """Return True if *name* ends with one of the image-asset suffixes."""
    return name.upper().endswith(tuple(s.upper() for s in suffixes))


def find_tokens(markup: str) -> list[str]:
    """Return token names in *markup* in first-seen order, without duplicates."""
    seen: dict[str, None] = {}
    for m in TOKEN_RE.finditer(markup):
        seen.setdefault(m.group(1), None)
    return list(seen)


def _document_markup(document: Document) -> Iterable[str]:
    if document.header is not None:
        yield document.header.content
    if document.footer is not None:
        yield document.footer.content
    for page in document.pages:
        yield page.body
        if page.header_override is not None:
            yield page.header_override
        if page.footer_override is not None:
            yield page.footer_override


# ---------------------------------------------------------------------------
# Placeholder bitmap
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def placeholder_bitmap() -> bytes:
    """Return the fixed grey PNG used in place of every unresolved image."""
    img = Image.new("RGB", (96, 96), PLACEHOLDER_FILL)
    draw = ImageDraw.Draw(img)
    draw.rectangle((0, 0, 95, 95), outline=PLACEHOLDER_BORDER, width=2)
    draw.line((0, 0, 95, 95), fill=PLACEHOLDER_BORDER, width=1)
    draw.line((0, 95, 95, 0), fill=PLACEHOLDER_BORDER, width=1)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@lru_cache(maxsize=1)
def placeholder_data_url() -> str:
    encoded = base64.b64encode(placeholder_bitmap()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


# ---------------------------------------------------------------------------
# Field stand-ins
# ---------------------------------------------------------------------------

def _object_keys(schema: dict[str, Any] | None) -> list[str]:
    if not schema:
        return []
    props = schema.get("properties", schema)
    return list(props) if isinstance(props, dict) else []


def stand_in_value(tpl_field: TemplateField) -> str:
    """Deterministic visible literal for one declared field.

    - string / number / boolean: ``[NAME]``
    - array of primitives: ``[NAME[0]], [NAME[1]]``
    - array of objects: two items of ``[NAME[].key]`` values
    - object: ``key: [NAME.key]`` pairs
    """
    name = tpl_field.name
    if tpl_field.type == FieldType.ARRAY:
        item_keys = []
        if tpl_field.items and tpl_field.items.get("type") == FieldType.OBJECT.value:
            item_keys = _object_keys(tpl_field.items)
        if item_keys:
            item = " / ".join(f"[{name}[].{key}]" for key in item_keys)
            return f"{item}; {item}"
        return f"[{name}[0]], [{name}[1]]"
    if tpl_field.type == FieldType.OBJECT:
        keys = _object_keys(tpl_field.properties)
        if keys:
            return ", ".join(f"{key}: [{name}.{key}]" for key in keys)
    return f"[{name}]"


def special_values(page_number: int, total_pages: int, run_date: date) -> dict[str, str]:
    """Values for the built-in page variables."""
    return {
        "pageNumber": str(page_number),
        "totalPages": str(total_pages),
        "date": run_date.isoformat(),
        "dateFormatted": f"{run_date.strftime('%B')} {run_date.day}, {run_date.year}",
    }


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StandIns:
    """Stand-in table computed fresh from the live document and metadata."""
    text: dict[str, str] = field(default_factory=dict)
    assets: frozenset[str] = frozenset()


def build_stand_ins(
    document: Document,
    metadata: TemplateMetadata | None,
    suffixes: Iterable[str] = DEFAULT_ASSET_SUFFIXES,
) -> StandIns:
    """Compute text and asset stand-ins for the current run state."""
    suffixes = tuple(suffixes)
    text: dict[str, str] = {}
    assets: set[str] = set()

    if metadata is not None:
        for tpl_field in metadata.fields:
            text[tpl_field.name] = stand_in_value(tpl_field)
        assets.update(slot.name for slot in metadata.asset_slots)

    for markup in _document_markup(document):
        for name in find_tokens(markup):
            if is_asset_token(name, suffixes):
                assets.add(name)

    return StandIns(text=text, assets=frozenset(assets))


def resolve_markup(markup: str, stand_ins: StandIns, specials: dict[str, str] | None = None) -> str:
    """Substitute stand-ins into *markup*.

    Image tokens in a ``src`` attribute become the placeholder bitmap; other
    asset tokens become ``[NAME]``.  Tokens with neither a stand-in nor a
    default are left visible verbatim.
    """
    specials = specials or {}

    def _replace_src(m: re.Match) -> str:
        if m.group(2) in stand_ins.assets:
            return f"{m.group(1)}{placeholder_data_url()}{m.group(3)}"
        return m.group(0)

    def _replace_token(m: re.Match) -> str:
        name, default = m.group(1), m.group(2)
        if name in specials:
            return specials[name]
        if name in stand_ins.text:
            return stand_ins.text[name]
        if name in stand_ins.assets:
            return f"[{name}]"
        if default is not None:
            return default
        return m.group(0)

    markup = _IMG_SRC_TOKEN_RE.sub(_replace_src, markup)
    return TOKEN_RE.sub(_replace_token, markup)
