"""Pydantic models for the template synthesizer."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PageSize(str, Enum):
    A4 = "A4"
    LETTER = "LETTER"
    LEGAL = "LEGAL"


# CSS pixels at 96 DPI
PAGE_DIMENSIONS: dict[PageSize, tuple[int, int]] = {
    PageSize.A4: (794, 1123),
    PageSize.LETTER: (816, 1056),
    PageSize.LEGAL: (816, 1344),
}


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class AssetKind(str, Enum):
    PHOTO = "photo"
    LOGO = "logo"
    ICON = "icon"
    CHART = "chart"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


class EventType(str, Enum):
    STATUS = "status"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    REASONING = "reasoning"
    VERSION = "version"
    METADATA = "metadata"


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------

class HeaderFooter(BaseModel):
    """Document-level header or footer band."""
    height: int = Field(..., ge=0, description="Band height in px")
    content: str = Field(..., description="Markup rendered inside the band")


class Page(BaseModel):
    """One page of the document-in-progress."""
    body: str = Field(..., description="Page body markup")
    header_override: str | None = Field(default=None, description="Replaces the document header on this page")
    footer_override: str | None = Field(default=None, description="Replaces the document footer on this page")


class Document(BaseModel):
    """The live document. Replaced wholesale or patched in place."""
    page_size: PageSize = Field(default=PageSize.A4)
    header: HeaderFooter | None = Field(default=None)
    footer: HeaderFooter | None = Field(default=None)
    pages: list[Page] = Field(default_factory=list)

    def dimensions(self) -> tuple[int, int]:
        return PAGE_DIMENSIONS[self.page_size]


# ---------------------------------------------------------------------------
# Template metadata
# ---------------------------------------------------------------------------

class TemplateField(BaseModel):
    """One substitutable text value the final template accepts."""
    name: str = Field(..., pattern=r"^\w+$", description="SCREAMING_SNAKE_CASE token name")
    type: FieldType = Field(default=FieldType.STRING)
    description: str = Field(default="")
    optional: bool = Field(default=False)
    default: Any = Field(default=None)
    example: Any = Field(default=None)
    items: dict[str, Any] | None = Field(default=None, description="Item schema for array fields")
    properties: dict[str, Any] | None = Field(default=None, description="Property schema for object fields")


class AssetSlot(BaseModel):
    """One substitutable image the final template accepts."""
    name: str = Field(..., pattern=r"^\w+$")
    kind: AssetKind = Field(...)
    description: str = Field(default="")


class DocumentConfig(BaseModel):
    page_size: PageSize = Field(default=PageSize.A4)
    header: HeaderFooter | None = Field(default=None)
    footer: HeaderFooter | None = Field(default=None)


def _reject_duplicate_names(items: list[Any], kind: str) -> list[Any]:
    seen: set[str] = set()
    for item in items:
        if item.name in seen:
            raise ValueError(f"duplicate {kind} name: {item.name}")
        seen.add(item.name)
    return items


class TemplateMetadata(BaseModel):
    """Template identity, document configuration, and its fields and asset slots."""
    id: str = Field(...)
    name: str = Field(...)
    format_tag: str = Field(default="html-flex", description="Markup dialect the pages are written in")
    document_config: DocumentConfig = Field(default_factory=DocumentConfig)
    fields: list[TemplateField] = Field(default_factory=list)
    asset_slots: list[AssetSlot] = Field(default_factory=list)

    @field_validator("fields")
    @classmethod
    def unique_fields(cls, v: list[TemplateField]) -> list[TemplateField]:
        return _reject_duplicate_names(v, "field")

    @field_validator("asset_slots")
    @classmethod
    def unique_slots(cls, v: list[AssetSlot]) -> list[AssetSlot]:
        return _reject_duplicate_names(v, "asset slot")


# ---------------------------------------------------------------------------
# Rendering and versions
# ---------------------------------------------------------------------------

class RenderOutput(BaseModel):
    """Raster pages plus the combined paged artifact of one render."""
    page_rasters: list[bytes] = Field(default_factory=list, description="PNG bytes, one per page")
    combined_artifact: bytes | None = Field(default=None, description="Multi-page PDF bytes")


class Version(BaseModel):
    """One successfully rendered snapshot. Immutable."""
    model_config = ConfigDict(frozen=True)

    number: int = Field(..., ge=1)
    page_rasters: tuple[bytes, ...] = Field(default=())
    combined_artifact: bytes | None = Field(default=None)


class ValidationIssue(BaseModel):
    """A structural problem found in one page (or band) before rendering."""
    location: str = Field(..., description="e.g. 'page 2' or 'header'")
    message: str = Field(...)

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


# ---------------------------------------------------------------------------
# Tool surface exposed to the reasoning service
# ---------------------------------------------------------------------------

class PatchOperation(BaseModel):
    page: int = Field(..., ge=1, description="1-based page index")
    search: str = Field(..., min_length=1, description="Exact text to find in the page body (whitespace-sensitive)")
    replace: str = Field(..., description="Replacement text")


class ReplaceDocument(BaseModel):
    """Replace all pages and/or apply a batch of exact search/replace edits."""
    tool: Literal["replace_document"] = "replace_document"
    pages: list[Page] | None = Field(default=None, description="Complete new page list")
    patches: list[PatchOperation] = Field(default_factory=list, description="Edits applied in order after pages")


class PatchPage(BaseModel):
    """Apply one exact search/replace edit to one page body."""
    tool: Literal["patch_page"] = "patch_page"
    page: int = Field(..., description="1-based page index")
    search: str = Field(..., description="Exact text to find (whitespace-sensitive, must be unique)")
    replace: str = Field(..., description="Replacement text")


class WriteMetadata(BaseModel):
    """Write or overwrite the template metadata and document configuration."""
    tool: Literal["write_metadata"] = "write_metadata"
    id: str = Field(..., description="Template id, lowercase with hyphens")
    name: str = Field(..., description="Human-readable template name")
    page_size: PageSize = Field(default=PageSize.A4)
    header: HeaderFooter | None = Field(default=None)
    footer: HeaderFooter | None = Field(default=None)
    fields: list[TemplateField] = Field(default_factory=list)
    asset_slots: list[AssetSlot] = Field(default_factory=list)

    @field_validator("fields")
    @classmethod
    def unique_fields(cls, v: list[TemplateField]) -> list[TemplateField]:
        return _reject_duplicate_names(v, "field")

    @field_validator("asset_slots")
    @classmethod
    def unique_slots(cls, v: list[AssetSlot]) -> list[AssetSlot]:
        return _reject_duplicate_names(v, "asset slot")

    def to_metadata(self) -> TemplateMetadata:
        return TemplateMetadata(
            id=self.id,
            name=self.name,
            document_config=DocumentConfig(page_size=self.page_size, header=self.header, footer=self.footer),
            fields=self.fields,
            asset_slots=self.asset_slots,
        )


class MarkComplete(BaseModel):
    """Declare the template finished."""
    tool: Literal["mark_complete"] = "mark_complete"
    summary: str = Field(default="", description="Brief summary of what was generated")


ToolCall = Annotated[
    Union[ReplaceDocument, PatchPage, WriteMetadata, MarkComplete],
    Field(discriminator="tool"),
]

TOOL_CALL_ADAPTER: TypeAdapter[ToolCall] = TypeAdapter(ToolCall)

TOOL_MODELS: dict[str, type[BaseModel]] = {
    "replace_document": ReplaceDocument,
    "patch_page": PatchPage,
    "write_metadata": WriteMetadata,
    "mark_complete": MarkComplete,
}


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------

class ProgressEvent(BaseModel):
    """One entry in the ordered progress stream."""
    type: EventType = Field(...)
    message: str = Field(default="")
    turn: int | None = Field(default=None)
    tool: str | None = Field(default=None)
    version: int | None = Field(default=None)
    artifacts: list[str] = Field(default_factory=list, description="References to rendered artifacts")


# ---------------------------------------------------------------------------
# Run result
# ---------------------------------------------------------------------------

class SynthesisResult(BaseModel):
    """Outcome of one synthesis run, complete or partial."""
    success: bool = Field(...)
    status: RunStatus = Field(...)
    message: str = Field(default="")
    metadata: TemplateMetadata | None = Field(default=None)
    document: Document = Field(default_factory=Document)
    versions: list[Version] = Field(default_factory=list)
    final_render: RenderOutput | None = Field(default=None)
    history: list[dict[str, Any]] = Field(default_factory=list, description="Opaque conversation history")
    turns_used: int = Field(default=0)
    version_counter: int = Field(default=0, description="Last allocated version number")
    last_render_succeeded: bool = Field(default=True, description="Outcome of the most recent render attempt")
    last_render_error: str | None = Field(default=None)


class RenderRecord(BaseModel):
    """On-disk location of one render's artifacts, relative to the output dir."""
    page_files: list[str] = Field(default_factory=list)
    combined_file: str | None = Field(default=None)


class VersionRecord(RenderRecord):
    number: int = Field(..., ge=1)


class RunManifest(BaseModel):
    """Provenance record written next to the rendered artifacts."""
    project_name: str = Field(...)
    status: RunStatus = Field(...)
    success: bool = Field(...)
    message: str = Field(default="")
    metadata: TemplateMetadata | None = Field(default=None)
    document: Document = Field(default_factory=Document)
    versions: list[VersionRecord] = Field(default_factory=list)
    final_render: RenderRecord | None = Field(default=None, description="Render of the committed document")
    history_file: str = Field(default="history.json")
    turns_used: int = Field(default=0)
    version_counter: int = Field(default=0)
    last_render_succeeded: bool = Field(default=True)
    last_render_error: str | None = Field(default=None)


# ---------------------------------------------------------------------------
# Project Configuration (loaded from YAML)
# ---------------------------------------------------------------------------

DEFAULT_ASSET_SUFFIXES: tuple[str, ...] = (
    "_IMAGE", "_PHOTO", "_PICTURE", "_IMG",
    "_LOGO", "_ICON",
    "_CHART", "_GRAPH", "_DIAGRAM",
)


class ModelEndpointOverride(BaseModel):
    """Per-model endpoint settings that take precedence over ``azure``."""
    endpoint: str = Field(default="")
    api_key: str | None = Field(default=None)
    api_version: str | None = Field(default=None)
    api_type: str | None = Field(default=None, description="Force an AG2 api_type, e.g. 'anthropic'")


class ModelConfig(BaseModel):
    """LLM model configuration per role."""
    default: str = Field(default="gpt-5.2", description="Default model")
    designer: str | None = Field(default=None, description="Model proposing and patching pages")
    overrides: dict[str, ModelEndpointOverride] = Field(default_factory=dict)


class AzureConfig(BaseModel):
    """Azure OpenAI connection settings."""
    api_key: str = Field(default="", description="Azure OpenAI API key (or ${ENV_VAR})")
    api_version: str = Field(default="", description="API version")
    endpoint: str = Field(default="", description="Azure endpoint URL")


class ProjectConfig(BaseModel):
    """Full project configuration loaded from config.yaml."""
    project_name: str = Field(default="template-synthesis")

    # Inputs
    reference_images: list[str] = Field(default_factory=list, description="Reference page images, in page order")
    instruction: str = Field(default="", description="Optional natural-language instruction")
    feedback: str = Field(default="", description="Feedback text for continue mode")
    resume_from: str | None = Field(default=None, description="Snapshot directory of a prior run")
    output_dir: str = Field(default="output/", description="Output directory")

    # Budgets
    max_turns: int = Field(default=15, ge=1, description="Maximum controller turns")
    max_versions: int | None = Field(default=None, ge=2, description="Maximum stored versions")

    # Document defaults
    default_page_size: PageSize = Field(default=PageSize.A4)

    # Image preprocessing
    image_max_dimension: int = Field(default=1568, ge=64, description="Longest edge in px before downsizing")
    image_max_bytes: int = Field(default=3_500_000, ge=1024, description="Payload size before transcoding")

    # Rendering
    render_scale: float = Field(default=1.0, gt=0, description="Device scale factor for page rasters")
    render_timeout: int = Field(default=60, description="Per-render timeout in seconds")

    # Stand-ins
    asset_suffixes: list[str] = Field(default_factory=lambda: list(DEFAULT_ASSET_SUFFIXES))

    # Azure OpenAI
    azure: AzureConfig = Field(default_factory=AzureConfig)

    # Models
    models: ModelConfig = Field(default_factory=ModelConfig)

    timeout: int = Field(default=120, description="LLM call timeout in seconds")
    seed: int = Field(default=42, description="LLM seed for reproducibility")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SynthesisError(Exception):
    """Base class for synthesizer errors."""


class RenderError(SynthesisError):
    """The rasterizer rejected the document. Recoverable on the next turn."""


class EngineUnavailableError(SynthesisError):
    """The rendering engine itself could not be started or reached."""


class ReasoningServiceError(SynthesisError):
    """The reasoning service was unreachable or returned an unusable reply."""


class ImagePreprocessError(SynthesisError):
    """A reference image could not be read or normalised."""


class IllegalTransitionError(SynthesisError):
    """A run-state phase change that the lifecycle does not allow."""
