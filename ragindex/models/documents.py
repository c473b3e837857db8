# =============================================================================
# Document & Chunk Models — Write-Path Inputs
# =============================================================================
#
# Document and Chunk are plain dataclasses: they are created and consumed
# inside one indexing call and never serialized by the pipeline itself.
# ChunkParams and ExtractParams are Pydantic V2 models because their bounds
# are part of the public contract and must be validated before any work
# starts.
#
# ChunkingStrategy is a closed set. Unknown names resolve to RECURSIVE with
# a logged warning rather than an exception.
# =============================================================================

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from ragindex.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Values the pipeline expects inside metadata maps. Nested mappings are
# tolerated and sanitised recursively.
MetadataValue = Union[str, int, float, bool, list[str], None]


class ChunkingStrategy(str, enum.Enum):
    """The split rules the chunker knows how to apply."""

    RECURSIVE = "recursive"
    CHARACTER = "character"
    TOKEN = "token"
    MARKDOWN = "markdown"
    HTML = "html"
    JSON = "json"
    LATEX = "latex"
    SENTENCE = "sentence"
    SEMANTIC_MARKDOWN = "semantic-markdown"

    @classmethod
    def resolve(cls, value: ChunkingStrategy | str | None) -> ChunkingStrategy:
        """
        Map a strategy name onto the enum.

        None means the default (recursive). Anything unrecognised also
        becomes recursive, and the substitution is logged.
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.RECURSIVE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.warning(
                "Unknown chunking strategy %r; falling back to '%s'",
                value, cls.RECURSIVE.value,
            )
            return cls.RECURSIVE


class ChunkParams(BaseModel):
    """
    Size/overlap bounds plus the strategy-specific knobs.

    Fields that only apply to one strategy are ignored by the others.
    `headers=None` means the strategy's default header markers.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_size: int = Field(default=512, ge=50, le=4000)
    overlap: int = Field(default=50, ge=0, le=500)

    # recursive
    separators: list[str] = Field(default_factory=lambda: ["\n\n", "\n", " "])
    # character
    separator: str = "\n"
    is_separator_regex: bool = False
    # markdown / html: (marker, metadata key) pairs
    headers: list[tuple[str, str]] | None = None
    # sentence
    sentence_enders: list[str] = Field(default_factory=lambda: ["."])
    min_size: int | None = Field(default=None, ge=1)
    # semantic-markdown
    join_threshold: int = Field(default=500, ge=1)
    # token
    encoding_name: str = "cl100k_base"

    @model_validator(mode="after")
    def _overlap_below_max_size(self) -> ChunkParams:
        if self.overlap >= self.max_size:
            raise ValueError(
                f"overlap ({self.overlap}) must be smaller than "
                f"max_size ({self.max_size})"
            )
        if not self.sentence_enders:
            raise ValueError("sentence_enders must not be empty")
        return self

    @classmethod
    def from_value(cls, value: ChunkParams | dict[str, Any] | None) -> ChunkParams:
        """Build params from a model, a dict or None, raising ValidationError."""
        if isinstance(value, cls):
            return value
        try:
            return cls(**(value or {}))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid chunk parameters: {e}") from e


class ExtractParams(BaseModel):
    """Which LLM-derived metadata fields to attach to every chunk."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: bool = False
    summary: bool = False
    keywords: bool = False
    questions: bool = False
    keyword_count: int = Field(default=5, ge=1, le=20)
    question_count: int = Field(default=3, ge=1, le=10)

    @property
    def requested(self) -> list[str]:
        return [
            name for name in ("title", "summary", "keywords", "questions")
            if getattr(self, name)
        ]

    @classmethod
    def from_value(cls, value: ExtractParams | dict[str, Any] | None) -> ExtractParams:
        if isinstance(value, cls):
            return value
        try:
            return cls(**(value or {}))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid extraction parameters: {e}") from e


@dataclass(frozen=True)
class Document:
    """
    Raw text plus caller metadata, as supplied by a document source.

    The metadata map is copied on construction so later mutation of the
    caller's dict cannot leak into a running indexing call.
    """

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.text, str) or not self.text:
            raise ValidationError("Document content cannot be empty")
        if not isinstance(self.metadata, dict):
            raise ValidationError("Document metadata must be a mapping")
        object.__setattr__(self, "metadata", dict(self.metadata))


@dataclass
class Chunk:
    """
    One ordered slice of a document, ready for embedding.

    `index` / `total_chunks` let a consumer rebuild the original order.
    """

    id: str
    text: str
    index: int
    total_chunks: int
    metadata: dict[str, Any] = field(default_factory=dict)
