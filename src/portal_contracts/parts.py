"""Message parts.

A content message carries an ordered list of parts. Parts are a closed
discriminated union (Pydantic v2) keyed by the `kind` field, shaped the same
way as agent-protocol parts so they can cross the wire without re-mapping.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class PartKind(str, Enum):
    text = "text"
    file = "file"
    data = "data"


class PartBase(BaseModel):
    kind: PartKind
    metadata: dict[str, Any] | None = None


class TextPart(PartBase):
    kind: Literal[PartKind.text] = PartKind.text
    text: str


class FileContent(BaseModel):
    """File reference: inline base64 `bytes` or a `uri`, never neither."""

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")
    bytes: str | None = None
    uri: str | None = None

    @model_validator(mode="after")
    def validate_has_source(self) -> "FileContent":
        if self.bytes is None and self.uri is None:
            raise ValueError("file content needs either 'bytes' or 'uri'")
        return self


class FilePart(PartBase):
    kind: Literal[PartKind.file] = PartKind.file
    file: FileContent


class DataPart(PartBase):
    kind: Literal[PartKind.data] = PartKind.data
    data: dict[str, Any] = Field(default_factory=dict)


Part = Annotated[Union[TextPart, FilePart, DataPart], Field(discriminator="kind")]

PARTS_ADAPTER: TypeAdapter[list[Part]] = TypeAdapter(list[Part])


def text_of(parts: list[Part], sep: str = "\n") -> str:
    """Join the text of every text part, skipping other kinds."""
    return sep.join(p.text for p in parts if isinstance(p, TextPart))
