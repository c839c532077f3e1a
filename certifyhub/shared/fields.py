from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

FONT_FAMILIES: tuple[str, ...] = ("serif", "sans-serif", "monospace", "cursive", "fantasy")
TEXT_ALIGNMENTS: tuple[str, ...] = ("left", "center", "right")

DEFAULT_FONT_SIZE = 16
DEFAULT_FONT_FAMILY = "serif"
DEFAULT_COLOR = "#000000"
DEFAULT_TEXT_ALIGN = "center"

_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


class FieldValidationError(ValueError):
    """Raised when a field definition does not have the expected shape."""


@dataclass(frozen=True)
class Field:
    id: str
    label: str
    value: str = ""
    x: float = 0.0
    y: float = 0.0
    required: bool = True
    show_in_preview: bool = True
    font_size: int = DEFAULT_FONT_SIZE
    font_family: str = DEFAULT_FONT_FAMILY
    color: str = DEFAULT_COLOR
    text_align: str = DEFAULT_TEXT_ALIGN

    def with_value(self, value: str | None) -> "Field":
        return replace(self, value=value or "")

    @classmethod
    def from_dict(cls, raw: Any) -> "Field":
        """Build a Field from stored or posted JSON.

        Accepts the editor's camelCase shape (``position: {x, y}``,
        ``showInPreview``, ``fontSize`` ...) as well as snake_case keys.
        """
        if not isinstance(raw, dict):
            raise FieldValidationError("Field definition must be an object.")
        field_id = raw.get("id")
        label = raw.get("label")
        if not isinstance(field_id, str) or not field_id.strip():
            raise FieldValidationError("Field id is required.")
        if not isinstance(label, str) or not label.strip():
            raise FieldValidationError(f"Field {field_id!r} is missing a label.")

        position = raw.get("position")
        if position is None:
            position = {"x": raw.get("x", 0), "y": raw.get("y", 0)}
        if not isinstance(position, dict):
            raise FieldValidationError(f"Field {field_id!r} has an invalid position.")
        try:
            x = float(position.get("x", 0))
            y = float(position.get("y", 0))
        except (TypeError, ValueError):
            raise FieldValidationError(f"Field {field_id!r} has a non-numeric position.")

        font_size_raw = _first(raw, "fontSize", "font_size", default=DEFAULT_FONT_SIZE)
        try:
            font_size = int(font_size_raw)
        except (TypeError, ValueError):
            raise FieldValidationError(f"Field {field_id!r} has an invalid font size.")
        if font_size <= 0:
            raise FieldValidationError(f"Field {field_id!r} has an invalid font size.")

        font_family = _first(raw, "fontFamily", "font_family", default=DEFAULT_FONT_FAMILY)
        if font_family not in FONT_FAMILIES:
            raise FieldValidationError(
                f"Field {field_id!r} uses unsupported font family {font_family!r}."
            )

        color = _first(raw, "color", default=DEFAULT_COLOR)
        if not isinstance(color, str) or not _HEX_COLOR.match(color):
            raise FieldValidationError(f"Field {field_id!r} has an invalid color.")

        text_align = _first(raw, "textAlign", "text_align", default=DEFAULT_TEXT_ALIGN)
        if text_align not in TEXT_ALIGNMENTS:
            raise FieldValidationError(
                f"Field {field_id!r} has unsupported alignment {text_align!r}."
            )

        value = raw.get("value")
        return cls(
            id=field_id,
            label=label,
            value="" if value is None else str(value),
            x=x,
            y=y,
            required=bool(raw.get("required", True)),
            show_in_preview=bool(
                _first(raw, "showInPreview", "show_in_preview", default=True)
            ),
            font_size=font_size,
            font_family=font_family,
            color=color,
            text_align=text_align,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "value": self.value,
            "position": {"x": self.x, "y": self.y},
            "required": self.required,
            "showInPreview": self.show_in_preview,
            "fontSize": self.font_size,
            "fontFamily": self.font_family,
            "color": self.color,
            "textAlign": self.text_align,
        }


def _first(raw: dict, *keys: str, default=None):
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def fields_from_json(raw: Any) -> list[Field]:
    if not isinstance(raw, list):
        raise FieldValidationError("Field layout must be a list.")
    fields = [Field.from_dict(item) for item in raw]
    seen: set[str] = set()
    for item in fields:
        if item.id in seen:
            raise FieldValidationError(f"Duplicate field id {item.id!r}.")
        seen.add(item.id)
    return fields


def editable_fields(fields: Iterable[Field]) -> list[Field]:
    return [f for f in fields if f.show_in_preview]


DEFAULT_FIELDS: tuple[Field, ...] = (
    Field(id="name", label="Name", x=400, y=250, font_size=32, color="#1a237e"),
    Field(id="date", label="Date", x=400, y=350, font_size=20, color="#333333"),
    Field(
        id="certificateId",
        label="Certificate ID",
        x=650,
        y=480,
        font_size=14,
        font_family="monospace",
        color="#888888",
    ),
)


@dataclass
class BulkRow:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    values: dict[str, str] = field(default_factory=dict)
    recipient_email: str | None = None

    def get(self, field_id: str) -> str:
        return self.values.get(field_id) or ""

    def to_dict(self) -> dict:
        data = {"id": self.id, "values": dict(self.values)}
        if self.recipient_email is not None:
            data["recipient_email"] = self.recipient_email
        return data


@dataclass(frozen=True)
class DuplicateCertificate:
    recipient_email: str
    metadata_values: dict
    existing_certificate_key: str

    def to_dict(self) -> dict:
        return {
            "recipient_email": self.recipient_email,
            "metadata_values": dict(self.metadata_values),
            "existing_certificate_key": self.existing_certificate_key,
        }
