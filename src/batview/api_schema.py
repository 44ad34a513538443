from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from batview.colormap import COLORMAPS


class PayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CacheConfigPayload(PayloadBase):
    column_budget_mb: float | None = Field(default=None, gt=0)
    tile_budget_mb: float | None = Field(default=None, gt=0)
    large_file_frames: int | None = Field(default=None, ge=0)
    colormap: str | None = None

    @field_validator("colormap")
    @classmethod
    def validate_colormap(cls, value: str | None) -> str | None:
        if value is not None and value not in COLORMAPS:
            raise ValueError(f"Unknown colormap: {value}")
        return value


class OpenAudioPathPayload(PayloadBase):
    path: str = Field(min_length=1)


class FilePayload(PayloadBase):
    file_id: int = Field(ge=0)


class RequestTilesPayload(PayloadBase):
    file_id: int = Field(ge=0)
    first_frame: int = Field(ge=0)
    last_frame: int = Field(ge=0)

    @model_validator(mode="after")
    def validate_range(self) -> RequestTilesPayload:
        if self.last_frame < self.first_frame:
            raise ValueError("last_frame must not be before first_frame.")
        return self


class JumpViewportPayload(PayloadBase):
    file_id: int = Field(ge=0)
    center_frame: int = Field(ge=0)
    keep_radius: int | None = Field(default=None, ge=0)


class ExportTilePayload(PayloadBase):
    file_id: int = Field(ge=0)
    tile_index: int = Field(ge=0)
    path: str = Field(min_length=1)


def _format_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for item in exc.errors():
        loc = ".".join(str(piece) for piece in item.get("loc", [])) or "payload"
        msg = item.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}")
    details = "; ".join(parts) if parts else "invalid payload"
    return f"Invalid payload: {details}"


def parse_payload(model: type[PayloadBase], payload: Any) -> tuple[PayloadBase | None, str | None]:
    if not isinstance(payload, dict):
        return None, "Invalid payload: expected object."
    try:
        return model.model_validate(payload), None
    except ValidationError as exc:
        return None, _format_validation_error(exc)
