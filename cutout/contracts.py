from __future__ import annotations

from typing import Literal, Optional

from PIL import ImageColor
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ModelName = Literal["u2net", "u2netp", "u2net_human_seg"]
BackgroundType = Literal["transparent", "color", "image"]
ImageFormat = Literal["png", "jpg"]
ImageQuality = Literal["high", "medium", "low"]


class _CamelModel(BaseModel):
    # JSON on the wire is camelCase; Python code uses snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ImageSettings(_CamelModel):
    """The single global settings record."""

    model: ModelName = "u2net"
    alpha_matting: bool = False
    foreground_threshold: float = Field(default=50, ge=0, le=100)
    background_threshold: float = Field(default=50, ge=0, le=100)
    background_type: BackgroundType = "transparent"
    background_color: str = "#ffffff"
    background_image: Optional[str] = ""
    allow_resize: bool = True
    allow_move: bool = True

    @field_validator("background_color")
    @classmethod
    def _check_color(cls, v: str) -> str:
        try:
            ImageColor.getrgb(v)
        except ValueError as e:
            raise ValueError(f"Unrecognized color: {v!r}") from e
        return v

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class DownloadOptions(_CamelModel):
    format: ImageFormat = "png"
    quality: ImageQuality = "high"


class DownloadRequest(_CamelModel):
    filepath: str = ""
    options: DownloadOptions


class UploadResult(_CamelModel):
    original: str
    processed: str
