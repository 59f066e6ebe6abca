from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from mapexport.errors import ConfigurationError


@dataclass(frozen=True)
class ProjectedPoint:
    x: float
    y: float


@dataclass(frozen=True)
class ProjectedExtent:
    width: float
    height: float

    def __post_init__(self) -> None:
        if not (self.width > 0 and self.height > 0):
            raise ConfigurationError(f"extent must be positive (got {self.width}x{self.height})")


@dataclass(frozen=True)
class PixelSize:
    width: int
    height: int

    def __post_init__(self) -> None:
        if int(self.width) != self.width or int(self.height) != self.height:
            raise ConfigurationError(f"pixel size must be integral (got {self.width}x{self.height})")
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(f"pixel size must be positive (got {self.width}x{self.height})")

    def as_tuple(self) -> tuple[int, int]:
        return (int(self.width), int(self.height))


@dataclass(frozen=True)
class LayerSpec:
    """Tile source with BBOX/WIDTH/HEIGHT already removed from `base_url`."""

    base_url: str
    opacity: float = 1.0
    change_axis: bool = False

    def __post_init__(self) -> None:
        if not (0.0 <= float(self.opacity) <= 1.0):
            raise ConfigurationError(f"layer opacity out of range: {self.opacity}")


@dataclass(frozen=True)
class Style:
    fill_color: str = "#000000"
    fill_opacity: float = 0.0
    stroke_color: str = "#000000"
    stroke_opacity: float = 0.0
    stroke_width: float = 0.0
    point_radius: float = 0.0
    label: str | None = None
    font_color: str | None = None
    label_outline_color: str | None = None

    _KEYS = {
        "fillColor": "fill_color",
        "fillOpacity": "fill_opacity",
        "strokeColor": "stroke_color",
        "strokeOpacity": "stroke_opacity",
        "strokeWidth": "stroke_width",
        "pointRadius": "point_radius",
        "label": "label",
        "fontColor": "font_color",
        "labelOutlineColor": "label_outline_color",
    }

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None, defaults: Mapping[str, Any] | None = None) -> "Style":
        """Build a style from client keys (camelCase), `raw` wins over `defaults`."""
        merged: dict[str, Any] = dict(defaults or {})
        merged.update(raw or {})
        kwargs: dict[str, Any] = {}
        for key, attr in cls._KEYS.items():
            if key not in merged or merged[key] is None:
                continue
            value = merged[key]
            if attr in {"fill_opacity", "stroke_opacity", "stroke_width", "point_radius"}:
                try:
                    value = float(value)
                except (TypeError, ValueError):
                    raise ConfigurationError(f"style.{key} is not numeric: {value!r}") from None
            else:
                value = str(value)
            kwargs[attr] = value
        return cls(**kwargs)


class GeometryKind(str, Enum):
    POINT = "Point"
    LINE_STRING = "LineString"
    POLYGON = "Polygon"
    MULTI_LINE_STRING = "MultiLineString"
    MULTI_POLYGON = "MultiPolygon"


@dataclass(frozen=True)
class Geometry:
    type_name: str
    coordinates: Any
    style: Style = field(default_factory=Style)

    @property
    def kind(self) -> GeometryKind | None:
        """Supported kind, or None for types that are not rendered (e.g. MultiPoint)."""
        try:
            return GeometryKind(self.type_name)
        except ValueError:
            return None
