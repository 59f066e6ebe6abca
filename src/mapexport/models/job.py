from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mapexport.errors import ConfigurationError
from mapexport.models.geometry import (
    Geometry,
    LayerSpec,
    PixelSize,
    ProjectedExtent,
    ProjectedPoint,
    Style,
)

GEOJSON_STYLE_TYPE = "GeoJSON+Style"


class PointPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    x: float
    y: float

    def to_point(self) -> ProjectedPoint:
        return ProjectedPoint(x=self.x, y=self.y)


class ExtentPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    width: float
    height: float

    def to_extent(self) -> ProjectedExtent:
        return ProjectedExtent(width=self.width, height=self.height)


class GeometryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    coordinates: Any = None
    style: dict[str, Any] = Field(default_factory=dict)

    def to_geometry(self, default_style: dict[str, Any] | None = None) -> Geometry:
        return Geometry(
            type_name=self.type,
            coordinates=self.coordinates,
            style=Style.from_mapping(self.style, defaults=default_style),
        )


class LayerRequest(BaseModel):
    """One entry of the client `layers` list (WMS or vector)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str
    url: str = ""
    opacity: float = 1.0
    change_axis: bool = Field(default=False, alias="changeAxis")
    # Only populated for `GeoJSON+Style` entries.
    geometries: list[GeometryPayload] = Field(default_factory=list)


class VectorLayer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = GEOJSON_STYLE_TYPE
    geometries: list[GeometryPayload] = Field(default_factory=list)


class OverviewLayer(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    url: str
    scale: float
    change_axis: bool = Field(default=False, alias="changeAxis")


class ReplacePattern(BaseModel):
    """Quality-dependent URL rewriting rule.

    Either a `default` map (dpi -> suffix appended when no pattern matched) or a
    `pattern` with a `replacement` map (dpi -> replacement text).
    """

    model_config = ConfigDict(extra="ignore")

    default: dict[str, str] | None = None
    pattern: str | None = None
    replacement: dict[str, str] = Field(default_factory=dict)


class DigitizerFeatureRef(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    schema_name: str = Field(alias="schemaName")
    id: str | int


class JobConfig(BaseModel):
    """Client-submitted export / print job."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    center: PointPayload
    extent: ExtentPayload
    width: int | None = None
    height: int | None = None
    rotation: float = 0.0
    quality: int | None = None
    format: str = "png"
    layers: list[LayerRequest] = Field(default_factory=list)
    vector_layers: list[VectorLayer] = Field(default_factory=list, alias="vectorLayers")
    overview: list[OverviewLayer] = Field(default_factory=list)
    legends: list[dict[str, str]] = Field(default_factory=list)
    template: str | None = None
    scale_select: float | None = None
    extra: dict[str, str] = Field(default_factory=dict)
    digitizer_feature: DigitizerFeatureRef | None = None
    replace_pattern: list[ReplacePattern] | None = None
    extent_feature: list[PointPayload] = Field(default_factory=list)

    @field_validator("vector_layers", mode="before")
    @classmethod
    def _decode_vector_layers(cls, v: Any) -> Any:
        # The export client submits each vector layer as a JSON string.
        if not isinstance(v, list):
            return v
        out: list[Any] = []
        for item in v:
            if isinstance(item, str):
                try:
                    item = json.loads(item)
                except ValueError as e:
                    raise ValueError(f"vector layer is not valid JSON: {e}") from None
            out.append(item)
        return out

    @field_validator("legends", mode="before")
    @classmethod
    def _normalize_legends(cls, v: Any) -> Any:
        # `{idx: {title: url}}` (keyed object) or `[{title: url}, ...]`.
        if v is None:
            return []
        if isinstance(v, dict):
            keys = list(v.keys())
            try:
                keys.sort(key=lambda k: int(k))
            except (TypeError, ValueError):
                pass
            return [v[k] for k in keys]
        return v

    @field_validator("extra", mode="before")
    @classmethod
    def _stringify_extra(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v if v is not None else {}
        return {str(k): "" if val is None else str(val) for k, val in v.items()}

    @field_validator("format")
    @classmethod
    def _normalize_format(cls, v: str) -> str:
        fmt = str(v or "png").strip().lower()
        if fmt == "jpg":
            fmt = "jpeg"
        if fmt not in {"png", "jpeg"}:
            raise ValueError(f"unsupported output format: {v!r}")
        return fmt

    # Derived values -------------------------------------------------------

    @property
    def center_point(self) -> ProjectedPoint:
        return self.center.to_point()

    @property
    def projected_extent(self) -> ProjectedExtent:
        return self.extent.to_extent()

    def pixel_size(self) -> PixelSize:
        if self.width is None or self.height is None:
            raise ConfigurationError("job is missing width/height")
        return PixelSize(width=int(self.width), height=int(self.height))

    def wms_layers(self) -> list[LayerRequest]:
        return [layer for layer in self.layers if layer.type == "wms"]

    def geometry_layers(self, *, include_layer_list: bool = False) -> list[VectorLayer]:
        """Vector layers to draw; print jobs also pick `GeoJSON+Style` entries from `layers`."""
        out = list(self.vector_layers)
        if include_layer_list:
            for layer in self.layers:
                if layer.type == GEOJSON_STYLE_TYPE:
                    out.append(VectorLayer(type=layer.type, geometries=layer.geometries))
        return out


def strip_extent_params(url: str) -> str:
    """Remove BBOX / WIDTH / HEIGHT query parameters (case-insensitive), keep the rest verbatim."""
    if "?" not in url:
        return url
    head, query = url.split("?", 1)
    kept = []
    for part in query.split("&"):
        if not part:
            continue
        name = part.split("=", 1)[0].strip().upper()
        if name in {"BBOX", "WIDTH", "HEIGHT"}:
            continue
        kept.append(part)
    return head + "?" + "&".join(kept)


def layer_specs(layers: list[LayerRequest]) -> list[LayerSpec]:
    return [
        LayerSpec(
            base_url=strip_extent_params(layer.url),
            opacity=float(layer.opacity),
            change_axis=bool(layer.change_axis),
        )
        for layer in layers
    ]


def parse_job(data: Any) -> JobConfig:
    """Validate a raw payload (dict or JSON text) into a JobConfig."""
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise ConfigurationError(f"job payload is not valid JSON: {e}") from None
    try:
        return JobConfig.model_validate(data or {})
    except ValidationError as e:
        raise ConfigurationError(str(e)) from None
