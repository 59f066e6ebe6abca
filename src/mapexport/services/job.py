from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol, Sequence

from PIL import Image

from mapexport.log import get_logger
from mapexport.models.geometry import Geometry, LayerSpec, PixelSize, ProjectedExtent, ProjectedPoint
from mapexport.services.canvas import MapCanvas
from mapexport.services.compositor import add_layers
from mapexport.services.features import FeatureRenderer
from mapexport.services.tiles import TileFetcher

logger = get_logger(__name__)

# Exposed corners after rotation: white, fully transparent.
TRANSPARENT = (255, 255, 255, 0)


class ExportJob(Protocol):
    def run(self, fetcher: TileFetcher, renderer: FeatureRenderer) -> Image.Image: ...


@dataclass(frozen=True)
class InnerDimensions:
    pixel_size: PixelSize
    extent: ProjectedExtent


def round_half_up(v: float) -> int:
    return int(math.floor(float(v) + 0.5))


def inner_dimensions(rotation: float, pixel_size: PixelSize, extent: ProjectedExtent) -> InnerDimensions:
    """Smallest unrotated pixel size / extent fully covering the rotated target footprint."""
    theta = math.radians(float(rotation))
    s = abs(math.sin(theta))
    c = abs(math.cos(theta))
    width = round_half_up(s * pixel_size.height + c * pixel_size.width)
    height = round_half_up(s * pixel_size.width + c * pixel_size.height)
    return InnerDimensions(
        pixel_size=PixelSize(width=width, height=height),
        extent=ProjectedExtent(
            width=s * extent.height + c * extent.width,
            height=s * extent.width + c * extent.height,
        ),
    )


def is_rotated(rotation: float) -> bool:
    return float(rotation) % 360.0 != 0.0


class MapExportJob:
    """Tiles then vector features onto one unrotated canvas."""

    def __init__(self, canvas: MapCanvas, layers: Sequence[LayerSpec], geometries: Sequence[Geometry]) -> None:
        self.canvas = canvas
        self.layers = list(layers)
        self.geometries = list(geometries)

    @classmethod
    def factory(
        cls,
        center: ProjectedPoint,
        extent: ProjectedExtent,
        pixel_size: PixelSize,
        layers: Sequence[LayerSpec],
        geometries: Sequence[Geometry],
        rotation: float = 0.0,
    ) -> "ExportJob":
        if is_rotated(rotation):
            return RotatedMapExportJob.factory(center, extent, pixel_size, layers, geometries, rotation)
        return cls(MapCanvas(center, extent, pixel_size), layers, geometries)

    def run(self, fetcher: TileFetcher, renderer: FeatureRenderer) -> Image.Image:
        """Render and hand over the raster; the caller owns (and closes) the result."""
        try:
            add_layers(self.canvas, self.layers, fetcher, ignore_errors=False)
            renderer.draw_features(self.canvas, self.geometries)
            return self.canvas.detach_image()
        finally:
            self.canvas.close()


class RotatedMapExportJob:
    """Render a larger unrotated job, rotate it, then crop back to the target size."""

    def __init__(self, inner: MapExportJob, target_size: PixelSize, rotation: float) -> None:
        self.inner = inner
        self.target_size = target_size
        self.rotation = float(rotation)

    @classmethod
    def factory(
        cls,
        center: ProjectedPoint,
        extent: ProjectedExtent,
        pixel_size: PixelSize,
        layers: Sequence[LayerSpec],
        geometries: Sequence[Geometry],
        rotation: float,
    ) -> "RotatedMapExportJob":
        dims = inner_dimensions(rotation, pixel_size, extent)
        logger.debug(
            "rotation %.2f: inner canvas %dx%d for target %dx%d",
            rotation,
            dims.pixel_size.width,
            dims.pixel_size.height,
            pixel_size.width,
            pixel_size.height,
        )
        inner = MapExportJob(MapCanvas(center, dims.extent, dims.pixel_size), layers, geometries)
        return cls(inner, pixel_size, rotation)

    def run(self, fetcher: TileFetcher, renderer: FeatureRenderer) -> Image.Image:
        unrotated = self.inner.run(fetcher, renderer)
        try:
            return rotate_and_crop(unrotated, self.rotation, self.target_size)
        finally:
            unrotated.close()


def rotate_and_crop(image: Image.Image, rotation: float, target_size: PixelSize) -> Image.Image:
    """Rotate counter-clockwise by `rotation` degrees and center-crop to `target_size`.

    Crop offsets come from the measured rotated bitmap. The crop copies pixels
    as-is (no blending), so transparent corners stay transparent.
    """
    rgba = image if image.mode == "RGBA" else image.convert("RGBA")
    rotated = rgba.rotate(
        float(rotation),
        resample=Image.Resampling.BICUBIC,
        expand=True,
        fillcolor=TRANSPARENT,
    )
    try:
        rotated_w, rotated_h = rotated.size
        target_w, target_h = target_size.as_tuple()
        x0 = round_half_up((rotated_w - target_w) / 2.0)
        y0 = round_half_up((rotated_h - target_h) / 2.0)
        clipped = Image.new("RGBA", (target_w, target_h), TRANSPARENT)
        region = rotated.crop((x0, y0, x0 + target_w, y0 + target_h))
        try:
            clipped.paste(region, (0, 0))
        finally:
            region.close()
        return clipped
    finally:
        rotated.close()
        if rgba is not image:
            rgba.close()
