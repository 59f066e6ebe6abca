from __future__ import annotations

import io
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Sequence

from PIL import Image

from mapexport.log import get_logger
from mapexport.models.geometry import Geometry, LayerSpec, PixelSize
from mapexport.models.job import JobConfig, layer_specs, parse_job
from mapexport.services.features import BASE_DPI, FeatureRenderer
from mapexport.services.job import MapExportJob
from mapexport.services.tiles import TileFetcher

logger = get_logger(__name__)

MIME_TYPES = {"png": "image/png", "jpeg": "image/jpeg"}
EXTENSIONS = {"png": "png", "jpeg": "jpg"}


@dataclass(frozen=True)
class ExportResult:
    content: bytes
    mime_type: str
    filename: str


def collect_geometries(job: JobConfig, *, default_style: dict[str, Any] | None = None, include_layer_list: bool = False) -> list[Geometry]:
    out: list[Geometry] = []
    for layer in job.geometry_layers(include_layer_list=include_layer_list):
        for g in layer.geometries:
            out.append(g.to_geometry(default_style))
    return out


def render_map(
    job: JobConfig,
    *,
    pixel_size: PixelSize,
    layers: Sequence[LayerSpec],
    geometries: Sequence[Geometry],
    fetcher: TileFetcher,
    renderer: FeatureRenderer,
) -> Image.Image:
    """Tiles, vectors and rotation for one viewport. The caller closes the result."""
    export_job = MapExportJob.factory(
        job.center_point,
        job.projected_extent,
        pixel_size,
        layers,
        geometries,
        rotation=job.rotation,
    )
    return export_job.run(fetcher, renderer)


def encode_image(image: Image.Image, fmt: str, *, jpeg_quality: int = 85) -> bytes:
    buf = io.BytesIO()
    if fmt == "jpeg":
        # JPEG has no alpha; color values are kept as they are.
        rgb = image.convert("RGB")
        try:
            rgb.save(buf, format="JPEG", quality=int(jpeg_quality))
        finally:
            rgb.close()
    else:
        image.save(buf, format="PNG")
    return buf.getvalue()


def export_filename(fmt: str, now: datetime | None = None) -> str:
    ts = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
    return f"export_{ts}.{EXTENSIONS.get(fmt, fmt)}"


class ImageExportService:
    """Render a viewport to a PNG / JPEG image."""

    def __init__(
        self,
        fetcher: TileFetcher,
        *,
        jpeg_quality: int = 85,
        font_path: str | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.fetcher = fetcher
        self.jpeg_quality = jpeg_quality
        self.renderer = FeatureRenderer(quality_dpi=BASE_DPI, font_path=font_path)
        self.clock = clock

    def render(self, job: JobConfig) -> Image.Image:
        return render_map(
            job,
            pixel_size=job.pixel_size(),
            layers=layer_specs(job.wms_layers()),
            geometries=collect_geometries(job),
            fetcher=self.fetcher,
            renderer=self.renderer,
        )

    def export(self, payload: Any) -> ExportResult:
        job = payload if isinstance(payload, JobConfig) else parse_job(payload)
        image = self.render(job)
        try:
            content = encode_image(image, job.format, jpeg_quality=self.jpeg_quality)
        finally:
            image.close()
        filename = export_filename(job.format, self.clock())
        logger.info("exported %s (%d bytes)", filename, len(content))
        return ExportResult(content=content, mime_type=MIME_TYPES[job.format], filename=filename)
