from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Callable, Iterable

from PIL import Image, ImageColor, ImageDraw, ImageFont

from mapexport.errors import ConfigurationError
from mapexport.log import get_logger
from mapexport.models.geometry import Geometry, GeometryKind, Style
from mapexport.services.canvas import MapCanvas

logger = get_logger(__name__)

BASE_DPI = 72
LABEL_FONT_SIZE = 14
DEFAULT_FONT_COLOR = "#ff0000"
DEFAULT_HALO_COLOR = "#ffffff"

Ink = tuple[int, int, int, int]
PixelPoint = tuple[float, float]


def resize_factor(quality_dpi: float) -> float:
    """Scale for stroke widths / radii so physical size stays constant across DPI."""
    return float(quality_dpi) / BASE_DPI


def paint(color: str, opacity: float) -> Ink:
    """Resolve a CSS color + opacity into an RGBA ink.

    Opacity exactly 0 means opaque paint; otherwise alpha follows opacity linearly
    (7-bit alpha `(1 - opacity) * 127`, i.e. Pillow alpha `opacity * 255`).
    """
    try:
        rgb = ImageColor.getrgb(str(color).strip())
    except ValueError:
        raise ConfigurationError(f"invalid color: {color!r}") from None
    r, g, b = rgb[0], rgb[1], rgb[2]
    if float(opacity) == 0:
        return (r, g, b, 255)
    a = int(round(max(0.0, min(1.0, float(opacity))) * 255))
    return (r, g, b, a)


def load_font(*, size: int, font_path: str | None = None) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
    p = (font_path or "").strip()
    if p:
        fp = Path(p).expanduser()
        if fp.exists():
            try:
                return ImageFont.truetype(str(fp), size)
            except OSError:
                logger.warning("could not load font %s, using default", fp)
    try:
        return ImageFont.load_default(size=size)
    except TypeError:
        return ImageFont.load_default()


Region = tuple[int, int, int, int]
Origin = tuple[int, int]


def _region(canvas: MapCanvas, pts: list[PixelPoint], pad: float) -> Region | None:
    """Pixel box around `pts` grown by `pad`, clipped to the canvas."""
    if not pts:
        return None
    w, h = canvas.pixel_size.as_tuple()
    x0 = max(0, math.floor(min(p[0] for p in pts) - pad))
    y0 = max(0, math.floor(min(p[1] for p in pts) - pad))
    x1 = min(w, math.ceil(max(p[0] for p in pts) + pad) + 1)
    y1 = min(h, math.ceil(max(p[1] for p in pts) + pad) + 1)
    if x1 <= x0 or y1 <= y0:
        return None
    return x0, y0, x1, y1


def _shift(pts: list[PixelPoint], origin: Origin) -> list[PixelPoint]:
    return [(x - origin[0], y - origin[1]) for x, y in pts]


def _paint_overlay(canvas: MapCanvas, region: Region | None, fn: Callable[[ImageDraw.ImageDraw, Origin], None]) -> None:
    # Draw on a transparent overlay covering `region` and alpha-composite it, so
    # semi-transparent ink blends with the raster below instead of replacing its alpha.
    if region is None:
        return
    x0, y0, x1, y1 = region
    overlay = Image.new("RGBA", (x1 - x0, y1 - y0), (255, 255, 255, 0))
    try:
        fn(ImageDraw.Draw(overlay, "RGBA"), (x0, y0))
        canvas.image.alpha_composite(overlay, dest=(x0, y0))
    finally:
        overlay.close()


class FeatureRenderer:
    """Rasterize styled geometries onto a canvas.

    A point with a label is drawn as halo text only; its circle marker is skipped.
    """

    def __init__(self, *, quality_dpi: float = BASE_DPI, font_path: str | None = None) -> None:
        self.resize_factor = resize_factor(quality_dpi)
        self.font_path = font_path
        self._renderers: dict[GeometryKind, Callable[[MapCanvas, Geometry], None]] = {
            GeometryKind.POINT: self.draw_point,
            GeometryKind.LINE_STRING: self.draw_line_string,
            GeometryKind.POLYGON: self.draw_polygon,
            GeometryKind.MULTI_LINE_STRING: self.draw_multi_line_string,
            GeometryKind.MULTI_POLYGON: self.draw_multi_polygon,
        }

    def draw_features(self, canvas: MapCanvas, geometries: Iterable[Geometry]) -> int:
        """Draw all geometries in order; unsupported types are skipped. Returns count drawn."""
        drawn = 0
        for geometry in geometries:
            renderer = self._renderers.get(geometry.kind) if geometry.kind is not None else None
            if renderer is None:
                logger.debug("no renderer for geometry type %r", geometry.type_name)
                continue
            renderer(canvas, geometry)
            drawn += 1
        return drawn

    # helpers ---------------------------------------------------------------

    def _thickness(self, style: Style) -> int:
        return max(1, int(round(style.stroke_width * self.resize_factor)))

    @staticmethod
    def _project_all(canvas: MapCanvas, coords: Any) -> list[PixelPoint]:
        pts: list[PixelPoint] = []
        for c in coords or []:
            pts.append(canvas.project(float(c[0]), float(c[1])))
        return pts

    def _draw_ring(self, canvas: MapCanvas, ring: Any, style: Style) -> None:
        if not isinstance(ring, list) or len(ring) < 3:
            return
        pts = self._project_all(canvas, ring)
        if style.fill_opacity > 0:
            fill = paint(style.fill_color, style.fill_opacity)
            _paint_overlay(canvas, _region(canvas, pts, 1), lambda d, o: d.polygon(_shift(pts, o), fill=fill))
        if style.stroke_width > 0:
            ink = paint(style.stroke_color, style.stroke_opacity)
            width = self._thickness(style)
            outline = pts + [pts[0]]
            _paint_overlay(
                canvas,
                _region(canvas, pts, width + 1),
                lambda d, o: d.line(_shift(outline, o), fill=ink, width=width, joint="curve"),
            )

    def _draw_path(self, canvas: MapCanvas, coords: Any, style: Style) -> None:
        if not isinstance(coords, list) or len(coords) < 2:
            return
        pts = self._project_all(canvas, coords)
        ink = paint(style.stroke_color, style.stroke_opacity)
        width = self._thickness(style)
        _paint_overlay(
            canvas,
            _region(canvas, pts, width + 1),
            lambda d, o: d.line(_shift(pts, o), fill=ink, width=width, joint="curve"),
        )

    # renderers -------------------------------------------------------------

    def draw_polygon(self, canvas: MapCanvas, geometry: Geometry) -> None:
        for ring in geometry.coordinates or []:
            self._draw_ring(canvas, ring, geometry.style)

    def draw_multi_polygon(self, canvas: MapCanvas, geometry: Geometry) -> None:
        for polygon in geometry.coordinates or []:
            for ring in polygon or []:
                self._draw_ring(canvas, ring, geometry.style)

    def draw_line_string(self, canvas: MapCanvas, geometry: Geometry) -> None:
        if geometry.style.stroke_width == 0:
            return
        self._draw_path(canvas, geometry.coordinates, geometry.style)

    def draw_multi_line_string(self, canvas: MapCanvas, geometry: Geometry) -> None:
        if geometry.style.stroke_width == 0:
            return
        for line in geometry.coordinates or []:
            self._draw_path(canvas, line, geometry.style)

    def draw_point(self, canvas: MapCanvas, geometry: Geometry) -> None:
        style = geometry.style
        c = geometry.coordinates
        if not isinstance(c, list) or len(c) < 2:
            return
        p = canvas.project(float(c[0]), float(c[1]))

        if style.label:
            self.draw_halo_text(canvas, p, LABEL_FONT_SIZE, style.label, style)
            return

        radius = self.resize_factor * style.point_radius
        if radius <= 0:
            return
        corners = [(p[0] - radius, p[1] - radius), (p[0] + radius, p[1] + radius)]
        if style.fill_opacity > 0:
            fill = paint(style.fill_color, style.fill_opacity)
            _paint_overlay(canvas, _region(canvas, corners, 1), lambda d, o: d.ellipse(_shift(corners, o), fill=fill))
        if style.stroke_width > 0 and style.stroke_opacity > 0:
            ink = paint(style.stroke_color, style.stroke_opacity)
            width = self._thickness(style)
            _paint_overlay(
                canvas,
                _region(canvas, corners, width + 1),
                lambda d, o: d.ellipse(_shift(corners, o), outline=ink, width=width),
            )

    def draw_halo_text(self, canvas: MapCanvas, center: PixelPoint, font_size: float, text: str, style: Style) -> None:
        """Text centered on `center` with a four-way offset outline in the halo color."""
        color = paint(style.font_color or DEFAULT_FONT_COLOR, 1)
        halo = paint(style.label_outline_color or DEFAULT_HALO_COLOR, 1)
        offset = self.resize_factor
        font = load_font(size=max(1, int(round(font_size * self.resize_factor))), font_path=self.font_path)

        left, top, right, bottom = font.getbbox(text)
        x = center[0] - (left + right) / 2.0
        y = center[1] - (top + bottom) / 2.0
        extent = [(x + left, y + top), (x + right, y + bottom)]

        def _draw(d: ImageDraw.ImageDraw, origin: Origin) -> None:
            ox, oy = x - origin[0], y - origin[1]
            for dx, dy in ((0, offset), (0, -offset), (-offset, 0), (offset, 0)):
                d.text((ox + dx, oy + dy), text, fill=halo, font=font)
            d.text((ox, oy), text, fill=color, font=font)

        _paint_overlay(canvas, _region(canvas, extent, offset + 2), _draw)
