from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol
from urllib.parse import unquote_plus

from PIL import Image, ImageDraw

from mapexport.errors import ConfigurationError, TileDecodeError, UpstreamFetchError
from mapexport.log import get_logger
from mapexport.models.geometry import LayerSpec, PixelSize, ProjectedExtent
from mapexport.models.job import JobConfig, ReplacePattern, parse_job, strip_extent_params
from mapexport.services.canvas import MapCanvas
from mapexport.services.compositor import add_layers
from mapexport.services.document import A4_PORTRAIT, DocumentBuilder, PdfDocumentBuilder
from mapexport.services.export import collect_geometries, encode_image, render_map
from mapexport.services.features import BASE_DPI, FeatureRenderer, load_font, paint
from mapexport.services.job import is_rotated, rotate_and_crop, round_half_up
from mapexport.services.legend import TITLE_HEIGHT, LegendFrame, entry_height, layout_legend, px_to_mm
from mapexport.services.templates import Box, PrintTemplate, TemplateRepository
from mapexport.services.tiles import TileFetcher

logger = get_logger(__name__)

DEFAULT_STYLE: dict[str, Any] = {"strokeWidth": 1}
COORDINATE_FIELDS = ("extent_ur_x", "extent_ur_y", "extent_ll_x", "extent_ll_y")
LEGEND_PAGE_FORMAT = A4_PORTRAIT
LEGEND_PAGE_START = (5.0, 10.0)
SCALEBAR_SEGMENTS = 5
SCALEBAR_SEGMENT_MM = (10.0, 2.0)
BLACK = (0, 0, 0)
WHITE = (255, 255, 255)
RED = (255, 0, 0, 255)


@dataclass(frozen=True)
class GroupInfo:
    """First group of the requesting user."""

    title: str
    description: str = ""


class FeatureLookup(Protocol):
    def __call__(self, schema_name: str, feature_id: Any) -> Mapping[str, Any] | None: ...


# None for anonymous users or users without a group.
GroupLookup = Callable[[], GroupInfo | None]
UrlSigner = Callable[[str], str]


def quality_dpi(job: JobConfig, default: int = BASE_DPI) -> int:
    return int(job.quality) if job.quality else int(default)


def box_pixel_size(box: Box, dpi: float) -> PixelSize:
    """Pixel size of a page box (mm) rendered at `dpi`."""
    return PixelSize(
        width=round_half_up(box.width / 25.4 * dpi),
        height=round_half_up(box.height / 25.4 * dpi),
    )


def format_number(value: float | None, precision: int = 6) -> str:
    """Shortest decimal form: 5000.0 -> "5000", 12.50 -> "12.5"."""
    if value is None:
        return ""
    s = f"{float(value):.{precision}f}"
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return "0" if s in {"-0", ""} else s


def apply_replace_pattern(url: str, rules: list[ReplacePattern], dpi: int, signer: UrlSigner | None = None) -> str:
    """Quality-specific URL rewrite.

    The first `pattern` rule found in the URL that has a replacement for `dpi`
    wins; the rewritten URL is signed and returned. Otherwise the last `default`
    suffix for `dpi` (if any) is appended.
    """
    key = str(dpi)
    suffix = ""
    for rule in rules:
        if rule.default is not None:
            if key in rule.default:
                suffix = rule.default[key]
        elif rule.pattern and rule.pattern in url and key in rule.replacement:
            rewritten = url.replace(rule.pattern, rule.replacement[key])
            return signer(rewritten) if signer else rewritten
    return url + suffix


def north_arrow_image(size: PixelSize, rotation: float = 0.0, font_path: str | None = None) -> Image.Image:
    """Black arrow with an "N" on a transparent background, rotated with the map."""
    w, h = size.as_tuple()
    img = Image.new("RGBA", (w, h), (255, 255, 255, 0))
    d = ImageDraw.Draw(img, "RGBA")
    cx = w / 2.0
    tip = h * 0.05
    base = h * 0.62
    half = w * 0.3
    d.polygon([(cx, tip), (cx - half, base), (cx, base - h * 0.12), (cx + half, base)], fill=(0, 0, 0, 255))
    font = load_font(size=max(6, int(h * 0.28)), font_path=font_path)
    left, top, right, bottom = d.textbbox((0, 0), "N", font=font)
    d.text((cx - (left + right) / 2.0, base + h * 0.04 - top), "N", fill=(0, 0, 0, 255), font=font)
    if not is_rotated(rotation):
        return img
    try:
        return rotate_and_crop(img, rotation, size)
    finally:
        img.close()


class PrintService:
    """Render a print job onto a PDF page built from a template.

    Map, template background, north arrow, text fields, overview, scale bar,
    coordinates, group image / text, then legend entries (spilling onto portrait
    legend pages as needed).
    """

    def __init__(
        self,
        fetcher: TileFetcher,
        templates: TemplateRepository,
        *,
        builder_factory: Callable[[], DocumentBuilder] | None = None,
        feature_lookup: FeatureLookup | None = None,
        group_lookup: GroupLookup | None = None,
        url_signer: UrlSigner | None = None,
        images_dir: str | Path | None = None,
        font_path: str | None = None,
        default_quality_dpi: int = BASE_DPI,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.fetcher = fetcher
        self.templates = templates
        self.builder_factory = builder_factory or (lambda: PdfDocumentBuilder(font_path=font_path))
        self.feature_lookup = feature_lookup
        self.group_lookup = group_lookup
        self.url_signer = url_signer
        self.images_dir = Path(images_dir) if images_dir else None
        self.font_path = font_path
        self.default_quality_dpi = default_quality_dpi
        self.clock = clock

    # setup -------------------------------------------------------------------

    def map_layers(self, job: JobConfig, dpi: int) -> list[LayerSpec]:
        specs: list[LayerSpec] = []
        for layer in job.wms_layers():
            url = strip_extent_params(layer.url)
            if job.replace_pattern is not None:
                url = apply_replace_pattern(url, job.replace_pattern, dpi, self.url_signer)
            elif dpi != BASE_DPI:
                url += f"&map_resolution={dpi}"
            specs.append(LayerSpec(base_url=url, opacity=float(layer.opacity), change_axis=bool(layer.change_axis)))
        return specs

    def do_print(self, payload: Any) -> bytes:
        job = payload if isinstance(payload, JobConfig) else parse_job(payload)
        if not job.template:
            raise ConfigurationError("print job is missing a template")
        template = self.templates.get(job.template)
        dpi = quality_dpi(job, self.default_quality_dpi)
        pixel_size = box_pixel_size(template.map, dpi)
        logger.info("print %s: map %dx%d px at %d dpi", template.name, pixel_size.width, pixel_size.height, dpi)

        image = render_map(
            job,
            pixel_size=pixel_size,
            layers=self.map_layers(job, dpi),
            geometries=collect_geometries(job, default_style=DEFAULT_STYLE, include_layer_list=True),
            fetcher=self.fetcher,
            renderer=FeatureRenderer(quality_dpi=dpi, font_path=self.font_path),
        )
        try:
            map_png = encode_image(image, "png")
        finally:
            image.close()
        return self.build_document(job, template, map_png, dpi)

    # document ----------------------------------------------------------------

    def build_document(self, job: JobConfig, template: PrintTemplate, map_png: bytes, dpi: int) -> bytes:
        pdf = self.builder_factory()
        try:
            return self._compose(pdf, job, template, map_png, dpi)
        finally:
            pdf.close()

    def _compose(self, pdf: DocumentBuilder, job: JobConfig, template: PrintTemplate, map_png: bytes, dpi: int) -> bytes:
        pdf.add_page(template.orientation, template.page_format)

        background = template.pdf_path
        if background and not template.transparent_background:
            pdf.use_template(background)

        box = template.map
        pdf.image(map_png, box.x, box.y, box.width, box.height)
        pdf.rect(box.x, box.y, box.width, box.height)

        if background and template.transparent_background:
            pdf.use_template(background)

        if template.northarrow:
            self.add_north_arrow(pdf, template.northarrow, job.rotation, dpi)

        self.add_fields(pdf, job, template)
        pdf.set_text_color(*BLACK)

        if job.overview and template.overview:
            self.add_overview_map(pdf, job, template.overview, dpi)
        elif template.overview:
            logger.warning("Empty overview layer list")

        if template.scalebar:
            self.add_scale_bar(pdf, job, template.scalebar)

        if all(name in template.fields for name in COORDINATE_FIELDS):
            self.add_coordinates(pdf, job, template)

        group = self.group_lookup() if self.group_lookup else None
        if template.dynamic_image and group is not None:
            self.add_dynamic_image(pdf, template.dynamic_image, group)
        dynamic_text = template.field("dynamic_text")
        if dynamic_text and group is not None:
            pdf.set_font(dynamic_text.fontsize)
            pdf.set_xy(dynamic_text.x, dynamic_text.y)
            pdf.multi_cell(dynamic_text.width, dynamic_text.height, group.description)

        if job.legends:
            self.add_legend(pdf, job, template, group)

        return pdf.output()

    def add_north_arrow(self, pdf: DocumentBuilder, box: Box, rotation: float, dpi: int) -> None:
        arrow = north_arrow_image(box_pixel_size(box, dpi), rotation, self.font_path)
        try:
            pdf.image(encode_image(arrow, "png"), box.x, box.y, box.width, box.height)
        finally:
            arrow.close()

    def _lookup_feature(self, job: JobConfig) -> Mapping[str, Any] | None:
        ref = job.digitizer_feature
        if ref is None or self.feature_lookup is None:
            return None
        try:
            return self.feature_lookup(ref.schema_name, ref.id)
        except LookupError:
            logger.warning("feature %s/%s not found", ref.schema_name, ref.id)
            return None

    def add_fields(self, pdf: DocumentBuilder, job: JobConfig, template: PrintTemplate) -> None:
        feature = self._lookup_feature(job)
        for name, field in template.fields.items():
            r, g, b, _ = paint(field.color, 1)
            pdf.set_text_color(r, g, b)
            pdf.set_font(field.fontsize)
            pdf.set_xy(field.x - 1, field.y)

            if name.startswith("extent"):
                continue
            if name == "date":
                pdf.cell(field.width, field.height, self.clock().strftime("%d.%m.%Y"))
            elif name == "scale":
                pdf.cell(field.width, field.height, f"1 : {format_number(job.scale_select)}")
            else:
                if name in job.extra:
                    pdf.multi_cell(field.width, field.height, job.extra[name])
                if name.startswith("feature.") and feature is not None:
                    attribute = name.rsplit(".", 1)[1]
                    value = feature.get(attribute)
                    pdf.multi_cell(field.width, field.height, "" if value is None else str(value))

    def add_overview_map(self, pdf: DocumentBuilder, job: JobConfig, box: Box, dpi: int) -> None:
        # Overview scale is submitted per layer but is the same for all of them.
        factor = job.overview[0].scale / 1000.0
        extent = ProjectedExtent(width=factor * box.width, height=factor * box.height)
        layers = [
            LayerSpec(base_url=strip_extent_params(layer.url), opacity=1.0, change_axis=layer.change_axis)
            for layer in job.overview
        ]
        change_axis = any(layer.change_axis for layer in layers)

        with MapCanvas(job.center_point, extent, box_pixel_size(box, dpi)) as canvas:
            add_layers(canvas, layers, self.fetcher, ignore_errors=True)
            points = [
                canvas.project(p.y, p.x) if change_axis else canvas.project(p.x, p.y)
                for p in job.extent_feature
            ]
            if len(points) >= 2:
                ImageDraw.Draw(canvas.image, "RGBA").line(points + [points[0]], fill=RED, width=1)
            png = encode_image(canvas.image, "png")

        pdf.image(png, box.x, box.y, box.width, box.height)
        pdf.rect(box.x, box.y, box.width, box.height)

    def add_scale_bar(self, pdf: DocumentBuilder, job: JobConfig, box: Box) -> None:
        pdf.set_font(10)
        seg_w, seg_h = SCALEBAR_SEGMENT_MM
        length = 0.01 * float(job.scale_select or 0) * SCALEBAR_SEGMENTS
        pdf.text(box.x - 1, box.y - 1, "0")
        pdf.text(box.x + 46, box.y - 1, f"{format_number(length)}m")
        for i in range(SCALEBAR_SEGMENTS):
            fill = BLACK if i % 2 == 0 else WHITE
            pdf.rect(box.x + i * seg_w, box.y, seg_w, seg_h, fill=fill, line_width=0.1)

    def add_coordinates(self, pdf: DocumentBuilder, job: JobConfig, template: PrintTemplate) -> None:
        if len(job.extent_feature) < 3:
            logger.warning("extent_feature has %d points, skipping coordinates", len(job.extent_feature))
            return
        # Geographic extents need more digits.
        if job.projected_extent.width < 1:
            corr, precision = 3, 6
        else:
            corr, precision = 2, 2
        upper_right = job.extent_feature[2]
        lower_left = job.extent_feature[0]
        f = template.fields

        def _value(v: float) -> str:
            return format_number(round(v, precision), precision)

        pdf.set_font(f["extent_ur_y"].fontsize)
        pdf.text(f["extent_ur_y"].x + corr, f["extent_ur_y"].y + 3, _value(upper_right.y))
        pdf.set_font(f["extent_ur_x"].fontsize)
        pdf.text(f["extent_ur_x"].x + 1, f["extent_ur_x"].y, _value(upper_right.x), direction="D")
        pdf.set_font(f["extent_ll_y"].fontsize)
        pdf.text(f["extent_ll_y"].x, f["extent_ll_y"].y + 3, _value(lower_left.y))
        pdf.set_font(f["extent_ll_x"].fontsize)
        pdf.text(f["extent_ll_x"].x + 3, f["extent_ll_x"].y + 30, _value(lower_left.x), direction="U")

    def _image_file(self, name: str) -> bytes | None:
        if self.images_dir is None:
            return None
        p = self.images_dir / f"{name}.png"
        if not p.is_file():
            return None
        return p.read_bytes()

    def add_dynamic_image(self, pdf: DocumentBuilder, box: Box, group: GroupInfo) -> None:
        data = self._image_file(group.title)
        if data is None:
            logger.debug("no image for group %r", group.title)
            return
        pdf.image(data, box.x, box.y, 0, box.height)

    # legend ------------------------------------------------------------------

    def fetch_legend_entries(self, job: JobConfig) -> list[tuple[str, bytes, tuple[int, int]]]:
        """(title, png, pixel size) for every fetchable GetLegendGraphic URL, in order."""
        entries: list[tuple[str, bytes, tuple[int, int]]] = []
        for legend in job.legends:
            for title, url in legend.items():
                if "request=getlegendgraphic" not in unquote_plus(url).lower():
                    continue
                try:
                    img = self.fetcher.fetch(url)
                except (UpstreamFetchError, TileDecodeError) as e:
                    logger.warning("skipping legend %r: %s", title, e)
                    continue
                try:
                    entries.append((title, encode_image(img, "png"), img.size))
                finally:
                    img.close()
        return entries

    def new_legend_page(self, pdf: DocumentBuilder, template: PrintTemplate, group: GroupInfo | None) -> None:
        pdf.add_page("portrait", LEGEND_PAGE_FORMAT)
        pdf.set_font(11, bold=True)
        box = template.legendpage_image
        if box is None:
            return
        data = self._image_file(group.title) if group is not None else None
        if data is None:
            data = self._image_file("legendpage_image")
        if data is not None:
            pdf.image(data, box.x, box.y, 0, box.height)

    def add_legend(self, pdf: DocumentBuilder, job: JobConfig, template: PrintTemplate, group: GroupInfo | None) -> None:
        page_x, page_y = LEGEND_PAGE_START
        spill = LegendFrame(x=page_x, y=page_y, width=LEGEND_PAGE_FORMAT[0], height=LEGEND_PAGE_FORMAT[1])
        if template.legend:
            box = template.legend
            start = LegendFrame(x=box.x + 5, y=box.y + 5, width=box.width, height=box.height)
        else:
            self.new_legend_page(pdf, template, group)
            start = spill

        entries = self.fetch_legend_entries(job)
        placements = layout_legend([entry_height(size[1]) for _, _, size in entries], start, spill)
        for placement, (title, png, (w_px, h_px)) in zip(placements, entries):
            if placement.new_page:
                self.new_legend_page(pdf, template, group)
            pdf.set_xy(placement.x, placement.y)
            pdf.cell(0, 0, title)
            pdf.image(png, placement.x, placement.y + TITLE_HEIGHT, px_to_mm(w_px), px_to_mm(h_px))
