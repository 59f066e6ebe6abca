import io
from datetime import datetime

import pytest
from PIL import Image

from conftest import RecordingBuilder, png_bytes, solid_tile
from mapexport.errors import ConfigurationError, TemplateNotFoundError, UpstreamFetchError
from mapexport.models.geometry import PixelSize
from mapexport.models.job import ReplacePattern
from mapexport.services.document import PdfDocumentBuilder
from mapexport.services.printing import (
    GroupInfo,
    PrintService,
    apply_replace_pattern,
    format_number,
    north_arrow_image,
)
from mapexport.services.templates import PrintTemplate, YamlTemplateRepository
from mapexport.services.tiles import TileResponse

EXTENT_FEATURE = [
    {"x": 950, "y": 975},
    {"x": 1050, "y": 975},
    {"x": 1050, "y": 1025},
    {"x": 950, "y": 1025},
]

JOB = {
    "template": "a4",
    "center": {"x": 1000, "y": 1000},
    "extent": {"width": 100, "height": 50},
    "rotation": 0,
    "scale_select": 5000,
    "layers": [{"type": "wms", "url": "http://wms/tiles?LAYERS=base&BBOX=1,2,3,4", "opacity": 1}],
    "extent_feature": EXTENT_FEATURE,
}

TEMPLATE = {
    "name": "a4",
    "orientation": "landscape",
    "page_size": {"width": 210, "height": 297},
    "map": {"x": 10, "y": 10, "width": 100, "height": 50},
}


class StaticTemplates:
    def __init__(self, **overrides):
        self.template = PrintTemplate.model_validate({**TEMPLATE, **overrides})

    def get(self, name):
        if name != self.template.name:
            raise TemplateNotFoundError(name)
        return self.template


def _service(fetcher, builder, templates=None, **kwargs):
    return PrintService(
        fetcher,
        templates or StaticTemplates(),
        builder_factory=lambda: builder,
        clock=lambda: datetime(2024, 3, 5, 9, 30),
        **kwargs,
    )


def _decode(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data)).convert("RGBA")


def test_map_is_placed_at_template_box(make_fetcher):
    fetcher, transport = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    assert _service(fetcher, builder).do_print(JOB) == b"%PDF-recorded"

    assert builder.calls[0] == ("add_page", "landscape", (297, 210))
    _, data, x, y, w, h = builder.named("image")[0]
    assert (x, y, w, h) == (10, 10, 100, 50)
    img = _decode(data)
    # 100 x 50 mm at 72 dpi
    assert img.size == (283, 142)
    assert img.getpixel((140, 70)) == (0, 0, 255, 255)
    assert builder.named("rect")[0][1:5] == (10, 10, 100, 50)
    assert "map_resolution" not in transport.requested[0]


def test_builder_is_closed_after_output(make_fetcher):
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    _service(fetcher, builder).do_print(JOB)
    assert builder.closed


def test_builder_is_closed_when_a_page_step_fails(make_fetcher):
    def group_lookup():
        raise RuntimeError("directory offline")

    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    with pytest.raises(RuntimeError):
        _service(fetcher, builder, group_lookup=group_lookup).do_print(JOB)
    assert builder.closed
    assert builder.named("add_page")


def test_quality_appends_map_resolution(make_fetcher):
    fetcher, transport = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    _service(fetcher, builder).do_print({**JOB, "quality": 150})
    assert transport.requested[0].startswith("http://wms/tiles?LAYERS=base&map_resolution=150&BBOX=")
    assert _decode(builder.named("image")[0][1]).size == (591, 295)


def test_replace_pattern_rewrites_and_signs():
    rules = [
        ReplacePattern(default={"150": "&dpi=150"}),
        ReplacePattern(pattern="tiles", replacement={"150": "tiles-hq"}),
    ]
    signed = apply_replace_pattern("http://wms/tiles?A=1", rules, 150, signer=lambda u: u + "&sig=x")
    assert signed == "http://wms/tiles-hq?A=1&sig=x"
    assert apply_replace_pattern("http://other/wms?A=1", rules, 150) == "http://other/wms?A=1&dpi=150"
    assert apply_replace_pattern("http://other/wms?A=1", rules, 300) == "http://other/wms?A=1"


def test_replace_pattern_replaces_map_resolution(make_fetcher):
    fetcher, transport = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    job = {**JOB, "quality": 150, "replace_pattern": [{"default": {"150": "&dpi=150"}}]}
    _service(fetcher, RecordingBuilder()).do_print(job)
    assert "map_resolution" not in transport.requested[0]
    assert "&dpi=150&BBOX=" in transport.requested[0]


def test_styled_layer_entries_are_drawn_with_default_stroke(make_fetcher):
    line = {"type": "LineString", "coordinates": [[950, 1000], [1050, 1000]], "style": {"strokeColor": "#ff0000"}}
    job = {**JOB, "layers": JOB["layers"] + [{"type": "GeoJSON+Style", "geometries": [line]}]}
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    _service(fetcher, builder).do_print(job)
    img = _decode(builder.named("image")[0][1])
    assert img.getpixel((140, 71)) == (255, 0, 0, 255)


def test_missing_template_name_is_a_configuration_error(make_fetcher):
    fetcher, _ = make_fetcher()
    job = {k: v for k, v in JOB.items() if k != "template"}
    with pytest.raises(ConfigurationError):
        _service(fetcher, RecordingBuilder()).do_print(job)


def test_background_under_or_over_map(make_fetcher, tmp_path):
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    pdf = tmp_path / "a4.pdf"

    builder = RecordingBuilder()
    _service(fetcher, builder, StaticTemplates(pdf_path=pdf)).do_print(JOB)
    order = [c[0] for c in builder.calls if c[0] in {"use_template", "image"}]
    assert order[:2] == ["use_template", "image"]

    builder = RecordingBuilder()
    _service(fetcher, builder, StaticTemplates(pdf_path=pdf, transparent_background=True)).do_print(JOB)
    order = [c[0] for c in builder.calls if c[0] in {"use_template", "image"}]
    assert order[:2] == ["image", "use_template"]


def test_text_fields(make_fetcher):
    fields = {
        "date": {"x": 10, "y": 100, "width": 30, "height": 5},
        "scale": {"x": 50, "y": 100, "width": 30, "height": 5, "fontsize": "12pt", "color": "#ff0000"},
        "title": {"x": 10, "y": 120, "width": 80, "height": 5},
        "feature.name": {"x": 10, "y": 130, "width": 80, "height": 5},
        "extent_ur_x": {"x": 200, "y": 10},
    }
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    service = _service(
        fetcher,
        builder,
        StaticTemplates(fields=fields),
        feature_lookup=lambda schema, fid: {"name": f"{schema}-{fid}"},
    )
    service.do_print({**JOB, "extra": {"title": "Flood zones"}, "digitizer_feature": {"schemaName": "parcels", "id": 7}})

    assert ("cell", 9, 100, "05.03.2024") in builder.calls
    assert ("cell", 49, 100, "1 : 5000") in builder.calls
    assert ("set_text_color", 255, 0, 0) in builder.calls
    assert ("set_font", 12.0, False) in builder.calls
    multi = [c[3] for c in builder.named("multi_cell")]
    assert multi == ["Flood zones", "parcels-7"]
    assert builder.named("text") == []


def test_scale_bar(make_fetcher):
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    _service(fetcher, builder, StaticTemplates(scalebar={"x": 20, "y": 150})).do_print(JOB)

    rects = builder.named("rect")[1:]
    assert [(r[1], r[2], r[3], r[4]) for r in rects] == [(20 + 10 * i, 150, 10, 2) for i in range(5)]
    assert [r[5] for r in rects] == [(0, 0, 0), (255, 255, 255), (0, 0, 0), (255, 255, 255), (0, 0, 0)]
    assert ("text", 19, 149, "0", "") in builder.calls
    assert ("text", 66, 149, "250m", "") in builder.calls


def test_coordinates(make_fetcher):
    fields = {name: {"x": 100, "y": 100, "fontsize": 8} for name in ("extent_ur_x", "extent_ur_y", "extent_ll_x", "extent_ll_y")}
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    _service(fetcher, builder, StaticTemplates(fields=fields)).do_print(JOB)

    texts = {(t[3], t[4]) for t in builder.named("text")}
    assert texts == {("1025", ""), ("1050", "D"), ("975", ""), ("950", "U")}
    assert ("text", 102, 103, "1025", "") in builder.calls
    assert ("text", 103, 130, "950", "U") in builder.calls


def test_geographic_coordinates_keep_six_decimals(make_fetcher):
    fields = {name: {"x": 100, "y": 100} for name in ("extent_ur_x", "extent_ur_y", "extent_ll_x", "extent_ll_y")}
    points = [{"x": 7.1234567, "y": 50.7654321}] * 4
    job = {**JOB, "center": {"x": 7.1, "y": 50.7}, "extent": {"width": 0.5, "height": 0.25}, "extent_feature": points}
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    _service(fetcher, builder, StaticTemplates(fields=fields)).do_print(job)
    assert ("text", 103, 103, "50.765432", "") in builder.calls


def test_overview_map(make_fetcher):
    overview = [{"url": "http://ov/wms?LAYERS=o&BBOX=1,2,3,4&WIDTH=9", "scale": 10000}]
    fetcher, transport = make_fetcher(
        {"ov/wms": solid_tile((200, 200, 200, 255))},
        default=solid_tile((0, 0, 255, 255)),
    )
    builder = RecordingBuilder()
    box = {"x": 200, "y": 10, "width": 50, "height": 40}
    _service(fetcher, builder, StaticTemplates(overview=box)).do_print({**JOB, "overview": overview})

    ov_requests = [u for u in transport.requested if "ov/wms" in u]
    # 10000 / 1000 * 50 mm = 500 projected units wide
    assert ov_requests == ["http://ov/wms?LAYERS=o&BBOX=750,800,1250,1200&WIDTH=142&HEIGHT=113"]
    image_call = next(c for c in builder.named("image") if c[2:] == (200, 10, 50, 40))
    colors = {color for _, color in _decode(image_call[1]).getcolors(maxcolors=100_000)}
    assert (255, 0, 0, 255) in colors
    assert ("rect", 200, 10, 50, 40, None) in builder.calls


def test_overview_tile_errors_are_ignored(make_fetcher):
    overview = [{"url": "http://ov/wms?LAYERS=o", "scale": 10000}]
    fetcher, _ = make_fetcher(
        {"ov/wms": UpstreamFetchError("http://ov/wms", reason="timeout")},
        default=solid_tile((0, 0, 255, 255)),
    )
    builder = RecordingBuilder()
    box = {"x": 200, "y": 10, "width": 50, "height": 40}
    _service(fetcher, builder, StaticTemplates(overview=box)).do_print({**JOB, "overview": overview})
    assert any(c[2:] == (200, 10, 50, 40) for c in builder.named("image"))


def test_empty_overview_list_is_skipped(make_fetcher):
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    box = {"x": 200, "y": 10, "width": 50, "height": 40}
    _service(fetcher, builder, StaticTemplates(overview=box)).do_print(JOB)
    assert len(builder.named("image")) == 1


def test_north_arrow_follows_rotation(make_fetcher):
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    builder = RecordingBuilder()
    box = {"x": 250, "y": 150, "width": 10, "height": 15}
    _service(fetcher, builder, StaticTemplates(northarrow=box)).do_print({**JOB, "rotation": 30})
    arrow = next(c for c in builder.named("image") if c[2:] == (250, 150, 10, 15))
    assert _decode(arrow[1]).size == (28, 43)


def test_north_arrow_image_is_transparent_around_the_arrow():
    img = north_arrow_image(PixelSize(40, 60))
    assert img.getpixel((0, 0))[3] == 0
    assert img.getpixel((20, 20))[3] == 255


def test_legend_skips_failed_and_non_legend_urls(make_fetcher):
    legends = [
        {"broken": "http://legend/a?request=GetLegendGraphic&layer=a"},
        {"roads": "http://legend/b?SERVICE=WMS&REQUEST=GetLegendGraphic&layer=b"},
        {"ignored": "http://legend/c?request=GetMap"},
        {"rivers": "http://legend/d?request%3DGetLegendGraphic"},
    ]
    legend_png = png_bytes((0, 128, 0, 255), (96, 48))
    fetcher, transport = make_fetcher(
        {
            "legend/a": UpstreamFetchError("http://legend/a", status=500),
            "legend/b": lambda url: TileResponse(200, "image/png", legend_png, url),
            "legend/d": solid_tile((0, 0, 0, 255)),
        },
        default=solid_tile((0, 0, 255, 255)),
    )
    builder = RecordingBuilder()
    _service(fetcher, builder).do_print({**JOB, "legends": legends})

    assert not any("legend/c" in u for u in transport.requested)
    # dedicated portrait legend page after the map page
    assert builder.named("add_page")[1] == ("add_page", "portrait", (210, 297))
    titles = [c[3] for c in builder.named("cell")]
    assert titles == ["roads", "rivers"]
    roads = builder.named("cell")[0]
    assert roads[1:3] == (5, 10)
    image = next(c for c in builder.named("image") if c[2] == 5 and c[3] == 15)
    assert image[4] == pytest.approx(25.4)
    assert image[5] == pytest.approx(12.7)


def test_legend_in_template_box(make_fetcher):
    legends = [{"roads": "http://legend/b?request=GetLegendGraphic"}]
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 0, 255)))
    builder = RecordingBuilder()
    box = {"x": 200, "y": 100, "width": 80, "height": 90}
    _service(fetcher, builder, StaticTemplates(legend=box)).do_print({**JOB, "legends": legends})
    assert len(builder.named("add_page")) == 1
    assert builder.named("cell")[0][1:] == (205, 105, "roads")


def test_group_image_and_text(make_fetcher, tmp_path):
    (tmp_path / "planning.png").write_bytes(png_bytes((0, 0, 0, 255), (20, 10)))
    fields = {"dynamic_text": {"x": 10, "y": 180, "width": 100, "height": 5, "fontsize": 9}}
    box = {"x": 250, "y": 5, "width": 30, "height": 12}
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))

    builder = RecordingBuilder()
    _service(
        fetcher,
        builder,
        StaticTemplates(fields=fields, dynamic_image=box),
        group_lookup=lambda: GroupInfo("planning", "Planning department"),
        images_dir=tmp_path,
    ).do_print(JOB)
    assert any(c[2:] == (250, 5, 0, 12) for c in builder.named("image"))
    assert ("multi_cell", 10, 180, "Planning department") in builder.calls

    anonymous = RecordingBuilder()
    _service(fetcher, anonymous, StaticTemplates(fields=fields, dynamic_image=box), images_dir=tmp_path).do_print(JOB)
    assert anonymous.named("multi_cell") == []
    assert len(anonymous.named("image")) == 1


def test_format_number():
    assert format_number(5000.0) == "5000"
    assert format_number(12.5) == "12.5"
    assert format_number(None) == ""


def test_yaml_template_repository(tmp_path):
    (tmp_path / "a4.yaml").write_text(
        "orientation: portrait\n"
        "page_size: {width: 210, height: 297}\n"
        "map: {x: 10, y: 10, width: 190, height: 200}\n"
        "fields:\n"
        "  title: {x: 10, y: 220, width: 100, height: 8, fontsize: 14pt}\n",
        encoding="utf-8",
    )
    (tmp_path / "a4.pdf").write_bytes(b"%PDF-1.4")
    repo = YamlTemplateRepository(tmp_path)
    template = repo.get("a4")
    assert template.name == "a4"
    assert template.page_format == (210, 297)
    assert template.fields["title"].fontsize == 14.0
    assert template.pdf_path == (tmp_path / "a4.pdf").resolve()

    with pytest.raises(TemplateNotFoundError):
        repo.get("missing")
    with pytest.raises(TemplateNotFoundError):
        repo.get("../a4")


def test_pdf_output_with_real_builder(make_fetcher):
    fields = {"date": {"x": 10, "y": 100, "width": 30, "height": 5}}
    legends = [{"roads": "http://legend/b?request=GetLegendGraphic"}]
    fetcher, _ = make_fetcher(default=solid_tile((0, 0, 255, 255)))
    service = PrintService(
        fetcher,
        StaticTemplates(fields=fields, scalebar={"x": 20, "y": 150}, northarrow={"x": 250, "y": 150, "width": 10, "height": 15}),
        builder_factory=PdfDocumentBuilder,
    )
    content = service.do_print({**JOB, "legends": legends, "rotation": 10})
    assert content.startswith(b"%PDF")
