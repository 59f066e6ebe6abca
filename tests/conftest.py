import io
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qsl, urlsplit

import pytest
from PIL import Image

from mapexport.errors import UpstreamFetchError
from mapexport.services.document import A4_PORTRAIT
from mapexport.services.tiles import TileFetcher, TileResponse


def png_bytes(color, size=(100, 100), fmt="PNG") -> bytes:
    mode = "RGBA" if len(color) == 4 else "RGB"
    img = Image.new(mode, size, color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def solid_tile(color, content_type="image/png"):
    """Route handler answering with a solid tile sized from WIDTH / HEIGHT."""

    def _respond(url: str) -> TileResponse:
        params = {k.upper(): v for k, v in parse_qsl(urlsplit(url).query)}
        size = (int(params.get("WIDTH", 100)), int(params.get("HEIGHT", 100)))
        return TileResponse(200, content_type, png_bytes(color, size), url)

    return _respond


class FakeTransport:
    """In-memory TileTransport: first route whose needle occurs in the URL answers."""

    def __init__(self, routes: dict[str, Any] | None = None, default: Any = None) -> None:
        self.routes = list((routes or {}).items())
        self.default = default
        self.requested: list[str] = []

    def get(self, url: str) -> TileResponse:
        self.requested.append(url)
        answer = self.default
        for needle, value in self.routes:
            if needle in url:
                answer = value
                break
        if answer is None:
            raise UpstreamFetchError(url, reason="no route")
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            return answer(url)
        return answer


class RecordingBuilder:
    """DocumentBuilder that records calls instead of drawing."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.x = 0.0
        self.y = 0.0
        self._format = A4_PORTRAIT
        self.closed = False

    @property
    def page_width(self) -> float:
        return self._format[0]

    @property
    def page_height(self) -> float:
        return self._format[1]

    def add_page(self, orientation="portrait", page_format=None):
        short, long = sorted(page_format or A4_PORTRAIT)
        self._format = (short, long) if orientation.startswith("p") else (long, short)
        self.calls.append(("add_page", orientation, self._format))

    def use_template(self, pdf_path: Path):
        self.calls.append(("use_template", Path(pdf_path)))

    def image(self, data, x, y, w=0, h=0):
        self.calls.append(("image", data, x, y, w, h))

    def rect(self, x, y, w, h, *, fill=None, line_width=0.2):
        self.calls.append(("rect", x, y, w, h, fill))

    def set_font(self, size, *, bold=False):
        self.calls.append(("set_font", size, bold))

    def set_text_color(self, r, g, b):
        self.calls.append(("set_text_color", r, g, b))

    def set_xy(self, x, y):
        self.x, self.y = x, y

    def text(self, x, y, text, *, direction=""):
        self.calls.append(("text", x, y, text, direction))

    def cell(self, w, h, text):
        self.calls.append(("cell", self.x, self.y, text))

    def multi_cell(self, w, h, text):
        self.calls.append(("multi_cell", self.x, self.y, text))

    def output(self) -> bytes:
        return b"%PDF-recorded"

    def close(self) -> None:
        self.closed = True

    def named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def make_fetcher() -> Callable[..., tuple[TileFetcher, FakeTransport]]:
    def _make(routes=None, default=None):
        transport = FakeTransport(routes, default)
        return TileFetcher(transport), transport

    return _make


@pytest.fixture
def blue_png() -> bytes:
    return png_bytes((0, 0, 255, 255))
