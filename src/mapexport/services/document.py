from __future__ import annotations

import io
from pathlib import Path
from typing import Protocol

import fitz  # PyMuPDF
from PIL import Image

from mapexport.errors import TemplateNotFoundError

# PDF user space is in points; page layout is in mm.
PT_PER_MM = 72.0 / 25.4

# Legend spill pages (A4 portrait).
A4_PORTRAIT = (210.0, 297.0)

RGB = tuple[int, int, int]


def mm(v: float) -> float:
    return float(v) * PT_PER_MM


class DocumentBuilder(Protocol):
    """Paginated output surface. Coordinates and sizes in mm from the top-left."""

    @property
    def page_width(self) -> float: ...

    @property
    def page_height(self) -> float: ...

    def add_page(self, orientation: str = "portrait", page_format: tuple[float, float] | None = None) -> None: ...

    def use_template(self, pdf_path: Path) -> None: ...

    def image(self, data: bytes, x: float, y: float, w: float = 0, h: float = 0) -> None: ...

    def rect(self, x: float, y: float, w: float, h: float, *, fill: RGB | None = None, line_width: float = 0.2) -> None: ...

    def set_font(self, size: float, *, bold: bool = False) -> None: ...

    def set_text_color(self, r: int, g: int, b: int) -> None: ...

    def set_xy(self, x: float, y: float) -> None: ...

    def text(self, x: float, y: float, text: str, *, direction: str = "") -> None: ...

    def cell(self, w: float, h: float, text: str) -> None: ...

    def multi_cell(self, w: float, h: float, text: str) -> None: ...

    def output(self) -> bytes: ...

    def close(self) -> None: ...


class PdfDocumentBuilder:
    """DocumentBuilder on top of PyMuPDF.

    `text()` places the baseline at (x, y). `direction` "U" rotates the text to
    read upwards, "D" downwards. Cells print left-aligned with a 1 mm margin.
    """

    CELL_MARGIN = 1.0

    def __init__(self, *, font_path: str | None = None) -> None:
        self.doc = fitz.open()
        self.page: fitz.Page | None = None
        self.font_path = font_path if font_path and Path(font_path).is_file() else None
        self.font_size = 10.0
        self.bold = False
        self.text_color: RGB = (0, 0, 0)
        self.x = 0.0
        self.y = 0.0
        self._format: tuple[float, float] = A4_PORTRAIT
        self._templates: dict[Path, fitz.Document] = {}

    # page ------------------------------------------------------------------

    def add_page(self, orientation: str = "portrait", page_format: tuple[float, float] | None = None) -> None:
        short, long = sorted(page_format or A4_PORTRAIT)
        w, h = (short, long) if orientation.lower().startswith("p") else (long, short)
        self._format = (w, h)
        self.page = self.doc.new_page(width=mm(w), height=mm(h))
        self.x = self.y = 0.0

    @property
    def page_width(self) -> float:
        return self._format[0]

    @property
    def page_height(self) -> float:
        return self._format[1]

    def _current(self) -> fitz.Page:
        if self.page is None:
            raise RuntimeError("add_page() must be called first")
        return self.page

    def use_template(self, pdf_path: Path) -> None:
        """Draw the first page of `pdf_path` scaled onto the full current page."""
        path = Path(pdf_path)
        src = self._templates.get(path)
        if src is None:
            try:
                src = fitz.open(str(path))
            except (fitz.FileDataError, RuntimeError, OSError) as e:
                raise TemplateNotFoundError(path.stem, f"unreadable background: {e}") from None
            self._templates[path] = src
        page = self._current()
        page.show_pdf_page(page.rect, src, 0, keep_proportion=False)

    # drawing -----------------------------------------------------------------

    def image(self, data: bytes, x: float, y: float, w: float = 0, h: float = 0) -> None:
        """Place an encoded image. A zero width or height follows the image's aspect ratio."""
        page = self._current()
        if not w or not h:
            with Image.open(io.BytesIO(data)) as img:
                iw, ih = img.size
            if not w and h:
                w = h * iw / ih
            elif not h and w:
                h = w * ih / iw
        if not w or not h:
            return
        rect = fitz.Rect(mm(x), mm(y), mm(x + w), mm(y + h))
        page.insert_image(rect, stream=data, keep_proportion=False)

    def rect(self, x: float, y: float, w: float, h: float, *, fill: RGB | None = None, line_width: float = 0.2) -> None:
        page = self._current()
        r = fitz.Rect(mm(x), mm(y), mm(x + w), mm(y + h))
        page.draw_rect(r, color=(0, 0, 0), fill=_unit_rgb(fill) if fill else None, width=mm(line_width))

    # text --------------------------------------------------------------------

    def set_font(self, size: float, *, bold: bool = False) -> None:
        self.font_size = float(size)
        self.bold = bool(bold)

    def set_text_color(self, r: int, g: int, b: int) -> None:
        self.text_color = (int(r), int(g), int(b))

    def set_xy(self, x: float, y: float) -> None:
        self.x = float(x)
        self.y = float(y)

    def _font_kwargs(self) -> dict:
        if self.font_path:
            return {"fontname": "mapfont", "fontfile": self.font_path}
        return {"fontname": "hebo" if self.bold else "helv"}

    def text(self, x: float, y: float, text: str, *, direction: str = "") -> None:
        rotate = {"U": 90, "D": 270}.get(direction.upper(), 0) if direction else 0
        self._current().insert_text(
            fitz.Point(mm(x), mm(y)),
            str(text),
            fontsize=self.font_size,
            color=_unit_rgb(self.text_color),
            rotate=rotate,
            **self._font_kwargs(),
        )

    def cell(self, w: float, h: float, text: str) -> None:
        """Single line at the current position, vertically centered in `h`."""
        baseline = self.y + h / 2.0 + self.font_size * 0.35 / PT_PER_MM
        self.text(self.x + self.CELL_MARGIN, baseline, text)
        self.x += w

    def multi_cell(self, w: float, h: float, text: str) -> None:
        """Wrapped text in a box `w` wide starting at the current position."""
        page = self._current()
        width = w or (self.page_width - self.x)
        box = fitz.Rect(
            mm(self.x + self.CELL_MARGIN),
            mm(self.y),
            mm(self.x + width),
            mm(self.page_height),
        )
        page.insert_textbox(
            box,
            str(text),
            fontsize=self.font_size,
            color=_unit_rgb(self.text_color),
            **self._font_kwargs(),
        )
        lines = max(1, str(text).count("\n") + 1)
        self.y += lines * h
        self.x = 0.0

    # output ------------------------------------------------------------------

    def output(self) -> bytes:
        try:
            return self.doc.tobytes(garbage=3, deflate=True)
        finally:
            self.close()

    def close(self) -> None:
        for src in self._templates.values():
            src.close()
        self._templates.clear()
        if not self.doc.is_closed:
            self.doc.close()


def _unit_rgb(rgb: RGB) -> tuple[float, float, float]:
    return (rgb[0] / 255.0, rgb[1] / 255.0, rgb[2] / 255.0)
