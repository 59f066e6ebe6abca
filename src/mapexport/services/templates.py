from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Protocol

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mapexport.errors import TemplateNotFoundError

DEFAULT_FONT_NAME = "helv"
DEFAULT_FONT_SIZE = 10.0
DEFAULT_FONT_COLOR = "#000000"


class Box(BaseModel):
    """Rectangle on the page, in mm from the top-left corner."""

    model_config = ConfigDict(extra="ignore")

    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0


class PageSize(BaseModel):
    model_config = ConfigDict(extra="ignore")

    width: float
    height: float


class TextField(Box):
    font: str = DEFAULT_FONT_NAME
    fontsize: float = DEFAULT_FONT_SIZE
    color: str = DEFAULT_FONT_COLOR

    @field_validator("fontsize", mode="before")
    @classmethod
    def _strip_unit(cls, v: Any) -> Any:
        # Office templates write sizes like "10pt".
        if isinstance(v, str):
            s = v.strip().lower()
            if s.endswith("pt"):
                s = s[:-2]
            return s or DEFAULT_FONT_SIZE
        return DEFAULT_FONT_SIZE if v is None else v


class PrintTemplate(BaseModel):
    """Page geometry of a print template (all lengths in mm)."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    orientation: Literal["portrait", "landscape"] = "landscape"
    page_size: PageSize
    map: Box
    overview: Box | None = None
    scalebar: Box | None = None
    northarrow: Box | None = None
    legend: Box | None = None
    legendpage_image: Box | None = None
    dynamic_image: Box | None = None
    fields: dict[str, TextField] = Field(default_factory=dict)
    # Background PDF drawn over the map instead of under it.
    transparent_background: bool = False
    pdf_path: Path | None = None

    @property
    def page_format(self) -> tuple[float, float]:
        """(width, height) of the first page in mm, honoring orientation."""
        short, long = sorted((self.page_size.width, self.page_size.height))
        if self.orientation == "portrait":
            return (short, long)
        return (long, short)

    def field(self, name: str) -> TextField | None:
        return self.fields.get(name)


class TemplateRepository(Protocol):
    def get(self, name: str) -> PrintTemplate: ...


class YamlTemplateRepository:
    """Templates as `<name>.yaml` geometry files with an optional `<name>.pdf` background."""

    def __init__(self, templates_dir: str | Path) -> None:
        self.templates_dir = Path(templates_dir)

    def _resolve(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise TemplateNotFoundError(str(name), "invalid template name")
        for suffix in (".yaml", ".yml"):
            p = (self.templates_dir / f"{name}{suffix}").resolve()
            if p.is_file():
                return p
        raise TemplateNotFoundError(name, f"no geometry file in {self.templates_dir}")

    def get(self, name: str) -> PrintTemplate:
        path = self._resolve(name)
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise TemplateNotFoundError(name, f"unreadable: {e}") from None
        if not isinstance(raw, dict):
            raise TemplateNotFoundError(name, "geometry file is not a mapping")
        raw.setdefault("name", name)
        pdf = path.with_suffix(".pdf")
        if pdf.is_file():
            raw["pdf_path"] = pdf
        try:
            return PrintTemplate.model_validate(raw)
        except ValidationError as e:
            raise TemplateNotFoundError(name, str(e)) from None
