from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console

from mapexport.config import settings
from mapexport.errors import MapExportError
from mapexport.log import setup_logging
from mapexport.models.geometry import PixelSize, ProjectedExtent
from mapexport.services.export import ImageExportService
from mapexport.services.job import inner_dimensions
from mapexport.services.printing import PrintService
from mapexport.services.templates import YamlTemplateRepository
from mapexport.services.tiles import TileFetcher, default_fetcher

app = typer.Typer(add_completion=False)
console = Console()


def _fetcher() -> TileFetcher:
    return default_fetcher(
        timeout_sec=settings.tile_timeout_sec,
        retries=settings.tile_retries,
        proxy_url=settings.proxy_url,
        internal_base_url=settings.internal_base_url,
    )


def _fail(e: MapExportError) -> NoReturn:
    console.print(f"[red]ERROR[/red] {e.code}: {e.details}")
    raise typer.Exit(code=1)


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, help="Logging level (DEBUG, INFO, WARNING, ...)."),
) -> None:
    setup_logging(log_level)


@app.command()
def export(
    job: Path = typer.Option(..., exists=True, file_okay=True, dir_okay=False, help="Job JSON file."),
    out: Path | None = typer.Option(None, help="Output file (default: suggested export_<timestamp> name)."),
) -> None:
    """Render a job to a PNG / JPEG image."""
    with _fetcher() as fetcher:
        service = ImageExportService(fetcher, jpeg_quality=settings.jpeg_quality, font_path=settings.font_path)
        try:
            result = service.export(job.read_text(encoding="utf-8"))
        except MapExportError as e:
            _fail(e)
    out_path = out or Path(result.filename)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(result.content)
    console.print(f"[green]OK[/green] wrote {out_path} ({result.mime_type})")


@app.command("print")
def print_(
    job: Path = typer.Option(..., exists=True, file_okay=True, dir_okay=False, help="Job JSON file."),
    out: Path = typer.Option(Path("output/print.pdf")),
    templates_dir: Path | None = typer.Option(None, help="Template directory (default: settings)."),
    images_dir: Path | None = typer.Option(None, help="Image directory for logos / watermarks."),
) -> None:
    """Render a job onto a template and write a PDF."""
    templates = YamlTemplateRepository(templates_dir or Path(settings.templates_dir))
    with _fetcher() as fetcher:
        service = PrintService(
            fetcher,
            templates,
            images_dir=images_dir or Path(settings.images_dir),
            font_path=settings.font_path,
            default_quality_dpi=settings.default_quality_dpi,
        )
        try:
            content = service.do_print(job.read_text(encoding="utf-8"))
        except MapExportError as e:
            _fail(e)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(content)
    console.print(f"[green]OK[/green] wrote {out}")


@app.command("inner-size")
def inner_size(
    width: int = typer.Option(..., min=1),
    height: int = typer.Option(..., min=1),
    rotation: float = typer.Option(0.0),
    extent_width: float = typer.Option(1.0, help="Projected extent width."),
    extent_height: float = typer.Option(1.0, help="Projected extent height."),
) -> None:
    """Show the working canvas a rotated export renders before cropping."""
    dims = inner_dimensions(
        rotation,
        PixelSize(width=width, height=height),
        ProjectedExtent(width=extent_width, height=extent_height),
    )
    console.print(
        f"{dims.pixel_size.width}x{dims.pixel_size.height} px, "
        f"extent {dims.extent.width:.6g} x {dims.extent.height:.6g}"
    )


if __name__ == "__main__":
    app()
