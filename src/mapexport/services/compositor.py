from __future__ import annotations

from typing import Iterable

from PIL import Image

from mapexport.errors import TileDecodeError, UpstreamFetchError
from mapexport.log import get_logger
from mapexport.models.geometry import LayerSpec
from mapexport.services.canvas import MapCanvas
from mapexport.services.tiles import TileFetcher, build_tile_url

logger = get_logger(__name__)


def draw_tile(canvas: MapCanvas, tile: Image.Image) -> None:
    """Alpha-composite `tile` onto the canvas raster at (0, 0)."""
    size = canvas.pixel_size.as_tuple()
    if tile.size != size:
        logger.warning("tile size %s does not match canvas %s, resizing", tile.size, size)
        resized = tile.resize(size, resample=Image.Resampling.BILINEAR)
        try:
            canvas.image.alpha_composite(resized)
        finally:
            resized.close()
        return
    canvas.image.alpha_composite(tile)


def add_layers(
    canvas: MapCanvas,
    layers: Iterable[LayerSpec],
    fetcher: TileFetcher,
    *,
    ignore_errors: bool = False,
) -> int:
    """Fetch each layer for the canvas extent and draw it, in the given order.

    Returns the number of layers drawn. With `ignore_errors`, tile fetch / decode
    failures are logged and skipped; otherwise the first one propagates.
    """
    drawn = 0
    for idx, layer in enumerate(layers):
        url = build_tile_url(layer.base_url, canvas, change_axis=layer.change_axis)
        logger.debug("map request nr. %d: %s", idx, url)
        try:
            tile = fetcher.fetch(url, layer.opacity)
        except (TileDecodeError, UpstreamFetchError) as e:
            if not ignore_errors:
                raise
            logger.warning("skipping layer %d: %s", idx, e)
            continue
        try:
            draw_tile(canvas, tile)
        finally:
            tile.close()
        drawn += 1
    return drawn
