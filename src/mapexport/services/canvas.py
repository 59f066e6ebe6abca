from __future__ import annotations

from PIL import Image

from mapexport.models.geometry import PixelSize, ProjectedExtent, ProjectedPoint

BACKGROUND = (255, 255, 255, 255)


class MapCanvas:
    """Pixel raster bound to a projected center / extent.

    The raster is an RGBA Pillow image allocated on first access (opaque white)
    and always exactly `pixel_size`. Drawing code mutates it in place.
    """

    def __init__(self, center: ProjectedPoint, extent: ProjectedExtent, pixel_size: PixelSize) -> None:
        self.center = center
        self.extent = extent
        self.pixel_size = pixel_size
        self._image: Image.Image | None = None

    def __repr__(self) -> str:
        return (
            f"MapCanvas(center=({self.center.x}, {self.center.y}), "
            f"extent={self.extent.width}x{self.extent.height}, "
            f"pixels={self.pixel_size.width}x{self.pixel_size.height})"
        )

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        half_w = self.extent.width * 0.5
        half_h = self.extent.height * 0.5
        return (
            self.center.x - half_w,
            self.center.y - half_h,
            self.center.x + half_w,
            self.center.y + half_h,
        )

    def project(self, x: float, y: float) -> tuple[float, float]:
        """Projected coordinates -> pixel offsets from the upper left corner."""
        min_x = self.center.x - self.extent.width * 0.5
        max_y = self.center.y + self.extent.height * 0.5
        px = (x - min_x) / self.extent.width * self.pixel_size.width
        py = (max_y - y) / self.extent.height * self.pixel_size.height
        return (px, py)

    def bbox_param(self, axis_swapped: bool = False) -> str:
        """Format the extent for a WMS `BBOX=` parameter.

        `axis_swapped` flips x/y ordering (certain EPSGs under WMS 1.3.0).
        """
        min_x, min_y, max_x, max_y = self.bounds
        if axis_swapped:
            return f"{_num(min_y)},{_num(min_x)},{_num(max_y)},{_num(max_x)}"
        return f"{_num(min_x)},{_num(min_y)},{_num(max_x)},{_num(max_y)}"

    @property
    def image(self) -> Image.Image:
        if self._image is None:
            self._image = Image.new("RGBA", self.pixel_size.as_tuple(), BACKGROUND)
        return self._image

    def detach_image(self) -> Image.Image:
        """Hand the raster over to the caller; the canvas forgets it."""
        image = self.image
        self._image = None
        return image

    def close(self) -> None:
        if self._image is not None:
            self._image.close()
            self._image = None

    def __enter__(self) -> "MapCanvas":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _num(v: float) -> str:
    # repr-like float formatting without a trailing ".0" on integral values
    f = float(v)
    if f.is_integer():
        return str(int(f))
    return repr(f)
