from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from mapexport.services.job import round_half_up

# Legend graphics are measured at a 96 DPI baseline and placed in mm.
LEGEND_DPI = 96
MM_PER_INCH = 25.4
TITLE_HEIGHT = 5
ENTRY_SPACING = 5
COLUMN_WIDTH = 105
MIN_COLUMN_WIDTH = 20


@dataclass(frozen=True)
class LegendFrame:
    """Where legend entries may go: start offsets plus available size (mm)."""

    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class LegendPlacement:
    index: int
    # Number of legend pages opened before this entry (0 = starting frame).
    page: int
    # True for the first entry placed on a freshly opened page.
    new_page: bool
    x: float
    y: float


def px_to_mm(px: float) -> float:
    return float(px) * MM_PER_INCH / LEGEND_DPI


def entry_height(image_height_px: float) -> int:
    """Vertical space (mm) for one legend entry: title row, graphic, spacing."""
    return round_half_up(px_to_mm(image_height_px)) + ENTRY_SPACING + TITLE_HEIGHT


def layout_legend(
    heights: Sequence[float],
    start: LegendFrame,
    spill: LegendFrame,
    *,
    column_width: float = COLUMN_WIDTH,
    min_column_width: float = MIN_COLUMN_WIDTH,
) -> list[LegendPlacement]:
    """Greedy column/page flow for legend entries of the given heights (mm).

    Entries go top to bottom in a column. When an entry would overflow the column
    the flow moves one `column_width` to the right, as long as at least
    `min_column_width` remains; otherwise a new page using `spill` is started. The
    very first entry is always placed. Entries are never reordered or split.
    """
    placements: list[LegendPlacement] = []
    frame = start
    x = 0.0
    y = 0.0
    page = 0
    for idx, needed in enumerate(heights):
        new_page = False
        if placements and y + needed > frame.height:
            next_x = x + column_width
            if next_x + min_column_width <= frame.width:
                x = next_x
                y = 0.0
            else:
                new_page = True
        if new_page:
            page += 1
            frame = spill
            x = 0.0
            y = 0.0
        placements.append(LegendPlacement(index=idx, page=page, new_page=new_page, x=x + frame.x, y=y + frame.y))
        y += needed
    return placements
