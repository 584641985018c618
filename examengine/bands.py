"""
Band score helpers.

The percentage-to-band breakpoints are policy data: the engine only ever
sees a ``BandConverter`` callable, built here from a configurable table.
"""

from typing import Callable, Iterable, List, Optional, Sequence

BandConverter = Callable[[float], float]

# [minimum percentage, band]; first row whose minimum is reached wins.
DEFAULT_BAND_TABLE: List[List[float]] = [
    [90, 9.0],
    [82, 8.5],
    [75, 8.0],
    [67, 7.5],
    [60, 7.0],
    [52, 6.5],
    [45, 6.0],
    [37, 5.5],
    [30, 5.0],
    [22, 4.5],
    [15, 4.0],
    [10, 3.5],
    [5, 3.0],
]

DEFAULT_BAND = 2.5

MIN_BAND = 0.0
MAX_BAND = 9.0


def round_to_nearest_half(value: float) -> float:
    """
    Round to the nearest half band: ``round(value * 2) / 2``.

    Python's round() resolves exact ties to the even integer, so 5.25
    becomes 5.0 while 7.75 becomes 8.0.
    """
    return round(value * 2) / 2


def is_half_step(value: float) -> bool:
    """True when value is a whole or half number."""
    return float(value * 2).is_integer()


def is_valid_band(value: float) -> bool:
    return MIN_BAND <= value <= MAX_BAND and is_half_step(value)


def validate_band_table(table: Iterable[Sequence[float]]) -> Optional[str]:
    """
    Check a breakpoint table.

    Returns:
        None when the table is usable, otherwise an error message
    """
    rows = list(table)
    if not rows:
        return "Band table must contain at least one row"
    for row in rows:
        if len(row) != 2:
            return f"Band table row {row!r} must be [min_percentage, band]"
        min_pct, band = row
        if not 0 <= min_pct <= 100:
            return f"Band table percentage {min_pct} must be between 0 and 100"
        if not is_valid_band(band):
            return f"Band table band {band} must be 0-9 in 0.5 steps"
    return None


def make_band_converter(
    table: Optional[Iterable[Sequence[float]]] = None,
    default_band: float = DEFAULT_BAND,
) -> BandConverter:
    """
    Build a percentage -> band function from a breakpoint table.

    Args:
        table: Rows of [min_percentage, band]. Order does not matter.
        default_band: Band returned when no row's minimum is reached

    Returns:
        Callable mapping a percentage (0-100) to a band score
    """
    rows = sorted(
        ((float(min_pct), float(band)) for min_pct, band in (table or DEFAULT_BAND_TABLE)),
        reverse=True,
    )

    def convert(percentage: float) -> float:
        for min_pct, band in rows:
            if percentage >= min_pct:
                return band
        return default_band

    return convert


def band_to_percentage(band: float) -> int:
    """Express a band (0-9) as a percentage of the maximum band."""
    return round(band / MAX_BAND * 100)
