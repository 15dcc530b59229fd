"""Color temperature conversion between the light's percent scale and mireds.

The lights report color temperature as a percent, 1 (warmest, 2700K) to
100 (coolest, 5000K). Home Assistant speaks mireds (1,000,000 / Kelvin).

    1   -> 2723K -> 367 mireds
    100 -> 5000K -> 200 mireds
"""

from __future__ import annotations

import math

WARM_KELVIN = 2700
COOL_KELVIN = 5000
KELVIN_SPAN = COOL_KELVIN - WARM_KELVIN

# Range advertised to Home Assistant
MIN_MIREDS = 200
MAX_MIREDS = 370


def percent_to_mireds(percent: float) -> int:
    """Convert a color temperature percent (1-100) to mireds."""
    kelvin = WARM_KELVIN + math.floor(KELVIN_SPAN * percent / 100)
    # round half up
    return math.floor(1e6 / kelvin + 0.5)


def mireds_to_percent(mireds: float) -> int:
    """Convert mireds to a color temperature percent.

    Not an exact inverse of ``percent_to_mireds``; round trips land within
    one percent of the input. Values outside the light's range are not
    clamped here.
    """
    kelvin = 1e6 / mireds
    return math.ceil((kelvin - WARM_KELVIN) / KELVIN_SPAN * 100)


__all__ = [
    "MAX_MIREDS",
    "MIN_MIREDS",
    "mireds_to_percent",
    "percent_to_mireds",
]
