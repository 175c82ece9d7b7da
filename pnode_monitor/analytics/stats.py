from __future__ import annotations

import math
from collections.abc import Sequence


def round_half_up(value: float, digits: int = 0) -> float:
    """Redondeo comercial (0.5 sube), el mismo que usa el dashboard web."""

    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def stddev(values: Sequence[float]) -> float:
    # Desviación muestral (n - 1); con una sola muestra no hay varianza.
    if len(values) < 2:
        return 0.0
    mu = mean(values)
    variance = sum((v - mu) ** 2 for v in values) / (len(values) - 1)
    return math.sqrt(variance)


def z_score(value: float, values: Sequence[float]) -> float:
    sigma = stddev(values)
    if sigma == 0:
        return 0.0
    return (value - mean(values)) / sigma


def percentile(values: Sequence[float], p: float) -> float:
    """Percentil por rango más cercano (techo), sin interpolación."""

    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(p / 100 * len(ordered)) - 1
    index = max(0, min(len(ordered) - 1, index))
    return ordered[index]
