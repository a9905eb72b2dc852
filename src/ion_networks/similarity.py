from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal, Tuple

import numpy as np
from scipy.stats import rankdata

from .errors import ConfigurationError

SimilarityMeasure = Literal["pearson", "cosine", "spearman", "log_ratio_variance_1", "log_ratio_variance_2"]

SIMILARITY_MEASURES: Tuple[str, ...] = (
    "pearson",
    "cosine",
    "spearman",
    "log_ratio_variance_1",
    "log_ratio_variance_2",
)


def normalize_similarity_measure(measure: str) -> str:
    m = str(measure or "").strip().lower().replace("-", "_").replace(" ", "_")
    aliases = {
        "pearsons": "pearson",
        "pearson_r": "pearson",
        "cosine_sim": "cosine",
        "cos": "cosine",
        "spearmans": "spearman",
        "lrv1": "log_ratio_variance_1",
        "lrv2": "log_ratio_variance_2",
    }
    m = aliases.get(m, m)
    if m not in SIMILARITY_MEASURES:
        raise ConfigurationError(f"Unsupported similarity measure: {measure!r} (expected one of {SIMILARITY_MEASURES}).")
    return m


def _paired(x: object, y: object) -> Tuple[np.ndarray, np.ndarray]:
    x = np.asarray(x, dtype=float).reshape(-1)
    y = np.asarray(y, dtype=float).reshape(-1)
    if x.size != y.size:
        raise ValueError(f"x and y must have the same length, got {x.size} and {y.size}.")
    ok = np.isfinite(x) & np.isfinite(y)
    return x[ok], y[ok]


def pearson(x: object, y: object) -> float:
    x, y = _paired(x, y)
    if x.size < 2:
        return float("nan")
    xc = x - x.mean()
    yc = y - y.mean()
    denom = float(np.sqrt(np.sum(xc * xc) * np.sum(yc * yc)))
    if denom <= 0:
        return float("nan")
    return float(np.clip(np.sum(xc * yc) / denom, -1.0, 1.0))


def cosine(x: object, y: object) -> float:
    x, y = _paired(x, y)
    if x.size == 0:
        return float("nan")
    denom = float(np.linalg.norm(x) * np.linalg.norm(y))
    if denom <= 0:
        return float("nan")
    return float(np.clip(np.dot(x, y) / denom, -1.0, 1.0))


def spearman(x: object, y: object) -> float:
    x, y = _paired(x, y)
    if x.size < 2:
        return float("nan")
    return pearson(rankdata(x), rankdata(y))


def _log_pair(x: object, y: object) -> Tuple[np.ndarray, np.ndarray]:
    x, y = _paired(x, y)
    ok = (x > 0) & (y > 0)
    return np.log(x[ok]), np.log(y[ok])


def log_ratio_variance_1(x: object, y: object) -> float:
    """
    Proportionality: var(log(x/y)) / var(log x); 0 for perfectly proportional data.

    Lower is more similar, unlike the other measures. Thresholds elsewhere are
    still applied as a minimum (`value >= min_r`), so with this measure a
    threshold keeps the less proportional pairs.
    """
    lx, ly = _log_pair(x, y)
    if lx.size < 2:
        return float("nan")
    vx = float(np.var(lx, ddof=1))
    if vx <= 0:
        return float("nan")
    return float(np.var(lx - ly, ddof=1) / vx)


def log_ratio_variance_2(x: object, y: object) -> float:
    """Concordance: 2 cov(log x, log y) / (var log x + var log y)."""
    lx, ly = _log_pair(x, y)
    if lx.size < 2:
        return float("nan")
    denom = float(np.var(lx, ddof=1) + np.var(ly, ddof=1))
    if denom <= 0:
        return float("nan")
    cov = float(np.cov(lx, ly, ddof=1)[0, 1])
    return float(2.0 * cov / denom)


_MEASURES = {
    "pearson": pearson,
    "cosine": cosine,
    "spearman": spearman,
    "log_ratio_variance_1": log_ratio_variance_1,
    "log_ratio_variance_2": log_ratio_variance_2,
}


def similarity(x: object, y: object, measure: SimilarityMeasure | str = "pearson") -> float:
    return _MEASURES[normalize_similarity_measure(measure)](x, y)


@dataclass(frozen=True, eq=False)
class CorrelationData:
    """Paired data points (x from row a, y from row b) with cached Pearson r and cosine."""

    x: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=float))
    y: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=float))

    def __post_init__(self) -> None:
        x, y = _paired(self.x, self.y)
        object.__setattr__(self, "x", x)
        object.__setattr__(self, "y", y)
        object.__setattr__(self, "_r", pearson(x, y))
        object.__setattr__(self, "_cosine", cosine(x, y))

    @classmethod
    def pooled(cls, items: Iterable["CorrelationData"]) -> "CorrelationData":
        items = [c for c in items if c is not None and c.dp_count > 0]
        if not items:
            return cls()
        return cls(np.concatenate([c.x for c in items]), np.concatenate([c.y for c in items]))

    @property
    def dp_count(self) -> int:
        return int(self.x.size)

    @property
    def is_valid(self) -> bool:
        return self.dp_count > 0

    @property
    def r(self) -> float:
        return float(self._r)  # type: ignore[attr-defined]

    @property
    def cosine(self) -> float:
        return float(self._cosine)  # type: ignore[attr-defined]

    @property
    def min_x(self) -> float:
        return float(np.min(self.x)) if self.dp_count else float("nan")

    @property
    def max_x(self) -> float:
        return float(np.max(self.x)) if self.dp_count else float("nan")

    def similarity(self, measure: SimilarityMeasure | str = "pearson") -> float:
        if not self.dp_count:
            return float("nan")
        return similarity(self.x, self.y, measure)

    def swapped(self) -> "CorrelationData":
        return CorrelationData(self.y, self.x)
