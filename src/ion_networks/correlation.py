from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Generic, Iterator, List, Mapping, Optional, Sequence, Tuple, TypeVar

import numpy as np
import pandas as pd

from .errors import ConfigurationError, ScanMismatchError
from .lcms_utils import RTTolerance
from .model import Feature, FeatureTable, Row
from .similarity import CorrelationData, normalize_similarity_measure
from .tasks import TaskMonitor, is_canceled, run_parallel

logger = logging.getLogger(__name__)

V = TypeVar("V")

# Why a row pair was rejected before any correlation was computed.
ANTI_OVERLAP = "anti_overlap"
MIN_FEATURES_REQUIREMENT_NOT_MET = "min_features_requirement_not_met"
OUT_OF_RT_RANGE = "out_of_rt_range"

# Results of the minimum-feature overlap filter.
OVERLAP_TRUE = "true"
OVERLAP_ANTI = "anti_overlap"
OVERLAP_BELOW_MIN_SAMPLES = "below_min_samples"
OVERLAP_OUT_OF_RT_RANGE = "out_of_rt_range"

_MARKER_FOR_OVERLAP = {
    OVERLAP_ANTI: ANTI_OVERLAP,
    OVERLAP_BELOW_MIN_SAMPLES: MIN_FEATURES_REQUIREMENT_NOT_MET,
    OVERLAP_OUT_OF_RT_RANGE: OUT_OF_RT_RANGE,
}


@dataclass(frozen=True)
class CorrelationConfig:
    rt_tolerance: RTTolerance = field(default_factory=RTTolerance)
    min_height: float = 1e5
    noise_level: float = 1e4
    # samples in which both rows need a feature >= min_height
    min_samples: int = 1
    # feature shape correlation
    use_shape_correlation: bool = True
    shape_measure: str = "pearson"
    min_correlated_data_points: int = 5
    min_data_points_on_edge: int = 2
    min_correlation_r: float = 0.85
    min_shape_samples: int = 1
    use_total_correlation_filter: bool = False
    min_total_correlation_r: float = 0.5
    # intensity profile across samples
    height_measure: str = "pearson"
    use_height_correlation_filter: bool = False
    min_height_correlation_r: float = 0.7
    min_height_correlation_dp: int = 2
    n_jobs: int = 1


def validate_correlation_config(cfg: CorrelationConfig) -> None:
    normalize_similarity_measure(cfg.shape_measure)
    normalize_similarity_measure(cfg.height_measure)
    for name in ("min_height", "noise_level"):
        v = float(getattr(cfg, name))
        if not np.isfinite(v) or v < 0:
            raise ConfigurationError(f"cfg.{name} must be finite and >= 0, got {v!r}.")
    if int(cfg.min_correlated_data_points) < 2:
        raise ConfigurationError("cfg.min_correlated_data_points must be >= 2.")
    if int(cfg.min_height_correlation_dp) < 2:
        raise ConfigurationError("cfg.min_height_correlation_dp must be >= 2.")
    if int(cfg.min_samples) < 1 or int(cfg.min_shape_samples) < 1:
        raise ConfigurationError("cfg.min_samples and cfg.min_shape_samples must be >= 1.")
    if int(cfg.min_data_points_on_edge) < 0:
        raise ConfigurationError("cfg.min_data_points_on_edge must be >= 0.")


@dataclass(frozen=True, eq=False)
class R2RCorrelationData:
    """Correlation of one unordered row pair; `row_a` is always the lower id and the x side of every data set."""

    row_a: int
    row_b: int
    shape: Mapping[str, CorrelationData] = field(default_factory=dict)
    height: Optional[CorrelationData] = None
    total: Optional[CorrelationData] = None
    negative_markers: Tuple[str, ...] = ()
    accepted: bool = False
    measure: str = "pearson"
    height_measure: str = "pearson"

    @property
    def key(self) -> Tuple[int, int]:
        return (self.row_a, self.row_b)

    def partner(self, row_id: int) -> int:
        return self.row_b if int(row_id) == self.row_a else self.row_a

    @property
    def has_shape_correlation(self) -> bool:
        return bool(self.shape)

    @property
    def shape_samples(self) -> List[str]:
        return sorted(self.shape)

    def shape_similarities(self) -> Dict[str, float]:
        return {s: c.similarity(self.measure) for s, c in sorted(self.shape.items())}

    @property
    def avg_shape_similarity(self) -> float:
        vals = [v for v in self.shape_similarities().values() if np.isfinite(v)]
        return float(np.mean(vals)) if vals else float("nan")

    @property
    def avg_shape_r(self) -> float:
        vals = [c.r for c in self.shape.values() if np.isfinite(c.r)]
        return float(np.mean(vals)) if vals else float("nan")

    @property
    def avg_shape_cosine(self) -> float:
        vals = [c.cosine for c in self.shape.values() if np.isfinite(c.cosine)]
        return float(np.mean(vals)) if vals else float("nan")

    @property
    def total_similarity(self) -> float:
        return float("nan") if self.total is None else self.total.similarity(self.measure)

    @property
    def height_similarity(self) -> float:
        return float("nan") if self.height is None else self.height.similarity(self.height_measure)

    @property
    def weight(self) -> float:
        """Edge weight for grouping: mean shape similarity, else height r, else 1."""
        w = self.avg_shape_similarity
        if np.isfinite(w):
            return w
        w = self.height_similarity
        return w if np.isfinite(w) else 1.0


class R2RMap(Generic[V]):
    """Thread-safe map keyed by the unordered pair of row ids."""

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[Tuple[int, int], V] = {}

    @staticmethod
    def key(a: int, b: int) -> Tuple[int, int]:
        a = int(a)
        b = int(b)
        return (a, b) if a <= b else (b, a)

    def add(self, a: int, b: int, value: V) -> None:
        k = self.key(a, b)
        with self._lock:
            self._data[k] = value

    def get(self, a: int, b: int, default: Optional[V] = None) -> Optional[V]:
        return self._data.get(self.key(a, b), default)

    def __contains__(self, pair: object) -> bool:
        try:
            a, b = pair  # type: ignore[misc]
        except (TypeError, ValueError):
            return False
        return self.key(a, b) in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        return iter(sorted(self._data))

    def items(self) -> List[Tuple[Tuple[int, int], V]]:
        return sorted(self._data.items(), key=lambda kv: kv[0])

    def values(self) -> List[V]:
        return [v for _, v in self.items()]


# ---------------------------------------------------------------------------
# Filters


def passes_min_features(row: Row, samples: Sequence[str], cfg: CorrelationConfig) -> bool:
    n = sum(1 for s in samples if row.feature(s) is not None and row.height(s) >= cfg.min_height)
    return n >= int(cfg.min_samples)


def check_rt_range(a: Row, b: Row, samples: Sequence[str], min_height: float, rt_tolerance: RTTolerance) -> bool:
    """True if one sample has features of both rows >= min_height within the RT tolerance."""
    for s in samples:
        fa = a.feature(s)
        fb = b.feature(s)
        if (
            fa is not None
            and fb is not None
            and fa.height >= min_height
            and fb.height >= min_height
            and rt_tolerance.check_within(fa.rt, fb.rt)
        ):
            return True
    return False


def check_min_features_overlap(a: Row, b: Row, samples: Sequence[str], cfg: CorrelationConfig) -> str:
    shared = [s for s in samples if a.feature(s) is not None and b.feature(s) is not None]
    high = [s for s in shared if a.height(s) >= cfg.min_height and b.height(s) >= cfg.min_height]
    need = int(cfg.min_samples)
    if len(high) < need:
        # Both rows are present often enough but never both above min_height.
        return OVERLAP_ANTI if len(shared) >= need else OVERLAP_BELOW_MIN_SAMPLES
    if not check_rt_range(a, b, high, cfg.min_height, cfg.rt_tolerance):
        return OVERLAP_OUT_OF_RT_RANGE
    return OVERLAP_TRUE


# ---------------------------------------------------------------------------
# Correlations


def corr_feature_shape(
    fa: Feature,
    fb: Feature,
    *,
    noise_level: float,
    min_data_points: int,
    min_data_points_on_edge: int = 0,
    row_ids: Tuple[int, int] = (-1, -1),
) -> Optional[CorrelationData]:
    """
    Correlate two feature profiles over their common scan range.

    Returns None if the profiles do not overlap or fewer than `min_data_points`
    aligned points are above `noise_level` in both profiles. Raises
    ScanMismatchError if the two profiles disagree on the scans inside the
    common range.
    """
    if not fa.has_profile or not fb.has_profile:
        return None
    sa = fa.scans
    sb = fb.scans
    lo = max(int(sa.min()), int(sb.min()))
    hi = min(int(sa.max()), int(sb.max()))
    if lo > hi:
        return None
    ia = (sa >= lo) & (sa <= hi)
    ib = (sb >= lo) & (sb <= hi)
    if int(ia.sum()) != int(ib.sum()) or not np.array_equal(sa[ia], sb[ib]):
        raise ScanMismatchError(
            row_ids[0],
            row_ids[1],
            fa.sample,
            f"{int(ia.sum())} vs {int(ib.sum())} scans in [{lo}, {hi}]",
        )
    x = fa.intensities[ia]
    y = fb.intensities[ib]
    keep = (x >= noise_level) & (y >= noise_level)
    if int(keep.sum()) < int(min_data_points):
        return None
    x = x[keep]
    y = y[keep]
    if int(min_data_points_on_edge) > 0:
        apex = int(np.argmax(x))
        left = apex
        right = int(x.size) - apex - 1
        if left < int(min_data_points_on_edge) or right < int(min_data_points_on_edge):
            return None
    return CorrelationData(x, y)


def corr_row_height_profile(a: Row, b: Row, samples: Sequence[str], *, min_data_points: int) -> Optional[CorrelationData]:
    """Paired heights over samples where both rows have a feature."""
    xs: List[float] = []
    ys: List[float] = []
    for s in samples:
        fa = a.feature(s)
        fb = b.feature(s)
        if fa is None or fb is None:
            continue
        xs.append(float(fa.height))
        ys.append(float(fb.height))
    if len(xs) < int(min_data_points):
        return None
    return CorrelationData(np.asarray(xs), np.asarray(ys))


def _shape_accepted(shape: Mapping[str, CorrelationData], total: Optional[CorrelationData], cfg: CorrelationConfig) -> bool:
    """
    Mean shape similarity of the correlated samples, and optionally the pooled
    similarity, must reach their minimum. Every measure is compared with `>=`,
    including the dissimilarity `log_ratio_variance_1`.
    """
    if len(shape) < int(cfg.min_shape_samples):
        return False
    sims = [c.similarity(cfg.shape_measure) for c in shape.values()]
    sims = [v for v in sims if np.isfinite(v)]
    if not sims or float(np.mean(sims)) < float(cfg.min_correlation_r):
        return False
    if cfg.use_total_correlation_filter:
        if total is None:
            return False
        t = total.similarity(cfg.shape_measure)
        if not np.isfinite(t) or t < float(cfg.min_total_correlation_r):
            return False
    return True


def correlate_pair(row1: Row, row2: Row, samples: Sequence[str], cfg: CorrelationConfig) -> R2RCorrelationData:
    """
    Correlate two rows. The result does not depend on argument order.

    Rejected pairs carry `accepted=False`; pairs rejected by the overlap filter
    also carry a negative marker.
    """
    a, b = (row1, row2) if row1.id <= row2.id else (row2, row1)
    measure = normalize_similarity_measure(cfg.shape_measure)
    height_measure = normalize_similarity_measure(cfg.height_measure)

    overlap = check_min_features_overlap(a, b, samples, cfg)
    if overlap != OVERLAP_TRUE:
        return R2RCorrelationData(
            a.id,
            b.id,
            negative_markers=(_MARKER_FOR_OVERLAP[overlap],),
            measure=measure,
            height_measure=height_measure,
        )

    height = corr_row_height_profile(a, b, samples, min_data_points=cfg.min_height_correlation_dp)
    if cfg.use_height_correlation_filter and height is not None:
        hs = height.similarity(cfg.height_measure)
        if not np.isfinite(hs) or hs < float(cfg.min_height_correlation_r):
            return R2RCorrelationData(a.id, b.id, height=height, measure=measure, height_measure=height_measure)

    if not cfg.use_shape_correlation:
        return R2RCorrelationData(a.id, b.id, height=height, accepted=True, measure=measure, height_measure=height_measure)

    shape: Dict[str, CorrelationData] = {}
    for s in samples:
        fa = a.feature(s)
        fb = b.feature(s)
        if fa is None or fb is None:
            continue
        c = corr_feature_shape(
            fa,
            fb,
            noise_level=cfg.noise_level,
            min_data_points=cfg.min_correlated_data_points,
            min_data_points_on_edge=cfg.min_data_points_on_edge,
            row_ids=(a.id, b.id),
        )
        if c is not None:
            shape[s] = c
    total = CorrelationData.pooled(shape.values()) if shape else None
    return R2RCorrelationData(
        a.id,
        b.id,
        shape=shape,
        height=height,
        total=total,
        accepted=_shape_accepted(shape, total, cfg),
        measure=measure,
        height_measure=height_measure,
    )


def _rt_bounds(row: Row) -> Tuple[float, float]:
    rts = [float(f.rt) for f in row.features.values() if np.isfinite(f.rt)]
    if not rts:
        return float("nan"), float("nan")
    return min(rts), max(rts)


def correlate_rows(
    table: FeatureTable,
    cfg: CorrelationConfig,
    *,
    monitor: Optional[TaskMonitor] = None,
) -> Tuple[R2RMap[R2RCorrelationData], dict]:
    """
    All-pairs row correlation; only accepted pairs enter the returned map.

    Rows are visited by their earliest feature RT, so the inner loop stops at
    the first row that starts after every feature of the current row left the
    RT tolerance.
    """
    validate_correlation_config(cfg)
    bounds = {r.id: _rt_bounds(r) for r in table}
    def rt_key(r: Row) -> Tuple[bool, float, int]:
        lo = bounds[r.id][0]
        return (not np.isfinite(lo), lo if np.isfinite(lo) else 0.0, r.id)

    rows = sorted(table, key=rt_key)
    samples = table.samples
    n = len(rows)
    corr_map: R2RMap[R2RCorrelationData] = R2RMap()
    eligible = [passes_min_features(r, samples, cfg) for r in rows]

    def unit(i: int) -> Tuple[int, int, int]:
        compared = rejected = errors = 0
        if is_canceled(monitor):
            return compared, rejected, errors
        row = rows[i]
        if eligible[i]:
            last_rt = bounds[row.id][1]
            limit = cfg.rt_tolerance.upper_limit(last_rt) if np.isfinite(last_rt) else float("inf")
            for j in range(i + 1, n):
                if is_canceled(monitor) or bounds[rows[j].id][0] > limit:
                    break
                if not eligible[j]:
                    continue
                try:
                    r2r = correlate_pair(row, rows[j], samples, cfg)
                except ScanMismatchError:
                    logger.error("Skipping row pair %d/%d", row.id, rows[j].id, exc_info=True)
                    errors += 1
                    continue
                compared += 1
                if r2r.accepted:
                    corr_map.add(r2r.row_a, r2r.row_b, r2r)
                else:
                    rejected += 1
        if monitor is not None and n > 1:
            monitor.add_stage_progress(1.0 / (n - 1))
        return compared, rejected, errors

    counts = run_parallel(unit, range(max(n - 1, 0)), n_jobs=cfg.n_jobs)
    diag = {
        "n_rows": int(n),
        "n_compared": int(sum(c[0] for c in counts)),
        "n_rejected": int(sum(c[1] for c in counts)),
        "n_errors": int(sum(c[2] for c in counts)),
        "n_accepted": int(len(corr_map)),
        "n_shape_correlations": int(sum(len(v.shape) for v in corr_map.values())),
    }
    logger.info(
        "Correlated %d row pairs: %d accepted, %d rejected, %d errors",
        diag["n_compared"],
        diag["n_accepted"],
        diag["n_rejected"],
        diag["n_errors"],
    )
    return corr_map, diag


def correlations_to_frame(corr_map: R2RMap[R2RCorrelationData]) -> pd.DataFrame:
    cols = ["row_a", "row_b", "n_shape_samples", "avg_shape_similarity", "avg_shape_r", "avg_shape_cosine", "total_similarity", "height_similarity"]
    rows = [
        (
            int(v.row_a),
            int(v.row_b),
            int(len(v.shape)),
            float(v.avg_shape_similarity),
            float(v.avg_shape_r),
            float(v.avg_shape_cosine),
            float(v.total_similarity),
            float(v.height_similarity),
        )
        for v in corr_map.values()
    ]
    return pd.DataFrame(rows, columns=cols)
