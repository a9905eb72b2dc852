from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Tuple

import numpy as np

from .errors import ConfigurationError


PROTON_MASS = 1.007276466812
ELECTRON_MASS = 0.00054857990946

# Monoisotopic masses (Da) of common neutral molecules lost or gained in the source.
NEUTRAL_MASS = {
    "H2O": 18.010564684,
    "NH3": 17.026549101,
    "CO": 27.994914620,
    "CO2": 43.989829239,
    "HCOOH": 46.005479304,
    "CH3COOH": 60.021129368,
    "CH3OH": 32.026214748,
    "CH3CN": 41.026549101,
    "C3H8O": 60.057514874,
}

# Ion mass offsets (Da) following the convention:
#   observed_mz * |z| ~= neutral_mass * molecules + offset
ADDUCT_MASS_POS = {
    "H": PROTON_MASS,
    "NH4": 18.033823,
    "NA": 22.989218,
    "K": 38.963158,
    "E": -ELECTRON_MASS,
    "2H": 2.0 * PROTON_MASS,
    "H_NA": 23.996494,
    "H_NH4": 19.041099,
    "2NA": 45.978436,
}

ADDUCT_MASS_NEG = {
    "M_H": -PROTON_MASS,
    "E": ELECTRON_MASS,
    "CL": 34.969402,
    # Formate [M+HCOO]- and acetate [M+CH3COO]-
    "FA": 44.998201,
    "AC": 59.013851,
    "NA_2H": 20.974666,
    "M_2H": -2.0 * PROTON_MASS,
}


def normalize_polarity(polarity: str) -> str:
    pol = str(polarity or "").strip().lower()
    if pol in {"pos", "positive", "+"}:
        return "positive"
    if pol in {"neg", "negative", "-"}:
        return "negative"
    raise ConfigurationError(f"Unsupported polarity: {polarity!r}")


@dataclass(frozen=True)
class MZTolerance:
    """Absolute (Da) and relative (ppm) m/z tolerance; the wider one wins."""

    mz: float = 0.005
    ppm: float = 5.0

    def __post_init__(self) -> None:
        mz = float(self.mz)
        ppm = float(self.ppm)
        if not np.isfinite(mz) or not np.isfinite(ppm) or mz < 0 or ppm < 0:
            raise ConfigurationError(f"m/z tolerance must be finite and >= 0, got {self!r}.")
        if mz <= 0 and ppm <= 0:
            raise ConfigurationError("m/z tolerance must be > 0 (absolute or ppm).")

    def tolerance_at(self, mz: float) -> float:
        return max(float(self.mz), float(self.ppm) * 1e-6 * abs(float(mz)))

    def tolerance_range(self, mz: float) -> Tuple[float, float]:
        tol = self.tolerance_at(mz)
        return float(mz) - tol, float(mz) + tol

    def check_within(self, a: float, b: float) -> bool:
        # Symmetric in (a, b): the ppm part scales with the larger value.
        a = float(a)
        b = float(b)
        return abs(a - b) <= self.tolerance_at(max(abs(a), abs(b)))


@dataclass(frozen=True)
class RTTolerance:
    """Retention time tolerance in minutes, or percent of the first value if relative."""

    tolerance: float = 0.1
    relative: bool = False

    def __post_init__(self) -> None:
        tol = float(self.tolerance)
        if not np.isfinite(tol) or tol <= 0:
            raise ConfigurationError(f"RT tolerance must be finite and > 0, got {self.tolerance!r}.")

    def tolerance_at(self, rt: float) -> float:
        if self.relative:
            return abs(float(rt)) * float(self.tolerance) / 100.0
        return float(self.tolerance)

    def check_within(self, a: float, b: float) -> bool:
        a = float(a)
        b = float(b)
        return abs(a - b) <= self.tolerance_at(max(abs(a), abs(b)))

    def upper_limit(self, rt: float) -> float:
        """Largest retention time still within tolerance of a non-negative `rt` from above."""
        rt = float(rt)
        if self.relative:
            p = float(self.tolerance) / 100.0
            return rt / (1.0 - p) if p < 1.0 else float("inf")
        return rt + float(self.tolerance)


def infer_rt_unit_scale_to_minutes(rt: np.ndarray, *, min_n: int = 20) -> Tuple[float, dict[str, Any]]:
    """
    Guess whether retention times are given in seconds and return the factor to minutes.

    Exported peak tables mix seconds and minutes; RT tolerances in this package are
    always minutes. Returns (scale, info); scale is 1.0 unless the values clearly
    look like seconds.
    """
    rt = np.asarray(rt, dtype=float)
    finite = rt[np.isfinite(rt) & (rt > 0)]
    info: dict[str, Any] = {"note": "", "n_finite": int(finite.size), "scale": 1.0}
    if finite.size < int(min_n):
        info["note"] = "insufficient_rt"
        return 1.0, info

    med = float(np.median(finite))
    p95 = float(np.quantile(finite, 0.95))
    info.update({"median": med, "p95": p95})
    if med >= 100.0 and p95 >= 300.0:
        info.update({"note": "seconds_to_minutes", "scale": 1.0 / 60.0})
        return 1.0 / 60.0, info
    info["note"] = "no_rescale"
    return 1.0, info
