"""Tabular input and output.

Peak tables are long format, one line per (row, sample) feature. Optional
profile tables carry the intensity-over-scan points of each feature and
optional fragment tables the centroid MS/MS signals of each feature.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .correlation import correlations_to_frame
from .grouping import groups_to_frame
from .lcms_utils import infer_rt_unit_scale_to_minutes
from .model import Feature, FeatureTable, FragmentScan, Row
from .networks import identities_to_frame, networks_to_frame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeakTableSchema:
    row_id_col: str = "row_id"
    sample_col: str = "sample"
    mz_col: str = "mz"
    rt_col: str = "rt"
    height_col: str = "height"
    charge_col: str = "charge"
    # profile table
    scan_col: str = "scan"
    intensity_col: str = "intensity"
    # fragment table
    precursor_mz_col: str = "precursor_mz"


def load_dataframe(path: Path | str) -> pd.DataFrame:
    """Read a .csv or .tsv file."""
    path = Path(path)
    if path.suffix == ".csv":
        return pd.read_csv(path)
    if path.suffix == ".tsv":
        return pd.read_csv(path, sep="\t")
    raise ValueError(f"Unsupported file type {path.suffix!r}. Please provide a .csv or .tsv file.")


def _require(df: pd.DataFrame, cols: Tuple[str, ...], what: str) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{what} is missing required columns: {missing}")


def normalize_peak_frame(peaks: pd.DataFrame, schema: PeakTableSchema = PeakTableSchema(), *, rt_unit: str = "min") -> pd.DataFrame:
    """
    Copy with canonical columns `row_id, sample, mz, rt, height, charge`.

    `rt_unit` is "min", "s" or "auto" (guess seconds from the value range).
    Lines with non-finite m/z, RT or height are dropped.
    """
    _require(peaks, (schema.row_id_col, schema.sample_col, schema.mz_col, schema.rt_col, schema.height_col), "Peak table")
    df = pd.DataFrame(
        {
            "row_id": pd.to_numeric(peaks[schema.row_id_col], errors="coerce"),
            "sample": peaks[schema.sample_col].astype(str),
            "mz": pd.to_numeric(peaks[schema.mz_col], errors="coerce").astype(float),
            "rt": pd.to_numeric(peaks[schema.rt_col], errors="coerce").astype(float),
            "height": pd.to_numeric(peaks[schema.height_col], errors="coerce").astype(float),
        }
    )
    if schema.charge_col in peaks.columns:
        df["charge"] = pd.to_numeric(peaks[schema.charge_col], errors="coerce").fillna(0).astype(int)
    else:
        df["charge"] = 0

    ok = df["row_id"].notna() & np.isfinite(df[["mz", "rt", "height"]].to_numpy(dtype=float)).all(axis=1)
    n_bad = int((~ok).sum())
    if n_bad:
        logger.warning("Dropped %d peak lines with missing row id, m/z, RT or height", n_bad)
    df = df.loc[ok].copy()
    df["row_id"] = df["row_id"].astype(int)

    dup = df.duplicated(subset=["row_id", "sample"])
    if bool(dup.any()):
        first = df.loc[dup, ["row_id", "sample"]].iloc[0]
        raise ValueError(f"Duplicate feature for row {int(first['row_id'])} in sample {first['sample']!r}.")

    unit = str(rt_unit).strip().lower()
    if unit in {"s", "sec", "seconds"}:
        df["rt"] = df["rt"] / 60.0
    elif unit == "auto":
        scale, info = infer_rt_unit_scale_to_minutes(df["rt"].to_numpy(dtype=float))
        if scale != 1.0:
            logger.info("RT values look like seconds (median %.1f); converting to minutes", info.get("median", float("nan")))
            df["rt"] = df["rt"] * scale
    elif unit not in {"min", "minutes"}:
        raise ValueError(f"Unsupported rt_unit: {rt_unit!r} (expected min, s or auto).")
    return df.reset_index(drop=True)


def _profiles_by_feature(profiles: pd.DataFrame, schema: PeakTableSchema) -> Dict[Tuple[int, str], Tuple[np.ndarray, np.ndarray]]:
    _require(profiles, (schema.row_id_col, schema.sample_col, schema.scan_col, schema.intensity_col), "Profile table")
    df = pd.DataFrame(
        {
            "row_id": pd.to_numeric(profiles[schema.row_id_col], errors="coerce"),
            "sample": profiles[schema.sample_col].astype(str),
            "scan": pd.to_numeric(profiles[schema.scan_col], errors="coerce"),
            "intensity": pd.to_numeric(profiles[schema.intensity_col], errors="coerce").fillna(0.0),
        }
    ).dropna(subset=["row_id", "scan"])
    out: Dict[Tuple[int, str], Tuple[np.ndarray, np.ndarray]] = {}
    for (rid, sample), g in df.groupby(["row_id", "sample"], sort=False):
        out[(int(rid), str(sample))] = (
            g["scan"].to_numpy(dtype=int),
            g["intensity"].to_numpy(dtype=float),
        )
    return out


def _fragments_by_feature(
    fragments: pd.DataFrame, schema: PeakTableSchema, mass_list: str
) -> Dict[Tuple[int, str], FragmentScan]:
    _require(fragments, (schema.row_id_col, schema.sample_col, schema.mz_col, schema.intensity_col), "Fragment table")
    has_scan = schema.scan_col in fragments.columns
    has_prec = schema.precursor_mz_col in fragments.columns
    out: Dict[Tuple[int, str], FragmentScan] = {}
    for (rid, sample), g in fragments.groupby([schema.row_id_col, schema.sample_col], sort=False):
        dps = np.column_stack(
            [
                pd.to_numeric(g[schema.mz_col], errors="coerce").to_numpy(dtype=float),
                pd.to_numeric(g[schema.intensity_col], errors="coerce").to_numpy(dtype=float),
            ]
        )
        dps = dps[np.isfinite(dps).all(axis=1)]
        scan = int(g[schema.scan_col].iloc[0]) if has_scan else -1
        prec = float(g[schema.precursor_mz_col].iloc[0]) if has_prec else float("nan")
        out[(int(rid), str(sample))] = FragmentScan(scan_number=scan, precursor_mz=prec, mass_lists={mass_list: dps})
    return out


def read_feature_table(
    peaks: pd.DataFrame,
    *,
    profiles: Optional[pd.DataFrame] = None,
    fragments: Optional[pd.DataFrame] = None,
    schema: PeakTableSchema = PeakTableSchema(),
    mass_list: str = "centroid",
    rt_unit: str = "min",
) -> FeatureTable:
    """Build rows and features from long-format frames; samples keep their first-seen order."""
    df = normalize_peak_frame(peaks, schema, rt_unit=rt_unit)
    prof = _profiles_by_feature(profiles, schema) if profiles is not None else {}
    frag = _fragments_by_feature(fragments, schema, mass_list) if fragments is not None else {}

    rows = []
    for rid, g in df.groupby("row_id", sort=True):
        feats: Dict[str, Feature] = {}
        for rec in g.itertuples(index=False):
            key = (int(rid), str(rec.sample))
            scans, inten = prof.get(key, (np.zeros(0, dtype=int), np.zeros(0, dtype=float)))
            feats[str(rec.sample)] = Feature(
                sample=str(rec.sample),
                mz=float(rec.mz),
                rt=float(rec.rt),
                height=float(rec.height),
                scans=scans,
                intensities=inten,
                charge=int(rec.charge),
                fragment_scan=frag.get(key),
            )
        charges = [abs(int(c)) for c in g["charge"] if int(c) != 0]
        rows.append(Row(id=int(rid), features=feats, charge=max(charges) if charges else 0))
    samples = list(dict.fromkeys(df["sample"].tolist()))
    table = FeatureTable(rows, samples=samples)
    logger.info("Read %d rows with %d features in %d samples", len(table), len(df), len(samples))
    return table


def write_results(result, table: FeatureTable, out_dir: Path | str) -> Dict[str, Path]:
    """Write correlations, groups, identities and networks of a pipeline result as CSV files."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    frames = {
        "correlations": correlations_to_frame(result.correlations) if result.correlations is not None else None,
        "groups": groups_to_frame(result.groups),
        "identities": identities_to_frame(table),
        "networks": networks_to_frame(result.networks),
    }
    paths: Dict[str, Path] = {}
    for name, frame in frames.items():
        if frame is None:
            continue
        path = out_dir / f"{name}.csv"
        frame.to_csv(path, index=False)
        paths[name] = path
    return paths
