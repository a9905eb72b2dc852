from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal, Optional, Sequence, Tuple

import numpy as np

from .correlation import R2RMap
from .errors import ConfigurationError, MissingMassListError
from .grouping import RowGroup
from .ion_identity import IonIdentity, MSMSEvidence
from .ion_types import IonType
from .lcms_utils import MZTolerance
from .model import Feature, FeatureTable, Row
from .networks import IonNetwork
from .similarity import cosine
from .tasks import TaskMonitor, is_canceled, run_parallel

logger = logging.getLogger(__name__)

NeutralLossCheck = Literal["precursor", "any_signal"]


def normalize_neutral_loss_check(mode: str) -> str:
    m = str(mode or "").strip().lower().replace("-", "_").replace(" ", "_")
    if m in {"precursor", "any_signal"}:
        return m
    if m == "any":
        return "any_signal"
    raise ConfigurationError(f"Unsupported neutral loss check: {mode!r} (expected precursor or any_signal).")


@dataclass(frozen=True)
class MS2SimilarityConfig:
    mass_list: str = "centroid"
    mz_tolerance: MZTolerance = field(default_factory=lambda: MZTolerance(mz=0.003, ppm=10.0))
    min_height: float = 0.0
    # spectra with fewer signals are not compared
    min_dp: int = 3
    min_match: int = 3
    # signals used to build the mass difference spectrum
    max_dp_for_diff: int = 25
    # spectral cosine needed to count as MS/MS evidence between network members
    min_cosine: float = 0.7
    n_jobs: int = 1


@dataclass(frozen=True)
class MSMSCheckConfig:
    mass_list: str = "centroid"
    mz_tolerance: MZTolerance = field(default_factory=lambda: MZTolerance(mz=0.003, ppm=10.0))
    min_height: float = 0.0
    check_multimers: bool = True
    check_neutral_losses: bool = True
    neutral_loss_check: str = "precursor"
    n_jobs: int = 1


def validate_ms2_similarity_config(cfg: MS2SimilarityConfig) -> None:
    if not str(cfg.mass_list).strip():
        raise ConfigurationError("cfg.mass_list must be non-empty.")
    if int(cfg.min_dp) < 1 or int(cfg.min_match) < 1 or int(cfg.max_dp_for_diff) < 2:
        raise ConfigurationError("cfg.min_dp and cfg.min_match must be >= 1, cfg.max_dp_for_diff >= 2.")
    if not np.isfinite(float(cfg.min_height)) or float(cfg.min_height) < 0:
        raise ConfigurationError(f"cfg.min_height must be finite and >= 0, got {cfg.min_height!r}.")


def validate_msms_check_config(cfg: MSMSCheckConfig) -> None:
    if not str(cfg.mass_list).strip():
        raise ConfigurationError("cfg.mass_list must be non-empty.")
    normalize_neutral_loss_check(cfg.neutral_loss_check)
    if not np.isfinite(float(cfg.min_height)) or float(cfg.min_height) < 0:
        raise ConfigurationError(f"cfg.min_height must be finite and >= 0, got {cfg.min_height!r}.")


# ---------------------------------------------------------------------------
# Signal lookup


def find_dp_at(dps: np.ndarray, mz: float, tol: MZTolerance, min_height: float = 0.0) -> Optional[Tuple[float, float]]:
    """Most intense (mz, intensity) signal within tolerance of `mz` and at least `min_height`."""
    if dps.size == 0 or not np.isfinite(mz):
        return None
    lo, hi = tol.tolerance_range(mz)
    m = (dps[:, 0] >= lo) & (dps[:, 0] <= hi) & (dps[:, 1] >= float(min_height))
    if not np.any(m):
        return None
    sub = dps[m]
    i = int(np.argmax(sub[:, 1]))
    return float(sub[i, 0]), float(sub[i, 1])


# ---------------------------------------------------------------------------
# MS2 similarity


@dataclass(frozen=True)
class MS2Similarity:
    cosine: float
    overlap: int


@dataclass(eq=False)
class R2RMS2Similarity:
    """All spectrum and mass-difference similarities between the fragment scans of two rows."""

    row_a: int
    row_b: int
    spectral: List[MS2Similarity] = field(default_factory=list)
    mass_diff: List[MS2Similarity] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.spectral) + len(self.mass_diff)

    @property
    def max_spectral_cosine(self) -> float:
        return max((s.cosine for s in self.spectral), default=float("nan"))

    @property
    def avg_spectral_cosine(self) -> float:
        return float(np.mean([s.cosine for s in self.spectral])) if self.spectral else float("nan")

    @property
    def max_spectral_overlap(self) -> int:
        return max((s.overlap for s in self.spectral), default=0)

    @property
    def max_diff_cosine(self) -> float:
        return max((s.cosine for s in self.mass_diff), default=float("nan"))

    @property
    def max_diff_overlap(self) -> int:
        return max((s.overlap for s in self.mass_diff), default=0)


def align_spectra(a: np.ndarray, b: np.ndarray, tol: MZTolerance) -> List[Tuple[int, int]]:
    """Greedy one-to-one m/z alignment, most intense signals of `a` first; returns index pairs."""
    if a.size == 0 or b.size == 0:
        return []
    used = np.zeros(b.shape[0], dtype=bool)
    out: List[Tuple[int, int]] = []
    for i in np.argsort(-a[:, 1], kind="mergesort"):
        mz = float(a[i, 0])
        d = np.abs(b[:, 0] - mz)
        d[used] = np.inf
        j = int(np.argmin(d))
        if np.isfinite(d[j]) and tol.check_within(mz, float(b[j, 0])):
            used[j] = True
            out.append((int(i), j))
    return out


def mass_diff_spectrum(dps: np.ndarray, tol: MZTolerance, min_height: float, max_dp: int) -> np.ndarray:
    """Pairwise m/z differences of the `max_dp` most intense signals; intensity is the geometric mean."""
    if dps.size == 0:
        return np.zeros((0, 2), dtype=float)
    top = dps[dps[:, 1] >= float(min_height)]
    top = top[np.argsort(-top[:, 1], kind="mergesort")][: int(max_dp)]
    out = []
    for i in range(top.shape[0]):
        for j in range(i + 1, top.shape[0]):
            diff = abs(float(top[i, 0]) - float(top[j, 0]))
            if diff > tol.tolerance_at(diff):
                out.append((diff, float(np.sqrt(top[i, 1] * top[j, 1]))))
    if not out:
        return np.zeros((0, 2), dtype=float)
    arr = np.asarray(out, dtype=float)
    return arr[np.argsort(arr[:, 0], kind="mergesort")]


def _similarity(a: np.ndarray, b: np.ndarray, tol: MZTolerance, min_match: int) -> Optional[MS2Similarity]:
    pairs = align_spectra(a, b, tol)
    if len(pairs) < int(min_match):
        return None
    ia = np.array([a[i, 1] for i, _ in pairs], dtype=float)
    ib = np.array([b[j, 1] for _, j in pairs], dtype=float)
    return MS2Similarity(cosine=float(cosine(ia, ib)), overlap=len(pairs))


class SpectralSimilarityScorer:
    """Compares the fragment scans of all features of two rows."""

    def __init__(self, cfg: MS2SimilarityConfig = MS2SimilarityConfig()):
        validate_ms2_similarity_config(cfg)
        self.cfg = cfg

    def _spectra(self, row: Row) -> List[np.ndarray]:
        out = []
        for f in row.features.values():
            if f.fragment_scan is None:
                continue
            dps = f.fragment_scan.mass_list(self.cfg.mass_list, row_id=row.id)
            if dps.shape[0] >= int(self.cfg.min_dp):
                out.append(dps)
        return out

    def score(self, row_a: Row, row_b: Row) -> Optional[R2RMS2Similarity]:
        """Similarity record, or None when no spectrum pair reaches `min_match`."""
        cfg = self.cfg
        a, b = (row_a, row_b) if row_a.id <= row_b.id else (row_b, row_a)
        r2r = R2RMS2Similarity(a.id, b.id)
        specs_b = self._spectra(b)
        if not specs_b:
            return None
        diffs_b = [mass_diff_spectrum(s, cfg.mz_tolerance, cfg.min_height, cfg.max_dp_for_diff) for s in specs_b]
        for sa in self._spectra(a):
            diff_a = mass_diff_spectrum(sa, cfg.mz_tolerance, cfg.min_height, cfg.max_dp_for_diff)
            for sb, diff_b in zip(specs_b, diffs_b):
                spec = _similarity(sa, sb, cfg.mz_tolerance, cfg.min_match)
                if spec is not None:
                    r2r.spectral.append(spec)
                diff = _similarity(diff_a, diff_b, cfg.mz_tolerance, cfg.min_match)
                if diff is not None:
                    r2r.mass_diff.append(diff)
        return r2r if r2r.size > 0 else None


def _score_rows(scorer: SpectralSimilarityScorer, rows: Sequence[Row], out: R2RMap[R2RMS2Similarity], monitor: Optional[TaskMonitor]) -> int:
    n_missing = 0
    for i in range(len(rows)):
        for j in range(i + 1, len(rows)):
            if is_canceled(monitor):
                return n_missing
            try:
                sim = scorer.score(rows[i], rows[j])
            except MissingMassListError as e:
                logger.warning("No MS2 similarity for rows %d/%d: %s", rows[i].id, rows[j].id, e)
                n_missing += 1
                continue
            if sim is not None:
                out.add(sim.row_a, sim.row_b, sim)
    return n_missing


def check_rows_ms2_similarity(
    table: FeatureTable,
    cfg: MS2SimilarityConfig = MS2SimilarityConfig(),
    *,
    groups: Optional[Sequence[RowGroup]] = None,
    scorer: Optional[SpectralSimilarityScorer] = None,
    monitor: Optional[TaskMonitor] = None,
) -> Tuple[R2RMap[R2RMS2Similarity], dict]:
    """
    MS2 similarity of row pairs with fragment scans: within each group (groups
    in parallel) or, without groups, between all such rows.
    """
    scorer = scorer if scorer is not None else SpectralSimilarityScorer(cfg)
    out: R2RMap[R2RMS2Similarity] = R2RMap()
    with_scans = {r.id: r for r in table if r.best_fragment_scan is not None}
    if groups is None:
        units = [sorted(with_scans.values(), key=lambda r: r.id)]
    else:
        units = [[with_scans[rid] for rid in g.row_ids if rid in with_scans] for g in groups]
    n_units = len(units)

    def unit(rows: List[Row]) -> int:
        if is_canceled(monitor):
            return 0
        res = _score_rows(scorer, rows, out, monitor)
        if monitor is not None and n_units:
            monitor.add_stage_progress(1.0 / n_units)
        return res

    n_missing = int(sum(run_parallel(unit, units, n_jobs=cfg.n_jobs)))
    if monitor is not None:
        monitor.set_stage_progress(1.0)
    diag = {"n_rows_with_msms": int(len(with_scans)), "n_similar_pairs": int(len(out)), "n_missing_mass_lists": n_missing}
    logger.info("MS2 similarity: %d similar row pairs among %d rows with MS/MS", len(out), len(with_scans))
    return out, diag


def apply_ms2_similarity_evidence(
    networks: Sequence[IonNetwork],
    sim_map: R2RMap[R2RMS2Similarity],
    min_cosine: float = 0.7,
) -> int:
    """
    Count similar spectra between network members as MS/MS evidence.

    A multimer similar to a monomer gains multimer evidence; a modified ion
    similar to an unmodified one gains neutral loss evidence.
    Returns the number of evidence records added.
    """
    n = 0
    for net in networks:
        items = net.items()
        for r1, i1 in items:
            for r2, i2 in items:
                if r1.id == r2.id:
                    continue
                sim = sim_map.get(r1.id, r2.id)
                if sim is None:
                    continue
                cos = sim.max_spectral_cosine
                if not np.isfinite(cos) or cos < float(min_cosine):
                    continue
                t1, t2 = i1.ion_type, i2.ion_type
                if t1.molecules > 1 and t2.molecules == 1:
                    i1.add_msms_evidence(
                        MSMSEvidence("multimer", r2.average_mz, float("nan"), t2, r1.average_mz, r2.id, cos)
                    )
                    n += 1
                if t1.has_mods and not t2.has_mods:
                    i1.add_msms_evidence(
                        MSMSEvidence("neutral_loss", r1.average_mz, float("nan"), t1, r2.average_mz, r2.id, cos)
                    )
                    n += 1
    if n:
        logger.info("Added %d MS/MS evidence records from MS2 similarity", n)
    return n


# ---------------------------------------------------------------------------
# MS/MS verification of ion identities


def check_multimer_cluster(
    dps: np.ndarray,
    precursor_mz: float,
    ion_type: IonType,
    tol: MZTolerance,
    min_height: float = 0.0,
) -> List[MSMSEvidence]:
    """
    Signals of lower-order multimers in the fragment spectrum of a multimer.

    The precursor is taken as each of 2M..nM in turn; the hypothesis explaining
    the most signals wins.
    """
    types = [ion_type.with_molecules(m) for m in range(1, ion_type.molecules + 1)]
    best: List[MSMSEvidence] = []
    for i in range(1, len(types)):
        b = types[i]
        mass = b.neutral_mass(precursor_mz)
        found: List[MSMSEvidence] = []
        for a in types[:i]:
            dp = find_dp_at(dps, a.mz(mass), tol, min_height)
            if dp is not None:
                found.append(MSMSEvidence("multimer", dp[0], dp[1], a, float(precursor_mz)))
        if len(found) > len(best):
            best = found
    return best


def check_neutral_loss_signals(
    dps: np.ndarray,
    ion_type: IonType,
    tol: MZTolerance,
    min_height: float = 0.0,
) -> List[MSMSEvidence]:
    """Signal pairs in one spectrum that differ by the modification of `ion_type`."""
    z = max(1, ion_type.abs_charge)
    dmz = ion_type.mass_difference / z
    out: List[MSMSEvidence] = []
    for mz, inten in dps:
        hit = find_dp_at(dps, float(mz) - dmz, tol, min_height)
        if hit is not None and hit[0] != float(mz):
            out.append(MSMSEvidence("neutral_loss", float(mz), float(inten), ion_type, hit[0]))
    return out


def _precursor_mz(row: Row, feature: Optional[Feature]) -> float:
    if feature is not None and feature.fragment_scan is not None:
        p = float(feature.fragment_scan.precursor_mz)
        if np.isfinite(p):
            return p
        return float(feature.mz)
    return row.average_mz


ScanLists = Dict[int, List[Tuple[Feature, np.ndarray]]]
Pending = List[Tuple[IonIdentity, MSMSEvidence]]


def collect_mass_lists(rows: Iterable[Row], mass_list: str) -> Tuple[ScanLists, List[Tuple[int, str]]]:
    """
    Fragment scans that carry `mass_list`, per row id and most intense feature
    first. Features whose scan lacks the mass list are skipped and returned as
    (row id, sample) pairs.
    """
    scans: ScanLists = {}
    missing: List[Tuple[int, str]] = []
    for row in rows:
        feats = sorted((f for f in row.features.values() if f.fragment_scan is not None), key=lambda f: -f.height)
        usable = []
        for f in feats:
            try:
                usable.append((f, f.fragment_scan.mass_list(mass_list, row_id=row.id)))
            except MissingMassListError as e:
                logger.warning("Skipping MS/MS check of row %d in sample %s: %s", row.id, f.sample, e)
                missing.append((row.id, f.sample))
        if usable:
            scans[row.id] = usable
    return scans, missing


def check_multimers(row: Row, cfg: MSMSCheckConfig, scans: ScanLists) -> Pending:
    """Multimer evidence for the identities of `row` from the first of its scans that shows the monomer."""
    found: Pending = []
    for ident in row.ion_identities:
        if ident.ion_type.molecules < 2:
            continue
        for f, dps in scans.get(row.id, ()):
            hits = check_multimer_cluster(dps, f.mz, ident.ion_type, cfg.mz_tolerance, cfg.min_height)
            if hits:
                found.extend((ident, ev) for ev in hits)
                break
    return found


def check_neutral_losses(row: Row, table: FeatureTable, cfg: MSMSCheckConfig, scans: ScanLists) -> Pending:
    """
    Neutral loss evidence for the `[M-mod+?]` identities of `row`, looked up in
    the fragment scans of parent rows.

    Parents are the other rows of the correlation group or, for ungrouped rows,
    the identity's partner rows. With "precursor" the parent spectrum needs a
    fragment at the parent precursor shifted by the modification; "any_signal"
    also accepts any signal pair differing by the modification.
    """
    mode = normalize_neutral_loss_check(cfg.neutral_loss_check)
    if row.group_id is not None:
        group_rows = [r for r in table if r.group_id == row.group_id and r.id != row.id]
    else:
        group_rows = None
    found: Pending = []
    for ident in row.ion_identities:
        t = ident.ion_type
        if not t.is_modified_undefined_adduct:
            continue
        parents = group_rows
        if parents is None:
            parents = [p for p in (table.get(pid) for pid in ident.partner_ids) if p is not None]
        z = max(1, t.abs_charge)
        for parent in parents:
            usable = scans.get(parent.id)
            if not usable:
                continue
            feat, dps = usable[0]
            precursor = _precursor_mz(parent, feat)
            hit = find_dp_at(dps, precursor + t.mass_difference / z, cfg.mz_tolerance, cfg.min_height)
            if hit is not None:
                found.append((ident, MSMSEvidence("neutral_loss", hit[0], hit[1], t, precursor, parent.id)))
            if mode == "any_signal":
                for ev in check_neutral_loss_signals(dps, t, cfg.mz_tolerance, cfg.min_height):
                    found.append(
                        (ident, MSMSEvidence(ev.kind, ev.mz, ev.intensity, ev.ion_type, ev.parent_mz, parent.id))
                    )
    return found


def check_msms_evidence(
    table: FeatureTable,
    cfg: MSMSCheckConfig = MSMSCheckConfig(),
    *,
    monitor: Optional[TaskMonitor] = None,
) -> dict:
    """
    MS/MS verification for every annotated row. Scans without the configured
    mass list are skipped; a row's evidence is only stored once all of its
    checks are done.
    """
    validate_msms_check_config(cfg)
    rows = [r for r in table if r.has_ion_identity]
    scans, missing = collect_mass_lists(table, cfg.mass_list)

    def unit(row: Row) -> Tuple[int, int]:
        if is_canceled(monitor):
            return 0, 0
        multi: Pending = check_multimers(row, cfg, scans) if cfg.check_multimers else []
        loss: Pending = check_neutral_losses(row, table, cfg, scans) if cfg.check_neutral_losses else []
        for ident, ev in multi + loss:
            ident.add_msms_evidence(ev)
        return len({id(i) for i, _ in multi}), len({id(i) for i, _ in loss})

    counts = run_parallel(unit, rows, n_jobs=cfg.n_jobs)
    diag: Dict[str, int] = {
        "n_checked_rows": int(len(rows)),
        "n_multimer_verified": int(sum(c[0] for c in counts)),
        "n_neutral_loss_verified": int(sum(c[1] for c in counts)),
        "n_missing_mass_lists": int(len(missing)),
    }
    logger.info(
        "MS/MS check: %d multimer and %d neutral loss identities verified",
        diag["n_multimer_verified"],
        diag["n_neutral_loss_verified"],
    )
    return diag


def identities_with_msms_evidence(table: FeatureTable) -> List[IonIdentity]:
    return [i for r in table for i in r.ion_identities if i.msms_evidence]
