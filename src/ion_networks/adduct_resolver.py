from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, List, Literal, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError
from .ion_identity import IonIdentity, add_identity_pair
from .ion_types import IonType, IonTypeLibrary, undefined_adduct
from .lcms_utils import MZTolerance
from .model import FeatureTable, Row
from .tasks import TaskMonitor, is_canceled, run_parallel

if TYPE_CHECKING:  # pragma: no cover
    from .correlation import R2RCorrelationData, R2RMap
    from .grouping import RowGroup
    from .networks import IonNetwork

logger = logging.getLogger(__name__)

CheckMode = Literal["average", "one_feature", "all_features"]


def normalize_check_mode(mode: str) -> str:
    m = str(mode or "").strip().lower().replace(" ", "_").replace("-", "_")
    if m in {"average", "avg", "avgerage"}:
        return "average"
    if m in {"one_feature", "one"}:
        return "one_feature"
    if m in {"all_features", "all"}:
        return "all_features"
    raise ConfigurationError(f"Unsupported check mode: {mode!r} (expected average, one_feature or all_features).")


@dataclass(frozen=True)
class AnnotationConfig:
    mz_tolerance: MZTolerance = field(default_factory=MZTolerance)
    check_mode: str = "one_feature"
    # features below this height are ignored by the per-feature modes
    min_height: float = 0.0
    use_grouping_constraint: bool = True
    n_jobs: int = 1


def check_mol_count(a: IonType, b: IonType) -> bool:
    return a.molecules != b.molecules or (a.molecules == 1 and b.molecules == 1)


def check_max_mod(a: IonType, b: IonType) -> bool:
    return not (a.mod_count > 0 and b.mod_count > 0)


def check_charge_states(a: IonType, b: IonType, z1: int, z2: int) -> bool:
    return (z1 == 0 or a.abs_charge == z1) and (z2 == 0 or b.abs_charge == z2)


def check_multi_charge_difference(a: IonType, b: IonType) -> bool:
    """Different charges are only allowed without any shared adduct or modification part."""
    return a.charge == b.charge or (not a.has_modification_overlap(b) and not a.has_adduct_overlap(b))


def check_same_adducts(a: IonType, b: IonType) -> bool:
    """No shared adduct part unless both are `[M+?]` placeholders."""
    if a.is_undefined_adduct and b.is_undefined_adduct:
        return True
    return not a.has_adduct_overlap(b) and not a.is_undefined_adduct and not b.is_undefined_adduct


def is_valid_candidate_pair(a: IonType, b: IonType) -> bool:
    return (
        a != b
        and check_mol_count(a, b)
        and check_max_mod(a, b)
        and check_multi_charge_difference(a, b)
        and check_same_adducts(a, b)
    )


class AdductResolver:
    """Tests every ordered pair of candidate ion types between two rows."""

    def __init__(
        self,
        library: IonTypeLibrary,
        mz_tolerance: MZTolerance,
        *,
        check_mode: CheckMode | str = "one_feature",
        min_height: float = 0.0,
        samples: Optional[Sequence[str]] = None,
    ):
        self.library = library
        self.mz_tolerance = mz_tolerance
        self.check_mode = normalize_check_mode(check_mode)
        self.min_height = float(min_height)
        if not np.isfinite(self.min_height) or self.min_height < 0:
            raise ConfigurationError(f"min_height must be finite and >= 0, got {min_height!r}.")
        self.samples = list(samples) if samples is not None else None
        types = library.ion_types
        self._pairs: List[Tuple[IonType, IonType]] = [
            (a, b) for a in types for b in types if is_valid_candidate_pair(a, b)
        ]

    @classmethod
    def from_config(cls, library: IonTypeLibrary, cfg: AnnotationConfig, samples: Optional[Sequence[str]] = None) -> "AdductResolver":
        return cls(library, cfg.mz_tolerance, check_mode=cfg.check_mode, min_height=cfg.min_height, samples=samples)

    @property
    def candidate_pairs(self) -> List[Tuple[IonType, IonType]]:
        return list(self._pairs)

    def _samples_for(self, row1: Row, row2: Row) -> List[str]:
        if self.samples is not None:
            return self.samples
        out = list(row1.features)
        out.extend(s for s in row2.features if s not in row1.features)
        return out

    def check_adduct(self, row1: Row, row2: Row, a: IonType, b: IonType) -> bool:
        """Mass agreement of `row1` as `a` and `row2` as `b` under the check mode."""
        tol = self.mz_tolerance
        if self.check_mode == "average":
            return tol.check_within(a.neutral_mass(row1.average_mz), b.neutral_mass(row2.average_mz))

        has_common = False
        for s in self._samples_for(row1, row2):
            f1 = row1.feature(s)
            f2 = row2.feature(s)
            if f1 is None or f2 is None or f1.height < self.min_height or f2.height < self.min_height:
                continue
            has_common = True
            same = tol.check_within(a.neutral_mass(f1.mz), b.neutral_mass(f2.mz))
            if self.check_mode == "one_feature" and same:
                return True
            if self.check_mode == "all_features" and not same:
                return False
        return self.check_mode == "all_features" and has_common

    def find_adducts(
        self,
        row1: Row,
        row2: Row,
        *,
        z1: Optional[int] = None,
        z2: Optional[int] = None,
    ) -> List[Tuple[IonIdentity, IonIdentity]]:
        """
        Annotate both rows with every accepted pair of ion types.

        A pair where one type only adds modifications to the other is stored as
        `[M+?]` on the simpler row and the modification-only type on the other.
        Charges default to the rows' detected charges (0 = unknown).
        """
        z1 = abs(int(row1.detected_charge if z1 is None else z1))
        z2 = abs(int(row2.detected_charge if z2 is None else z2))
        found: List[Tuple[IonIdentity, IonIdentity]] = []
        for a, b in self._pairs:
            if not check_charge_states(a, b, z1, z2):
                continue
            if not self.check_adduct(row1, row2, a, b):
                continue
            if b.is_modification_of(a):
                found.append(add_identity_pair(row1, IonType(undefined_adduct(a.charge)), row2, b.subtract_mods(a)))
            elif a.is_modification_of(b):
                found.append(add_identity_pair(row1, a.subtract_mods(b), row2, IonType(undefined_adduct(b.charge))))
            else:
                found.append(add_identity_pair(row1, a, row2, b))
        return found

    def find_adducts_for_network(self, row: Row, network: "IonNetwork") -> Optional[IonIdentity]:
        """Add `row` to `network` with the first defined ion type that matches its neutral mass."""
        if network.contains(row.id):
            return None
        z = row.detected_charge
        neutral = network.neutral_mass
        for t in self.library.defined_ion_types():
            if z != 0 and t.abs_charge != z:
                continue
            if self.mz_tolerance.check_within(neutral, t.neutral_mass(row.average_mz)):
                ident = row.add_ion_identity(IonIdentity(t, row.id))
                if ident.network_id is not None and ident.network_id != network.id:
                    continue
                network.add_all_links_to(row, ident)
                network.put(row, ident)
                return ident
        return None


def _resolve_pairs(resolver: AdductResolver, table: FeatureTable, pairs: Iterable[Tuple[int, int]], monitor: Optional[TaskMonitor]) -> int:
    n = 0
    for a, b in pairs:
        if is_canceled(monitor):
            break
        r1 = table.get(a)
        r2 = table.get(b)
        if r1 is None or r2 is None:
            continue
        if resolver.find_adducts(r1, r2):
            n += 1
    return n


def annotate_rows(
    table: FeatureTable,
    resolver: AdductResolver,
    *,
    groups: Optional[Sequence["RowGroup"]] = None,
    corr_map: Optional["R2RMap[R2RCorrelationData]"] = None,
    n_jobs: int = 1,
    monitor: Optional[TaskMonitor] = None,
) -> dict:
    """
    Run the resolver over co-members of each group (in parallel per group) or,
    without groups, over the accepted correlation pairs, or else all row pairs.
    """
    if groups is not None:
        n_groups = len(groups)

        def unit(group: "RowGroup") -> int:
            if is_canceled(monitor):
                return 0
            ids = list(group.row_ids)
            pairs = [(ids[i], ids[j]) for i in range(len(ids)) for j in range(i + 1, len(ids))]
            res = _resolve_pairs(resolver, table, pairs, monitor)
            if monitor is not None and n_groups:
                monitor.add_stage_progress(1.0 / n_groups)
            return res

        n_pairs = int(sum(run_parallel(unit, list(groups), n_jobs=n_jobs)))
    else:
        if corr_map is not None:
            pairs = list(corr_map)
        else:
            ids = sorted(table.row_ids)
            pairs = [(ids[i], ids[j]) for i in range(len(ids)) for j in range(i + 1, len(ids))]
        # Pairs share rows, so they run sequentially.
        n_pairs = _resolve_pairs(resolver, table, pairs, monitor)
        if monitor is not None:
            monitor.set_stage_progress(1.0)

    n_ids = sum(len(r.ion_identities) for r in table)
    logger.info("Annotated %d row pairs with %d ion identities", n_pairs, n_ids)
    return {"n_annotated_pairs": int(n_pairs), "n_ion_identities": int(n_ids)}
