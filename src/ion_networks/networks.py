from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .ion_identity import IonIdentity
from .ion_types import H2O, IonModification, IonType
from .lcms_utils import MZTolerance
from .model import FeatureTable, Row
from .tasks import TaskMonitor, is_canceled

if TYPE_CHECKING:  # pragma: no cover
    from .adduct_resolver import AdductResolver

logger = logging.getLogger(__name__)

# Neutral masses are binned at 0.1 Da before the tolerance split.
BIN_RESOLUTION = 10.0
MAX_FILL_IN_ROUNDS = 100


def entry_neutral_mass(row: Row, identity: IonIdentity) -> float:
    return float(identity.ion_type.neutral_mass(row.average_mz))


@dataclass(frozen=True)
class IonNetworkRelation:
    """
    Link between two networks by neutral mass; `network_a` has the lower mass.

    kind="modified": the masses differ by `modification` (b = a + modification).
    kind="condensed": b is a condensed dimer of a (2·M_a + modification, e.g. -H2O).
    """

    network_a: int
    network_b: int
    kind: str  # "modified" | "condensed"
    modification: IonModification
    mass_difference: float

    def partner(self, network_id: int) -> int:
        return self.network_b if int(network_id) == self.network_a else self.network_a

    def describe(self, network_id: int) -> str:
        if self.kind == "condensed":
            if int(network_id) == self.network_b:
                return f"2M({self.network_a}){self.modification.parsed_name}"
            return f"M -> condensed in {self.network_b}"
        mod = self.modification if int(network_id) == self.network_b else self.modification.opposite()
        return f"M({self.partner(network_id)}){mod.parsed_name}"


class IonNetwork:
    """
    Row -> IonIdentity entries that all describe one neutral molecule.

    Derived values (neutral mass, deviation, RT, height) are cached; `put` and
    `remove` call `invalidate()` and the next read recomputes them.
    """

    def __init__(self, mz_tolerance: MZTolerance, network_id: Optional[int] = None):
        self.id = network_id
        self.mz_tolerance = mz_tolerance
        self._rows: Dict[int, Row] = {}
        self._entries: Dict[int, IonIdentity] = {}
        self._cache: Optional[Dict[str, float]] = None
        self.relations: List[IonNetworkRelation] = []

    # container --------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[int]:
        return iter(self._entries)

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._entries

    def contains(self, row_id: int) -> bool:
        return int(row_id) in self._entries

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def row_ids(self) -> List[int]:
        return sorted(self._entries)

    def identity(self, row_id: int) -> Optional[IonIdentity]:
        return self._entries.get(int(row_id))

    def row(self, row_id: int) -> Optional[Row]:
        return self._rows.get(int(row_id))

    def rows(self) -> List[Row]:
        return list(self._rows.values())

    def identities(self) -> List[IonIdentity]:
        return list(self._entries.values())

    def items(self) -> List[Tuple[Row, IonIdentity]]:
        return [(self._rows[rid], ident) for rid, ident in self._entries.items()]

    def put(self, row: Row, identity: IonIdentity) -> None:
        if identity.row_id != row.id:
            raise ValueError(f"Identity of row {identity.row_id} cannot be stored under row {row.id}.")
        old = self._entries.get(row.id)
        if old is not None and old is not identity:
            old.network_id = None
        self._rows[row.id] = row
        self._entries[row.id] = identity
        identity.network_id = self.id
        self.invalidate()

    def remove(self, row_id: int) -> Optional[IonIdentity]:
        ident = self._entries.pop(int(row_id), None)
        self._rows.pop(int(row_id), None)
        if ident is not None:
            if ident.network_id == self.id:
                ident.network_id = None
            self.invalidate()
        return ident

    def set_id(self, network_id: int) -> None:
        self.id = int(network_id)
        for ident in self._entries.values():
            ident.network_id = self.id

    def delete(self, table: Optional[FeatureTable] = None) -> None:
        """
        Empty the network and remove its identities from their rows.

        Partner links pointing back at the removed identities are cleared on
        rows inside this network and, if `table` is given, on any row.
        """
        for rid, ident in list(self._entries.items()):
            row = self._rows[rid]
            row.remove_ion_identity(ident)
            ident.network_id = None
            for pid, ptype in list(ident.partners.items()):
                prow = self._rows.get(pid)
                if prow is None and table is not None:
                    prow = table.get(pid)
                if prow is None:
                    continue
                pident = prow.find_identity(ptype)
                if pident is not None and pident.partners.get(rid) == ident.ion_type:
                    pident.remove_partner(rid)
        self._entries.clear()
        self._rows.clear()
        self.relations = []
        self.invalidate()

    # cached aggregates --------------------------------------------------------

    def invalidate(self) -> None:
        self._cache = None

    def recompute(self) -> Dict[str, float]:
        if not self._entries:
            self._cache = {
                "neutral_mass": float("nan"),
                "max_dev": float("nan"),
                "avg_rt": float("nan"),
                "height_sum": 0.0,
            }
            return self._cache
        masses = np.array([entry_neutral_mass(r, i) for r, i in self.items()], dtype=float)
        mean = float(masses.mean())
        rts = np.array([r.average_rt for r in self._rows.values()], dtype=float)
        rts = rts[np.isfinite(rts)]
        self._cache = {
            "neutral_mass": mean,
            "max_dev": float(np.max(np.abs(masses - mean))),
            "avg_rt": float(rts.mean()) if rts.size else float("nan"),
            "height_sum": float(sum(r.max_height for r in self._rows.values())),
        }
        return self._cache

    def _get(self, key: str) -> float:
        cache = self._cache if self._cache is not None else self.recompute()
        return cache[key]

    @property
    def neutral_mass(self) -> float:
        return self._get("neutral_mass")

    @property
    def max_dev(self) -> float:
        return self._get("max_dev")

    @property
    def avg_rt(self) -> float:
        return self._get("avg_rt")

    @property
    def height_sum(self) -> float:
        return self._get("height_sum")

    @property
    def lowest_row_id(self) -> int:
        return min(self._entries) if self._entries else -1

    # checks -------------------------------------------------------------------

    def check_for_annotation(self, row: Row, ion_type: IonType) -> bool:
        """True if `row` annotated as `ion_type` matches the network's neutral mass."""
        if not self._entries:
            return False
        return self.mz_tolerance.check_within(self.neutral_mass, ion_type.neutral_mass(row.average_mz))

    def check_all_within_mz_tolerance(self) -> bool:
        masses = [entry_neutral_mass(r, i) for r, i in self.items()]
        if len(masses) < 2:
            return True
        return self.mz_tolerance.check_within(min(masses), max(masses))

    def add_all_links_to(self, row: Row, identity: IonIdentity) -> int:
        """Link `identity` with every member whose neutral mass agrees; returns the number of links."""
        mass = entry_neutral_mass(row, identity)
        n = 0
        for rid, ident in self._entries.items():
            if rid == row.id:
                continue
            if self.mz_tolerance.check_within(mass, entry_neutral_mass(self._rows[rid], ident)):
                identity.add_partner(rid, ident.ion_type)
                ident.add_partner(row.id, identity.ion_type)
                n += 1
        return n

    def recalc_connections(self) -> None:
        """Make every member a partner of every other member."""
        items = self.items()
        for r1, i1 in items:
            for r2, i2 in items:
                if r1.id != r2.id:
                    i1.add_partner(r2.id, i2.ion_type)

    @property
    def group_id(self) -> Optional[int]:
        """The shared correlation group of all rows, or None if they differ or any is ungrouped."""
        ids = {r.group_id for r in self._rows.values()}
        if len(ids) != 1:
            return None
        return next(iter(ids))

    def all_same_group(self) -> bool:
        return self.group_id is not None

    def __repr__(self) -> str:
        return f"IonNetwork(id={self.id}, size={len(self)}, neutral_mass={self.neutral_mass:.4f})"


# ---------------------------------------------------------------------------
# Construction


def _clear_network_ids(table: FeatureTable) -> None:
    for row in table:
        for ident in row.ion_identities:
            ident.network_id = None


def bin_neutral_masses(table: FeatureTable, mz_tolerance: MZTolerance) -> List[IonNetwork]:
    """
    Provisional networks: every charged identity binned by neutral mass at 0.1 Da.

    A row appears at most once per network; its second identity in the same bin
    goes to another network of that bin.
    """
    bins: Dict[int, List[IonNetwork]] = {}
    for row in sorted(table, key=lambda r: r.id):
        for ident in row.ion_identities:
            if ident.ion_type.abs_charge == 0:
                continue
            mass = entry_neutral_mass(row, ident)
            if not np.isfinite(mass):
                continue
            key = int(round(mass * BIN_RESOLUTION))
            nets = bins.setdefault(key, [])
            target = next((n for n in nets if not n.contains(row.id)), None)
            if target is None:
                target = IonNetwork(mz_tolerance)
                nets.append(target)
            target.put(row, ident)
    return [n for nets in bins.values() for n in nets]


def split_by_tolerance(networks: Sequence[IonNetwork]) -> List[IonNetwork]:
    """Cut each network into runs of neutral masses within tolerance of the run's first mass."""
    out: List[IonNetwork] = []
    for net in networks:
        if net.check_all_within_mz_tolerance():
            out.append(net)
            continue
        entries = sorted(net.items(), key=lambda e: (entry_neutral_mass(*e), e[0].id))
        current: Optional[IonNetwork] = None
        first = float("nan")
        for row, ident in entries:
            m = entry_neutral_mass(row, ident)
            if current is None or not net.mz_tolerance.check_within(first, m):
                current = IonNetwork(net.mz_tolerance)
                out.append(current)
                first = m
            current.put(row, ident)
        logger.debug("Split network of %d entries by m/z tolerance", len(entries))
    return out


def split_by_groups(networks: Sequence[IonNetwork], table: Optional[FeatureTable] = None) -> List[IonNetwork]:
    """
    One network per correlation group.

    Identities of ungrouped rows are removed from their rows.
    """
    out: List[IonNetwork] = []
    for net in networks:
        if net.all_same_group():
            out.append(net)
            continue
        by_group: Dict[int, IonNetwork] = {}
        for row, ident in net.items():
            if row.group_id is None:
                net.remove(row.id)
                row.remove_ion_identity(ident)
                _drop_back_links(row.id, ident, table)
                continue
            sub = by_group.get(row.group_id)
            if sub is None:
                sub = by_group[row.group_id] = IonNetwork(net.mz_tolerance)
            sub.put(row, ident)
        if len(by_group) > 1:
            logger.debug("Split network into %d group networks", len(by_group))
        out.extend(by_group[g] for g in sorted(by_group))
    return out


def _drop_back_links(row_id: int, ident: IonIdentity, table: Optional[FeatureTable]) -> None:
    if table is None:
        return
    for pid, ptype in ident.partners.items():
        prow = table.get(pid)
        if prow is None:
            continue
        pident = prow.find_identity(ptype)
        if pident is not None and pident.partners.get(row_id) == ident.ion_type:
            pident.remove_partner(row_id)


def fill_in_neutral_losses(
    table: FeatureTable,
    networks: List[IonNetwork],
    mz_tolerance: MZTolerance,
    *,
    monitor: Optional[TaskMonitor] = None,
) -> int:
    """
    Move `[M-mod+?]` hypotheses into the networks of their partners.

    For each partner network, the partner's ion type with the modification
    added is tested on the row; on a match the row joins that network. A
    partner outside every network forms a new two-member network with the row.
    Repeats until nothing changes. New networks are appended to `networks`.
    Returns the number of entries added.
    """
    # Networks carry no ids yet, so membership is resolved through objects.
    owner: Dict[int, IonNetwork] = {}

    def reindex() -> None:
        owner.clear()
        for net in networks:
            for ident in net.identities():
                owner[id(ident)] = net

    added = 0
    for _ in range(MAX_FILL_IN_ROUNDS):
        if is_canceled(monitor):
            break
        reindex()
        changed = False
        for row in sorted(table, key=lambda r: r.id):
            for neutral in list(row.ion_identities):
                if not neutral.ion_type.is_modified_undefined_adduct:
                    continue
                mod = neutral.ion_type.modification
                for pid, ptype in list(neutral.partners.items()):
                    prow = table.get(pid)
                    if prow is None:
                        continue
                    in_nets = [(owner[id(i)], i) for i in prow.ion_identities if id(i) in owner]
                    if not in_nets:
                        pident = prow.find_identity(ptype)
                        if pident is None or id(neutral) in owner:
                            continue
                        net = IonNetwork(mz_tolerance)
                        net.put(row, neutral)
                        net.put(prow, pident)
                        networks.append(net)
                        owner[id(neutral)] = owner[id(pident)] = net
                        added += 2
                        changed = True
                        continue
                    for pnet, pident in in_nets:
                        if pnet.contains(row.id) or pident.ion_type.is_undefined_adduct:
                            continue
                        new_type = pident.ion_type.create_modified(mod)
                        if not pnet.check_for_annotation(row, new_type):
                            continue
                        ident = row.add_ion_identity(IonIdentity(new_type, row.id))
                        if id(ident) in owner:
                            continue
                        ident.copy_msms_evidence(neutral)
                        pnet.add_all_links_to(row, ident)
                        pnet.put(row, ident)
                        owner[id(ident)] = pnet
                        added += 1
                        changed = True
                        logger.debug("Filled in %s for row %d", new_type, row.id)
        if not changed:
            break
    else:
        logger.warning("Neutral loss fill-in stopped after %d rounds", MAX_FILL_IN_ROUNDS)
    return added


def reset_network_ids(networks: Sequence[IonNetwork]) -> List[IonNetwork]:
    """Dense ids 0..N-1 ordered by lowest row id, then neutral mass; returns the sorted list."""
    ordered = sorted(networks, key=lambda n: (n.lowest_row_id, n.neutral_mass, n.size))
    for i, net in enumerate(ordered):
        net.set_id(i)
    return ordered


def recalc_all_networks(
    networks: Sequence[IonNetwork],
    table: Optional[FeatureTable] = None,
    *,
    remove_empty: bool = True,
    min_size: int = 2,
) -> List[IonNetwork]:
    """
    Recompute every network, delete those smaller than `min_size`, link all
    members of the rest with each other, and renumber them.
    """
    kept: List[IonNetwork] = []
    n_deleted = 0
    for net in networks:
        if remove_empty and len(net) < int(min_size):
            net.delete(table)
            n_deleted += 1
            continue
        net.recompute()
        net.recalc_connections()
        kept.append(net)
    if n_deleted:
        logger.debug("Deleted %d networks smaller than %d", n_deleted, min_size)
    return reset_network_ids(kept)


def create_annotation_networks(
    table: FeatureTable,
    mz_tolerance: MZTolerance,
    *,
    use_grouping: bool = True,
    min_size: int = 2,
    monitor: Optional[TaskMonitor] = None,
) -> List[IonNetwork]:
    """Bin, split, fill in neutral losses, drop networks below `min_size`, and number the rest."""
    _clear_network_ids(table)
    networks = split_by_tolerance(bin_neutral_masses(table, mz_tolerance))
    if use_grouping:
        networks = split_by_groups(networks, table)
    n_filled = fill_in_neutral_losses(table, networks, mz_tolerance, monitor=monitor)
    networks = recalc_all_networks(networks, table, remove_empty=True, min_size=min_size)
    logger.info("Created %d ion networks (%d neutral loss entries filled in)", len(networks), n_filled)
    return networks


def add_rows_to_networks(
    table: FeatureTable,
    networks: Sequence[IonNetwork],
    resolver: "AdductResolver",
    *,
    monitor: Optional[TaskMonitor] = None,
) -> int:
    """
    Try every unannotated co-member of a network's correlation group as a new
    member of that network. Returns the number of rows added.
    """
    members: Dict[int, List[int]] = {}
    for row in table:
        if row.group_id is not None:
            members.setdefault(row.group_id, []).append(row.id)
    n = 0
    for net in networks:
        if is_canceled(monitor):
            break
        gid = net.group_id
        if gid is None:
            continue
        for rid in sorted(members.get(gid, [])):
            row = table.row(rid)
            if row.has_ion_identity or net.contains(rid):
                continue
            if resolver.find_adducts_for_network(row, net) is not None:
                n += 1
    if n:
        logger.info("Added %d rows to existing ion networks", n)
    return n


# ---------------------------------------------------------------------------
# Relations


def find_network_relations(
    networks: Sequence[IonNetwork],
    mz_tolerance: MZTolerance,
    modifications: Sequence[IonModification],
    *,
    condensation: IonModification = H2O,
) -> List[IonNetworkRelation]:
    """
    Relations between all network pairs; stored on both networks and returned.

    "modified": the neutral masses differ by one of `modifications`.
    "condensed": M_b = 2·M_a + condensation mass (a loss of water by default).
    """
    for net in networks:
        net.relations = []
    found: List[IonNetworkRelation] = []
    ordered = sorted((n for n in networks if len(n) > 0 and n.id is not None), key=lambda n: n.neutral_mass)
    for i, a in enumerate(ordered):
        ma = a.neutral_mass
        for b in ordered[i + 1 :]:
            mb = b.neutral_mass
            rel: Optional[IonNetworkRelation] = None
            if mz_tolerance.check_within(2.0 * ma + float(condensation.mass), mb):
                rel = IonNetworkRelation(int(a.id), int(b.id), "condensed", condensation, mb - ma)
            else:
                for mod in modifications:
                    m = abs(float(mod.mass))
                    if m > 0 and mz_tolerance.check_within(ma + m, mb):
                        chosen = mod if mod.mass > 0 else mod.opposite()
                        rel = IonNetworkRelation(int(a.id), int(b.id), "modified", chosen, mb - ma)
                        break
            if rel is not None:
                a.relations.append(rel)
                b.relations.append(rel)
                found.append(rel)
    if found:
        logger.info("Found %d relations between ion networks", len(found))
    return found


# ---------------------------------------------------------------------------
# Export


def networks_to_frame(networks: Sequence[IonNetwork]) -> pd.DataFrame:
    cols = [
        "network_id",
        "row_id",
        "ion_type",
        "neutral_mass",
        "network_size",
        "network_neutral_mass",
        "network_max_dev",
        "network_avg_rt",
        "group_id",
        "relations",
    ]
    out = []
    for net in networks:
        rel = ";".join(r.describe(int(net.id)) for r in net.relations) if net.id is not None else ""
        for row, ident in sorted(net.items(), key=lambda e: e[0].id):
            out.append(
                (
                    -1 if net.id is None else int(net.id),
                    int(row.id),
                    ident.ion_type.to_string(),
                    entry_neutral_mass(row, ident),
                    int(len(net)),
                    float(net.neutral_mass),
                    float(net.max_dev),
                    float(net.avg_rt),
                    -1 if row.group_id is None else int(row.group_id),
                    rel,
                )
            )
    return pd.DataFrame(out, columns=cols)


def identities_to_frame(table: FeatureTable) -> pd.DataFrame:
    cols = [
        "row_id",
        "mz",
        "rt",
        "ion_type",
        "neutral_mass",
        "network_id",
        "partner_rows",
        "msms_multimer_count",
        "msms_neutral_loss_count",
        "preferred",
    ]
    out = []
    for row in sorted(table, key=lambda r: r.id):
        for ident in row.ion_identities:
            out.append(
                (
                    int(row.id),
                    float(row.average_mz),
                    float(row.average_rt),
                    ident.ion_type.to_string(),
                    entry_neutral_mass(row, ident),
                    -1 if ident.network_id is None else int(ident.network_id),
                    ";".join(str(p) for p in ident.partner_ids),
                    int(ident.msms_multimer_count),
                    int(ident.msms_neutral_loss_count),
                    bool(row.preferred_identity is ident),
                )
            )
    return pd.DataFrame(out, columns=cols)
