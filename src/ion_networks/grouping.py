from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterator, List, Optional, Sequence, Set, Tuple

import networkx as nx
import numpy as np
import pandas as pd

from .correlation import R2RCorrelationData, R2RMap
from .errors import ConfigurationError
from .model import FeatureTable
from .tasks import TaskMonitor, is_canceled, run_parallel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupingConfig:
    # Components with a mean edge weight below this are split at their weakest bridge.
    # None disables the refinement.
    min_avg_correlation: Optional[float] = 0.5
    min_refinement_size: int = 3
    n_jobs: int = 1


@dataclass(frozen=True)
class RowGroup:
    """Rows connected by accepted correlations, with statistics over the internal edges."""

    id: int
    row_ids: Tuple[int, ...]
    edges: Tuple[Tuple[int, int], ...] = ()
    mean_correlation: float = float("nan")
    min_correlation: float = float("nan")
    max_correlation: float = float("nan")
    _members: FrozenSet[int] = field(default=frozenset(), repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_members", frozenset(int(r) for r in self.row_ids))

    def contains(self, row_id: int) -> bool:
        return int(row_id) in self._members

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._members

    def __len__(self) -> int:
        return len(self.row_ids)

    def __iter__(self) -> Iterator[int]:
        return iter(self.row_ids)

    @property
    def size(self) -> int:
        return len(self.row_ids)


def build_correlation_graph(corr_map: R2RMap[R2RCorrelationData]) -> nx.Graph:
    g = nx.Graph()
    for (a, b), r2r in corr_map.items():
        if not r2r.accepted:
            continue
        g.add_edge(int(a), int(b), weight=float(r2r.weight))
    return g


def _mean_weight(g: nx.Graph) -> float:
    w = [float(d["weight"]) for _, _, d in g.edges(data=True)]
    return float(np.mean(w)) if w else float("nan")


def refine_component(g: nx.Graph, nodes: Set[int], cfg: GroupingConfig) -> List[Set[int]]:
    """
    Split a connected component while its mean edge weight is below the threshold.

    Each step removes the weakest bridge (an edge whose removal disconnects the
    component) and continues on both halves. Components without bridges, or
    smaller than `min_refinement_size`, are kept as they are.
    """
    thr = cfg.min_avg_correlation
    out: List[Set[int]] = []
    stack = [set(nodes)]
    while stack:
        comp = stack.pop()
        if thr is None or len(comp) < int(cfg.min_refinement_size):
            out.append(comp)
            continue
        sub = g.subgraph(comp).copy()
        mean_w = _mean_weight(sub)
        if not np.isfinite(mean_w) or mean_w >= float(thr):
            out.append(comp)
            continue
        bridges = list(nx.bridges(sub))
        if not bridges:
            out.append(comp)
            continue
        u, v = min(bridges, key=lambda e: (float(sub.edges[e]["weight"]), min(e), max(e)))
        sub.remove_edge(u, v)
        logger.debug("Removed bridge %d-%d (mean weight %.3f < %.3f)", u, v, mean_w, float(thr))
        stack.extend(set(c) for c in nx.connected_components(sub))
    return out


def _group_stats(g: nx.Graph, nodes: Sequence[int]) -> Tuple[Tuple[Tuple[int, int], ...], float, float, float]:
    sub = g.subgraph(nodes)
    edges = tuple(sorted((min(a, b), max(a, b)) for a, b in sub.edges()))
    w = np.array([float(sub.edges[e]["weight"]) for e in edges], dtype=float)
    if w.size == 0:
        return edges, float("nan"), float("nan"), float("nan")
    return edges, float(w.mean()), float(w.min()), float(w.max())


def group_rows(
    table: FeatureTable,
    corr_map: R2RMap[R2RCorrelationData],
    cfg: GroupingConfig = GroupingConfig(),
    *,
    monitor: Optional[TaskMonitor] = None,
) -> Tuple[List[RowGroup], dict]:
    """
    Connected components of the accepted-correlation graph, refined by weakest-bridge removal.

    Sets `row.group_id` on every grouped row and clears it on all others.
    Groups are numbered densely by their lowest row id.
    """
    if cfg.min_avg_correlation is not None and not np.isfinite(float(cfg.min_avg_correlation)):
        raise ConfigurationError("cfg.min_avg_correlation must be finite or None.")
    g = build_correlation_graph(corr_map)
    components = [set(c) for c in nx.connected_components(g)]
    n_comp = len(components)

    def unit(comp: Set[int]) -> List[Set[int]]:
        if is_canceled(monitor):
            return [comp]
        parts = refine_component(g, comp, cfg)
        if monitor is not None and n_comp:
            monitor.add_stage_progress(1.0 / n_comp)
        return parts

    parts: List[Set[int]] = []
    for res in run_parallel(unit, components, n_jobs=cfg.n_jobs):
        parts.extend(p for p in res if len(p) >= 2)
    parts.sort(key=lambda p: min(p))

    table.clear_groups()
    groups: List[RowGroup] = []
    for gid, members in enumerate(parts):
        ids = tuple(sorted(int(r) for r in members))
        edges, mean_w, min_w, max_w = _group_stats(g, ids)
        groups.append(
            RowGroup(id=gid, row_ids=ids, edges=edges, mean_correlation=mean_w, min_correlation=min_w, max_correlation=max_w)
        )
        for rid in ids:
            row = table.get(rid)
            if row is not None:
                row.group_id = gid

    diag = {
        "n_components": int(n_comp),
        "n_groups": int(len(groups)),
        "n_grouped_rows": int(sum(len(x) for x in groups)),
        "n_split": int(len(parts) - sum(1 for c in components if len(c) >= 2)),
    }
    logger.info("Grouped %d rows into %d groups (%d components)", diag["n_grouped_rows"], diag["n_groups"], n_comp)
    return groups, diag


def groups_to_frame(groups: Sequence[RowGroup]) -> pd.DataFrame:
    rows = [
        (int(gr.id), int(rid), int(gr.size), float(gr.mean_correlation))
        for gr in groups
        for rid in gr.row_ids
    ]
    return pd.DataFrame(rows, columns=["group_id", "row_id", "group_size", "mean_correlation"])
