import networkx as nx

from ion_networks.correlation import R2RCorrelationData, R2RMap
from ion_networks.grouping import GroupingConfig, group_rows, groups_to_frame, refine_component
from ion_networks.model import FeatureTable, Row


def _accepted(a, b):
    return R2RCorrelationData(a, b, accepted=True)


def test_chain_forms_one_group():
    table = FeatureTable([Row(id=i) for i in (1, 2, 3, 4)])
    corr_map = R2RMap()
    corr_map.add(1, 2, _accepted(1, 2))
    corr_map.add(2, 3, _accepted(2, 3))
    groups, diag = group_rows(table, corr_map)
    assert len(groups) == 1
    assert groups[0].row_ids == (1, 2, 3)
    assert groups[0].edges == ((1, 2), (2, 3))
    assert table.row(1).group_id == table.row(3).group_id == 0
    assert table.row(4).group_id is None
    assert diag["n_grouped_rows"] == 3


def test_rejected_pairs_do_not_connect():
    table = FeatureTable([Row(id=i) for i in (1, 2, 3)])
    corr_map = R2RMap()
    corr_map.add(1, 2, _accepted(1, 2))
    corr_map.add(2, 3, R2RCorrelationData(2, 3, accepted=False))
    groups, _ = group_rows(table, corr_map)
    assert [g.row_ids for g in groups] == [(1, 2)]


def test_groups_are_numbered_by_lowest_row_id():
    table = FeatureTable([Row(id=i) for i in (1, 2, 3, 4)])
    corr_map = R2RMap()
    corr_map.add(3, 4, _accepted(3, 4))
    corr_map.add(1, 2, _accepted(1, 2))
    groups, _ = group_rows(table, corr_map)
    assert [(g.id, g.row_ids) for g in groups] == [(0, (1, 2)), (1, (3, 4))]
    df = groups_to_frame(groups)
    assert list(df["row_id"]) == [1, 2, 3, 4]


def test_weak_bridge_is_removed():
    g = nx.Graph()
    g.add_edge(1, 2, weight=0.2)
    g.add_edge(2, 3, weight=0.05)
    g.add_edge(3, 4, weight=0.2)
    parts = refine_component(g, {1, 2, 3, 4}, GroupingConfig(min_avg_correlation=0.5))
    assert sorted(sorted(p) for p in parts) == [[1, 2], [3, 4]]

    kept = refine_component(g, {1, 2, 3, 4}, GroupingConfig(min_avg_correlation=None))
    assert kept == [{1, 2, 3, 4}]


def test_cycles_are_not_split():
    g = nx.Graph()
    for a, b in ((1, 2), (2, 3), (3, 1)):
        g.add_edge(a, b, weight=0.1)
    parts = refine_component(g, {1, 2, 3}, GroupingConfig(min_avg_correlation=0.5))
    assert parts == [{1, 2, 3}]
