import pytest

from ion_networks.adduct_resolver import AdductResolver, annotate_rows
from ion_networks.correlation import R2RMap
from ion_networks.ion_identity import IonIdentity, add_identity_pair
from ion_networks.ion_types import H, H2O, K, NA, IonLibraryConfig, IonType, IonTypeLibrary
from ion_networks.lcms_utils import MZTolerance
from ion_networks.model import FeatureTable, Row
from ion_networks.networks import (
    IonNetwork,
    create_annotation_networks,
    find_network_relations,
    identities_to_frame,
    networks_to_frame,
    recalc_all_networks,
    reset_network_ids,
    split_by_tolerance,
)

TOL = MZTolerance(mz=0.005, ppm=0)
M = 300.0


def _resolver(adducts, modifications=()):
    lib = IonTypeLibrary(
        IonLibraryConfig.from_names("positive", max_charge=1, max_molecules=1, adducts=adducts, modifications=modifications)
    )
    return AdductResolver(lib, TOL, check_mode="average")


def _three_adducts():
    table = FeatureTable(
        [
            Row(id=1, mz=IonType(H).mz(M)),
            Row(id=2, mz=IonType(NA).mz(M)),
            Row(id=3, mz=IonType(K).mz(M)),
        ]
    )
    annotate_rows(table, _resolver(["H", "NA", "K"]))
    return table


def _network(network_id, neutral_mass, first_row_id):
    net = IonNetwork(MZTolerance(), network_id)
    for offset, t in enumerate((IonType(H), IonType(NA))):
        row = Row(id=first_row_id + offset, mz=t.mz(neutral_mass))
        net.put(row, row.add_ion_identity(IonIdentity(t, row.id)))
    return net


def test_each_identity_is_in_exactly_one_network():
    table = _three_adducts()
    networks = create_annotation_networks(table, TOL, use_grouping=False)
    assert len(networks) == 1
    net = networks[0]
    assert net.id == 0
    assert net.row_ids == [1, 2, 3]
    assert net.neutral_mass == pytest.approx(M)
    assert net.check_all_within_mz_tolerance()
    for row in table:
        for ident in row.ion_identities:
            holders = [n for n in networks if n.identity(row.id) is ident]
            assert len(holders) == 1
            assert ident.network_id == holders[0].id


def test_reset_network_ids_is_idempotent():
    table = _three_adducts()
    networks = create_annotation_networks(table, TOL, use_grouping=False)
    before = [(n.id, n.row_ids) for n in networks]
    again = reset_network_ids(networks)
    assert [(n.id, n.row_ids) for n in again] == before


def test_ungrouped_rows_are_dropped_when_splitting_by_group():
    table = _three_adducts()
    table.row(1).group_id = 0
    table.row(2).group_id = 0
    networks = create_annotation_networks(table, TOL, use_grouping=True)
    assert [n.row_ids for n in networks] == [[1, 2]]
    assert not table.row(3).has_ion_identity
    assert 3 not in table.row(1).ion_identities[0].partners


def test_single_member_network_is_deleted():
    row1 = Row(id=1, mz=IonType(H).mz(M))
    row2 = Row(id=2, mz=IonType(NA).mz(M))
    table = FeatureTable([row1, row2])
    a, b = add_identity_pair(row1, IonType(H), row2, IonType(NA))
    net = IonNetwork(TOL)
    net.put(row1, a)
    assert recalc_all_networks([net], table, min_size=2) == []
    assert not row1.has_ion_identity
    assert a.network_id is None
    assert b.partners == {}


def test_split_by_tolerance():
    net = IonNetwork(TOL)
    for rid, mass in ((1, 300.0), (2, 300.001), (3, 300.04)):
        row = Row(id=rid, mz=IonType(H).mz(mass))
        net.put(row, row.add_ion_identity(IonIdentity(IonType(H), rid)))
    assert not net.check_all_within_mz_tolerance()
    parts = split_by_tolerance([net])
    assert sorted(p.row_ids for p in parts) == [[1, 2], [3]]


def test_neutral_loss_is_filled_into_partner_network():
    table = FeatureTable(
        [
            Row(id=1, mz=IonType(H).mz(M)),
            Row(id=2, mz=IonType(NA).mz(M)),
            Row(id=3, mz=IonType(H, H2O).mz(M)),
        ]
    )
    # rows 2 and 3 are never compared directly
    pairs = R2RMap()
    pairs.add(1, 2, None)
    pairs.add(1, 3, None)
    annotate_rows(table, _resolver(["H", "NA"], ["-H2O"]), corr_map=pairs)
    assert [i.ion_type.to_string() for i in table.row(3).ion_identities] == ["[M-H2O+?]+"]

    networks = create_annotation_networks(table, TOL, use_grouping=False)
    filled = table.row(3).find_identity(IonType(H, H2O))
    assert filled is not None
    net = next(n for n in networks if n.id == filled.network_id)
    assert net.row_ids == [1, 2, 3]
    assert net.neutral_mass == pytest.approx(M)
    assert set(filled.partners) == {1, 2}
    # the modification-only hypothesis stays in its own network
    loss = table.row(3).find_identity(IonType(H, H2O).modified_only())
    assert loss is not None and loss.network_id is not None and loss.network_id != net.id


def test_network_relations():
    nets = [
        _network(0, 300.0, 1),
        _network(1, 300.0 + 18.010564684, 3),
        _network(2, 2 * 300.0 - 18.010564684, 5),
    ]
    rels = find_network_relations(nets, MZTolerance(), [H2O])
    kinds = sorted((r.network_a, r.network_b, r.kind) for r in rels)
    assert kinds == [(0, 1, "modified"), (0, 2, "condensed")]
    modified = next(r for r in rels if r.kind == "modified")
    assert modified.mass_difference == pytest.approx(18.010564684)
    assert modified.describe(1) == "M(0)+H2O"
    assert modified.describe(0) == "M(1)-H2O"
    assert len(nets[0].relations) == 2

    df = networks_to_frame(nets)
    assert set(df["network_id"]) == {0, 1, 2}
    assert df.loc[df["network_id"] == 1, "relations"].iloc[0] == "M(0)+H2O"


def test_identities_frame():
    table = _three_adducts()
    create_annotation_networks(table, TOL, use_grouping=False)
    df = identities_to_frame(table)
    assert list(df["ion_type"]) == ["[M+H]+", "[M+Na]+", "[M+K]+"]
    assert set(df["network_id"]) == {0}


def test_recalc_connections_links_all_members():
    net = _network(0, M, 1)
    assert all(ident.partners == {} for _, ident in net.items())
    net.recalc_connections()
    assert net.identity(1).partners == {2: IonType(NA)}
    assert net.identity(2).partners == {1: IonType(H)}
    assert net.group_id is None


def test_members_binned_together_are_all_linked():
    table = FeatureTable(
        [
            Row(id=1, mz=IonType(H).mz(M)),
            Row(id=2, mz=IonType(NA).mz(M)),
            Row(id=3, mz=IonType(K).mz(M)),
        ]
    )
    # rows 2 and 3 are only linked through row 1
    pairs = R2RMap()
    pairs.add(1, 2, None)
    pairs.add(1, 3, None)
    annotate_rows(table, _resolver(["H", "NA", "K"]), corr_map=pairs)
    assert set(table.row(2).find_identity(IonType(NA)).partners) == {1}

    networks = create_annotation_networks(table, TOL, use_grouping=False)
    assert [n.row_ids for n in networks] == [[1, 2, 3]]
    assert set(table.row(2).find_identity(IonType(NA)).partners) == {1, 3}
    assert table.row(3).find_identity(IonType(K)).links_to() == 2
