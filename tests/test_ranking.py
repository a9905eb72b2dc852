import itertools

from ion_networks.grouping import RowGroup
from ion_networks.ion_identity import IonIdentity, MSMSEvidence
from ion_networks.ion_types import H, H2O, H2_2PLUS, NA, IonType, undefined_adduct
from ion_networks.lcms_utils import MZTolerance
from ion_networks.model import FeatureTable, Row
from ion_networks.networks import IonNetwork
from ion_networks.ranking import IdentityRanker, compare_identities, get_best_network, set_preferred_identities


def _ident(ion_type, network_id=None, partners=(), multimer=0, neutral_loss=0):
    ident = IonIdentity(ion_type, 1)
    ident.network_id = network_id
    for pid in partners:
        ident.add_partner(pid, IonType(H))
    for _ in range(multimer):
        ident.add_msms_evidence(MSMSEvidence("multimer", 100.0, 1.0))
    for _ in range(neutral_loss):
        ident.add_msms_evidence(MSMSEvidence("neutral_loss", 100.0, 1.0))
    return ident


SIZES = {0: 3, 1: 2, 2: 2}


def test_undefined_parent_is_worst():
    parent = _ident(IonType(undefined_adduct(1)), network_id=0)
    defined = _ident(IonType(H), network_id=1)
    assert compare_identities(defined, parent, SIZES) > 0
    assert compare_identities(parent, None, SIZES) == 0
    assert compare_identities(None, defined, SIZES) < 0


def test_network_size_outranks_defined_adduct():
    loss = _ident(IonType(undefined_adduct(1), H2O), network_id=0)
    defined = _ident(IonType(NA), network_id=1)
    assert compare_identities(loss, defined, SIZES) > 0


def test_defined_adduct_wins_final_tie():
    loss = _ident(IonType(undefined_adduct(1), H2O), network_id=1)
    defined = _ident(IonType(NA), network_id=2)
    assert compare_identities(defined, loss, SIZES) > 0


def test_larger_network_wins():
    big = _ident(IonType(H), network_id=0)
    small = _ident(IonType(NA), network_id=1, partners=(5, 6, 7))
    assert compare_identities(big, small, SIZES) > 0


def test_multimer_needs_evidence():
    mono = _ident(IonType(H), network_id=1)
    dimer = _ident(IonType(NA, None, 2), network_id=2)
    assert compare_identities(mono, dimer, SIZES) > 0
    verified = _ident(IonType(NA, None, 2), network_id=2, multimer=1)
    assert compare_identities(verified, mono, SIZES) > 0


def test_neutral_loss_evidence_outranks_molecule_count():
    mono = _ident(IonType(H), network_id=1)
    dimer = _ident(IonType(H, None, 2), network_id=2, neutral_loss=1)
    assert compare_identities(dimer, mono, SIZES) > 0
    assert compare_identities(mono, dimer, SIZES) < 0
    # the larger network still comes first
    assert compare_identities(_ident(IonType(H), network_id=0), dimer, SIZES) > 0


def test_neutral_loss_evidence_on_its_own():
    plain = _ident(IonType(H), network_id=1, partners=(2, 3))
    verified = _ident(IonType(NA), network_id=2, neutral_loss=1)
    assert compare_identities(verified, plain, SIZES) > 0


def test_links_and_charge_break_ties():
    few = _ident(IonType(H), network_id=1, partners=(2,))
    many = _ident(IonType(NA), network_id=2, partners=(2, 3))
    assert compare_identities(many, few, SIZES) > 0
    group = RowGroup(id=0, row_ids=(1, 2))
    assert compare_identities(many, few, SIZES, group) == 0

    single = _ident(IonType(H), network_id=1)
    double = _ident(IonType(H2_2PLUS), network_id=2)
    assert compare_identities(single, double, SIZES) > 0


def test_comparison_is_antisymmetric():
    idents = [
        None,
        _ident(IonType(undefined_adduct(1)), network_id=0),
        _ident(IonType(undefined_adduct(1), H2O), network_id=1),
        _ident(IonType(H), network_id=0, partners=(2,)),
        _ident(IonType(NA), network_id=1, partners=(2, 3)),
        _ident(IonType(H, None, 2), network_id=2),
        _ident(IonType(NA, None, 2), network_id=2, multimer=2),
        _ident(IonType(H, H2O), network_id=1, neutral_loss=1),
        _ident(IonType(H2_2PLUS), network_id=1),
    ]
    for a, b in itertools.product(idents, repeat=2):
        assert compare_identities(a, b, SIZES) == -compare_identities(b, a, SIZES)


def test_sort_is_best_first():
    worst = _ident(IonType(undefined_adduct(1)), network_id=2)
    mid = _ident(IonType(NA), network_id=1)
    best = _ident(IonType(H), network_id=0)
    ranker = IdentityRanker()
    ranker.network_sizes = dict(SIZES)
    assert ranker.sort([worst, mid, best]) == [best, mid, worst]


def test_set_preferred_identities():
    row1 = Row(id=1, mz=IonType(H).mz(300.0))
    row2 = Row(id=2, mz=IonType(NA).mz(300.0))
    table = FeatureTable([row1, row2, Row(id=3, mz=500.0)])
    placeholder = row1.add_ion_identity(IonIdentity(IonType(undefined_adduct(1)), 1))
    proton = row1.add_ion_identity(IonIdentity(IonType(H), 1))
    sodium = row2.add_ion_identity(IonIdentity(IonType(NA), 2))
    net = IonNetwork(MZTolerance(), 0)
    net.put(row1, proton)
    net.put(row2, sodium)

    assert set_preferred_identities(table, [net]) == 2
    assert row1.preferred_identity is proton
    assert row1.ion_identities == [proton, placeholder]
    assert row2.preferred_identity is sodium
    assert table.row(3).preferred_identity is None
    assert get_best_network([net]) is net
