import pytest

from ion_networks.adduct_resolver import (
    AdductResolver,
    annotate_rows,
    check_multi_charge_difference,
    check_same_adducts,
    is_valid_candidate_pair,
    normalize_check_mode,
)
from ion_networks.errors import ConfigurationError
from ion_networks.ion_types import H, H2O, H2_2PLUS, NA, IonLibraryConfig, IonType, IonTypeLibrary, undefined_adduct
from ion_networks.lcms_utils import MZTolerance
from ion_networks.model import Feature, FeatureTable, Row


def _library(modifications=()):
    return IonTypeLibrary(
        IonLibraryConfig.from_names("positive", max_charge=1, max_molecules=1, adducts=["H", "NA"], modifications=modifications)
    )


def _names(row):
    return sorted(i.ion_type.to_string() for i in row.ion_identities)


def test_proton_and_sodium_pair_within_tolerance():
    resolver = AdductResolver(_library(), MZTolerance(mz=0.005, ppm=0), check_mode="average")
    row1 = Row(id=1, mz=301.0)
    row2 = Row(id=2, mz=322.9839)
    found = resolver.find_adducts(row1, row2)
    assert len(found) == 1
    a, b = found[0]
    assert a.ion_type == IonType(H)
    assert b.ion_type == IonType(NA)
    assert a.partners == {2: IonType(NA)}
    assert b.partners == {1: IonType(H)}


def test_pair_rejected_with_tight_tolerance():
    resolver = AdductResolver(_library(), MZTolerance(mz=0.0001, ppm=0), check_mode="average")
    row1 = Row(id=1, mz=301.0)
    row2 = Row(id=2, mz=322.9839)
    assert resolver.find_adducts(row1, row2) == []
    assert not row1.has_ion_identity and not row2.has_ion_identity


def test_find_adducts_is_mirror_symmetric():
    resolver = AdductResolver(_library(), MZTolerance(mz=0.005, ppm=0), check_mode="average")
    a1, a2 = Row(id=1, mz=301.0), Row(id=2, mz=322.9839)
    b1, b2 = Row(id=1, mz=301.0), Row(id=2, mz=322.9839)
    resolver.find_adducts(a1, a2)
    resolver.find_adducts(b2, b1)
    assert _names(a1) == _names(b1) == ["[M+H]+"]
    assert _names(a2) == _names(b2) == ["[M+Na]+"]


def test_modification_pair_anchors_on_undefined_adduct():
    resolver = AdductResolver(_library(["-H2O"]), MZTolerance(mz=0.005, ppm=0), check_mode="average")
    row1 = Row(id=1, mz=301.0)
    row2 = Row(id=2, mz=301.0 - 18.010565)
    resolver.find_adducts(row1, row2)
    assert _names(row1) == ["[M+?]+"]
    assert _names(row2) == ["[M-H2O+?]+"]
    assert row2.ion_identities[0].partners == {1: IonType(undefined_adduct(1))}


def test_feature_check_modes():
    def feats(mzs):
        return {s: Feature(sample=s, mz=mz, rt=5.0, height=1e6) for s, mz in mzs.items()}

    row1 = Row(id=1, features=feats({"s1": 301.0, "s2": 301.0}))
    row2 = Row(id=2, features=feats({"s1": 322.9839, "s2": 323.5}))
    tol = MZTolerance(mz=0.005, ppm=0)

    for mode, expected in (("one_feature", 1), ("all_features", 0), ("average", 0)):
        r1 = Row(id=1, features=row1.features)
        r2 = Row(id=2, features=row2.features)
        resolver = AdductResolver(_library(), tol, check_mode=mode)
        assert len(resolver.find_adducts(r1, r2)) == expected, mode


def test_low_features_are_ignored():
    row1 = Row(id=1, features={"s1": Feature(sample="s1", mz=301.0, rt=5.0, height=10.0)})
    row2 = Row(id=2, features={"s1": Feature(sample="s1", mz=322.9839, rt=5.0, height=1e6)})
    resolver = AdductResolver(_library(), MZTolerance(mz=0.005, ppm=0), check_mode="one_feature", min_height=1e3)
    assert resolver.find_adducts(row1, row2) == []


def test_detected_charge_restricts_ion_types():
    resolver = AdductResolver(_library(), MZTolerance(mz=0.005, ppm=0), check_mode="average")
    row1 = Row(id=1, mz=301.0, charge=2)
    row2 = Row(id=2, mz=322.9839)
    assert resolver.find_adducts(row1, row2) == []


def test_candidate_pair_rules():
    assert not is_valid_candidate_pair(IonType(H), IonType(H))
    assert not is_valid_candidate_pair(IonType(H), IonType(H, H2O))
    assert not is_valid_candidate_pair(IonType(H, None, 2), IonType(NA, None, 2))
    assert is_valid_candidate_pair(IonType(H, None, 2), IonType(NA))
    assert not is_valid_candidate_pair(IonType(NA, H2O), IonType(H, H2O))
    assert check_same_adducts(IonType(undefined_adduct(1)), IonType(undefined_adduct(1), H2O))
    assert not check_same_adducts(IonType(undefined_adduct(1)), IonType(H))
    assert not check_multi_charge_difference(IonType(NA, H2O), IonType(H2_2PLUS, H2O))
    assert check_multi_charge_difference(IonType(NA), IonType(H2_2PLUS))


def test_candidate_pairs_are_precomputed_in_both_orders():
    resolver = AdductResolver(_library(), MZTolerance())
    pairs = set(resolver.candidate_pairs)
    assert (IonType(H), IonType(NA)) in pairs
    assert (IonType(NA), IonType(H)) in pairs


def test_annotate_rows_over_all_pairs():
    table = FeatureTable([Row(id=1, mz=301.0), Row(id=2, mz=322.9839), Row(id=3, mz=777.0)])
    resolver = AdductResolver(_library(), MZTolerance(mz=0.005, ppm=0), check_mode="average")
    diag = annotate_rows(table, resolver)
    assert diag == {"n_annotated_pairs": 1, "n_ion_identities": 2}
    assert not table.row(3).has_ion_identity


def test_check_mode_names():
    assert normalize_check_mode("ONE") == "one_feature"
    assert normalize_check_mode("all features") == "all_features"
    with pytest.raises(ConfigurationError):
        normalize_check_mode("median")
