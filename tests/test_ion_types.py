import pytest

from ion_networks.errors import ConfigurationError
from ion_networks.ion_types import (
    H,
    H2O,
    HFA,
    NA,
    NH3,
    NH4,
    M_MINUS_2H,
    M_MINUS_H,
    IonLibraryConfig,
    IonModification,
    IonType,
    IonTypeLibrary,
    combine_modifications,
    generate_ion_types,
    undefined_adduct,
)


def test_library_generation_is_deterministic_and_unique():
    cfg = IonLibraryConfig.from_names("positive")
    lib = IonTypeLibrary(cfg)
    a = lib.generate()
    b = lib.generate()
    assert a == b
    assert len(set(a)) == len(a)


def test_library_has_undefined_anchor_per_charge():
    lib = IonTypeLibrary(IonLibraryConfig.from_names("positive", max_charge=2))
    types = set(lib.ion_types)
    assert IonType(undefined_adduct(1)) in types
    assert IonType(undefined_adduct(2)) in types
    assert IonType(undefined_adduct(1), H2O) in types


def test_library_respects_polarity_charge_and_molecules():
    lib = IonTypeLibrary(IonLibraryConfig.from_names("negative", max_charge=1, max_molecules=2))
    for t in lib.defined_ion_types():
        assert t.charge == -1
        assert 1 <= t.molecules <= 2
    assert IonType(M_MINUS_H, None, 2) in set(lib.ion_types)
    assert IonType(M_MINUS_2H) not in set(lib.ion_types)


def test_ammonium_with_ammonia_loss_is_excluded():
    lib = IonTypeLibrary(IonLibraryConfig.from_names("positive", adducts=["NH4", "H"], modifications=["-NH3"]))
    assert not any(t.adduct == NH4 and t.modification == NH3 for t in lib.ion_types)
    assert IonType(H, NH3) in set(lib.ion_types)


def test_adduct_modification_limit_filters_combinations():
    no_mods = IonModification("X", 10.0, 1, kind="adduct", modification_limit=0)
    cfg = IonLibraryConfig.from_names("positive", adducts=[no_mods, "H"], modifications=["-H2O", "+HFA"])
    types = generate_ion_types(cfg)
    assert not any(t.adduct == no_mods and t.has_mods for t in types)
    assert IonType(H, HFA) in set(types)


def test_ion_type_names():
    assert IonType(NA, H2O, 2).to_string() == "[2M-H2O+Na]+"
    assert IonType(M_MINUS_H).to_string() == "[M-H]-"
    assert IonType(M_MINUS_2H).to_string() == "[M-2H]2-"
    assert IonType(H, combine_modifications(H2O, H2O)).to_string() == "[M-2H2O+H]+"
    assert IonType(undefined_adduct(1), H2O).to_string() == "[M-H2O+?]+"


def test_neutral_mass_and_mz():
    t = IonType(H)
    assert t.neutral_mass(301.0) == pytest.approx(301.0 - 1.007276, abs=1e-6)
    dimer = IonType(NA, None, 2)
    assert dimer.mz(300.0) == pytest.approx(600.0 + 22.989218, abs=1e-6)
    assert dimer.neutral_mass(dimer.mz(300.0)) == pytest.approx(300.0)


def test_modification_relations():
    parent = IonType(undefined_adduct(1))
    loss = IonType(undefined_adduct(1), H2O)
    assert loss.is_modification_of(parent)
    assert not parent.is_modification_of(loss)
    assert loss.is_modified_undefined_adduct
    assert parent.is_undefined_adduct_parent

    double = IonType(H, combine_modifications(H2O, H2O))
    single = IonType(H, H2O)
    assert double.is_modification_of(single)
    assert double.subtract_mods(single) == single
    assert single.create_modified(H2O) == double
    assert IonType(NA, H2O, 2).create_modified(NH3).molecules == 2


def test_overlaps():
    assert IonType(H, H2O).has_adduct_overlap(IonType(H))
    assert not IonType(H).has_adduct_overlap(IonType(NA))
    assert IonType(H, H2O).has_modification_overlap(IonType(NA, H2O))
    assert not IonType(H).has_modification_overlap(IonType(NA, H2O))


def test_combined_modification_opposite():
    two = combine_modifications(H2O, NH3)
    opp = two.opposite()
    assert opp.mass == pytest.approx(-two.mass)
    assert opp.parts_count == 2


def test_invalid_library_config():
    with pytest.raises(ConfigurationError):
        IonLibraryConfig.from_names("positive", adducts=["NOPE"])
    with pytest.raises(ConfigurationError):
        IonTypeLibrary(IonLibraryConfig.from_names("positive", max_charge=0))
    with pytest.raises(ConfigurationError):
        IonTypeLibrary(IonLibraryConfig.from_names("positive", adducts=[]))
    with pytest.raises(ConfigurationError):
        IonLibraryConfig.from_names("neutral")


def test_library_frame():
    df = IonTypeLibrary(IonLibraryConfig.from_names("positive", max_charge=1, max_molecules=1)).to_frame()
    assert "[M+H]+" in set(df["ion_type"])
    assert "[M+?]+" in set(df["ion_type"])
