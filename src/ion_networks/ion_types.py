from __future__ import annotations

from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Dict, Iterable, List, Literal, Optional, Sequence, Tuple

import pandas as pd

from .errors import ConfigurationError
from .lcms_utils import ADDUCT_MASS_NEG, ADDUCT_MASS_POS, ELECTRON_MASS, NEUTRAL_MASS, normalize_polarity

ModificationKind = Literal["adduct", "undefined_adduct", "neutral_loss", "cluster", "isotope", "mixed"]


@dataclass(frozen=True)
class IonModification:
    """One mass-shifting component of an ion: an adduct or an in-source modification."""

    name: str
    mass: float
    charge: int = 0
    kind: str = "neutral_loss"
    modification_limit: int = -1  # -1: unlimited

    @property
    def parts(self) -> Tuple["IonModification", ...]:
        return (self,)

    @property
    def parts_count(self) -> int:
        return len(self.parts)

    @property
    def abs_charge(self) -> int:
        return abs(int(self.charge))

    @property
    def parsed_name(self) -> str:
        if self.kind == "undefined_adduct":
            return "+?"
        sign = "-" if self.mass < 0 else "+"
        return f"{sign}{self.name}"

    @property
    def has_modification_limit(self) -> bool:
        return int(self.modification_limit) >= 0

    def contains(self, other: "IonModification") -> bool:
        """True if every part of `other` is also a part of this modification (multiset)."""
        rest = list(self.parts)
        for p in other.parts:
            if p not in rest:
                return False
            rest.remove(p)
        return True

    def is_subset_of(self, other: "IonModification") -> bool:
        return other.contains(self)

    def overlaps(self, other: "IonModification") -> bool:
        return any(p in other.parts for p in self.parts)

    def remove(self, other: "IonModification") -> Optional["IonModification"]:
        """Multiset difference of parts; None if nothing is left."""
        rest = list(self.parts)
        for p in other.parts:
            if p in rest:
                rest.remove(p)
        if not rest:
            return None
        return combine_modifications(*rest)

    def opposite(self) -> "IonModification":
        return IonModification(
            name=self.name,
            mass=-float(self.mass),
            charge=-int(self.charge),
            kind=self.kind,
            modification_limit=self.modification_limit,
        )

    def __str__(self) -> str:
        return f"{self.parsed_name} ({self.mass:+.4f})"


@dataclass(frozen=True)
class CombinedIonModification(IonModification):
    components: Tuple[IonModification, ...] = field(default=())

    @property
    def parts(self) -> Tuple[IonModification, ...]:
        return self.components

    @property
    def parsed_name(self) -> str:
        return self.name

    def opposite(self) -> "IonModification":
        return combine_modifications(*[p.opposite() for p in self.components])


def _compressed_name(parts: Sequence[IonModification]) -> str:
    out: List[str] = []
    i = 0
    while i < len(parts):
        j = i
        while j + 1 < len(parts) and parts[j + 1] == parts[i]:
            j += 1
        n = j - i + 1
        p = parts[i]
        if p.kind == "undefined_adduct":
            out.append("+?")
        else:
            sign = "-" if p.mass < 0 else "+"
            out.append(f"{sign}{n if n > 1 else ''}{p.name}")
        i = j + 1
    return "".join(out)


def combine_modifications(*mods: IonModification) -> IonModification:
    """Flatten and sort parts; a single part is returned as-is."""
    parts: List[IonModification] = []
    for m in mods:
        parts.extend(m.parts)
    if not parts:
        raise ValueError("combine_modifications needs at least one modification.")
    if len(parts) == 1:
        return parts[0]
    parts.sort(key=lambda p: (p.mass >= 0, p.name, p.mass, p.charge))
    kinds = {p.kind for p in parts}
    limits = [int(p.modification_limit) for p in parts if int(p.modification_limit) >= 0]
    return CombinedIonModification(
        name=_compressed_name(parts),
        mass=float(sum(p.mass for p in parts)),
        charge=int(sum(p.charge for p in parts)),
        kind=kinds.pop() if len(kinds) == 1 else "mixed",
        modification_limit=min(limits) if limits else -1,
        components=tuple(parts),
    )


@lru_cache(maxsize=None)
def undefined_adduct(charge: int) -> IonModification:
    """Placeholder adduct `[M+?]` of a given signed charge, anchor for neutral-loss-only ions."""
    return IonModification(name="?", mass=0.0, charge=int(charge), kind="undefined_adduct")


@dataclass(frozen=True)
class IonType:
    """One ionization hypothesis: `[nM + modification + adduct]z`."""

    adduct: IonModification
    modification: Optional[IonModification] = None
    molecules: int = 1

    def __post_init__(self) -> None:
        if int(self.molecules) < 1:
            raise ValueError(f"molecules must be >= 1, got {self.molecules!r}.")

    @property
    def charge(self) -> int:
        return int(self.adduct.charge)

    @property
    def abs_charge(self) -> int:
        return abs(self.charge)

    @property
    def mass_difference(self) -> float:
        mass = float(self.adduct.mass)
        if self.modification is not None:
            mass += float(self.modification.mass)
        return mass

    @property
    def mod_count(self) -> int:
        return 0 if self.modification is None else self.modification.parts_count

    @property
    def has_mods(self) -> bool:
        return self.modification is not None

    @property
    def is_undefined_adduct(self) -> bool:
        return self.adduct.kind == "undefined_adduct"

    @property
    def is_modified_undefined_adduct(self) -> bool:
        return self.is_undefined_adduct and self.mod_count > 0

    @property
    def is_undefined_adduct_parent(self) -> bool:
        return self.is_undefined_adduct and self.mod_count == 0

    @property
    def name(self) -> str:
        mod = self.modification.parsed_name if self.modification is not None else ""
        return f"{mod}{self.adduct.parsed_name}"

    def neutral_mass(self, mz: float) -> float:
        return (float(mz) * self.abs_charge - self.mass_difference) / self.molecules

    def mz(self, neutral_mass: float) -> float:
        if self.abs_charge == 0:
            return float("nan")
        return (float(neutral_mass) * self.molecules + self.mass_difference) / self.abs_charge

    def with_molecules(self, molecules: int) -> "IonType":
        return replace(self, molecules=int(molecules))

    def create_modified(self, *mods: IonModification) -> "IonType":
        if not mods:
            raise ValueError("create_modified needs at least one modification.")
        existing = self.modification.parts if self.modification is not None else ()
        return IonType(self.adduct, combine_modifications(*mods, *existing), self.molecules)

    def subtract_mods(self, other: "IonType") -> "IonType":
        """This type with the modifications of `other` removed (unchanged if either has none)."""
        if self.modification is None or other.modification is None:
            return self
        return IonType(self.adduct, self.modification.remove(other.modification), self.molecules)

    def modified_only(self) -> "IonType":
        return IonType(undefined_adduct(self.charge), self.modification, 1)

    def is_modification_of(self, other: "IonType") -> bool:
        """Same adduct, charge and molecules; strictly more modifications that include all of `other`'s."""
        if not self.has_mods:
            return False
        if not (
            other.mod_count < self.mod_count
            and self.mass_difference != other.mass_difference
            and self.adduct == other.adduct
            and self.molecules == other.molecules
            and self.charge == other.charge
        ):
            return False
        if other.modification is None:
            return True
        return other.modification.is_subset_of(self.modification)

    def has_adduct_overlap(self, other: "IonType") -> bool:
        return self.adduct.overlaps(other.adduct)

    def has_modification_overlap(self, other: "IonType") -> bool:
        if self.modification is None or other.modification is None:
            return False
        return self.modification.overlaps(other.modification)

    def sort_key(self) -> Tuple[str, float, int]:
        return (self.name, self.mass_difference, self.molecules)

    def to_string(self, show_mass: bool = False) -> str:
        z = self.abs_charge
        zs = "" if z == 0 else f"{z if z > 1 else ''}{'-' if self.charge < 0 else '+'}"
        mol = str(self.molecules) if self.molecules > 1 else ""
        text = f"[{mol}M{self.name}]{zs}"
        if show_mass:
            text = f"{text} ({self.mass_difference:.4f})"
        return text

    def __str__(self) -> str:
        return self.to_string()


# ---------------------------------------------------------------------------
# Default adduct / modification tables


def _adduct(name: str, mass: float, charge: int, limit: int = -1) -> IonModification:
    return IonModification(name=name, mass=float(mass), charge=int(charge), kind="adduct", modification_limit=limit)


def _neutral(name: str, mass: float, kind: str = "neutral_loss", limit: int = -1) -> IonModification:
    return IonModification(name=name, mass=float(mass), charge=0, kind=kind, modification_limit=limit)


H = _adduct("H", ADDUCT_MASS_POS["H"], 1)
NA = _adduct("Na", ADDUCT_MASS_POS["NA"], 1)
K = _adduct("K", ADDUCT_MASS_POS["K"], 1)
NH4 = _adduct("NH4", ADDUCT_MASS_POS["NH4"], 1)
E_POS = _adduct("e", ADDUCT_MASS_POS["E"], 1)
H2_2PLUS = _adduct("2H", ADDUCT_MASS_POS["2H"], 2)
H_NA_2PLUS = _adduct("H+Na", ADDUCT_MASS_POS["H_NA"], 2)
H_NH4_2PLUS = _adduct("H+NH4", ADDUCT_MASS_POS["H_NH4"], 2)
NA2_2PLUS = _adduct("2Na", ADDUCT_MASS_POS["2NA"], 2)

M_MINUS_H = _adduct("H", ADDUCT_MASS_NEG["M_H"], -1)
E_NEG = _adduct("e", ELECTRON_MASS, -1)
CL = _adduct("Cl", ADDUCT_MASS_NEG["CL"], -1)
FORMATE = _adduct("HCOO", ADDUCT_MASS_NEG["FA"], -1)
ACETATE = _adduct("CH3COO", ADDUCT_MASS_NEG["AC"], -1)
NA_MINUS_2H = _adduct("Na-2H", ADDUCT_MASS_NEG["NA_2H"], -1)
M_MINUS_2H = _adduct("2H", ADDUCT_MASS_NEG["M_2H"], -2)

H2O = _neutral("H2O", -NEUTRAL_MASS["H2O"])
NH3 = _neutral("NH3", -NEUTRAL_MASS["NH3"])
CO = _neutral("CO", -NEUTRAL_MASS["CO"])
CO2 = _neutral("CO2", -NEUTRAL_MASS["CO2"])
H2O_GAIN = _neutral("H2O", NEUTRAL_MASS["H2O"], kind="cluster")
HFA = _neutral("HFA", NEUTRAL_MASS["HCOOH"], kind="cluster", limit=1)
HAC = _neutral("HAc", NEUTRAL_MASS["CH3COOH"], kind="cluster", limit=1)
MEOH = _neutral("MeOH", NEUTRAL_MASS["CH3OH"], kind="cluster", limit=1)
ACN = _neutral("ACN", NEUTRAL_MASS["CH3CN"], kind="cluster", limit=1)
ISOPROP = _neutral("IsoProp", NEUTRAL_MASS["C3H8O"], kind="cluster", limit=1)

DEFAULT_ADDUCTS: Dict[str, IonModification] = {
    "H": H,
    "NA": NA,
    "K": K,
    "NH4": NH4,
    "E+": E_POS,
    "2H": H2_2PLUS,
    "H_NA": H_NA_2PLUS,
    "H_NH4": H_NH4_2PLUS,
    "2NA": NA2_2PLUS,
    "M_H": M_MINUS_H,
    "E-": E_NEG,
    "CL": CL,
    "FA": FORMATE,
    "AC": ACETATE,
    "NA_2H": NA_MINUS_2H,
    "M_2H": M_MINUS_2H,
}

DEFAULT_MODIFICATIONS: Dict[str, IonModification] = {
    "-H2O": H2O,
    "-2H2O": combine_modifications(H2O, H2O),
    "-NH3": NH3,
    "-CO": CO,
    "-CO2": CO2,
    "+H2O": H2O_GAIN,
    "+HFA": HFA,
    "+HAC": HAC,
    "+MEOH": MEOH,
    "+ACN": ACN,
    "+ISOPROP": ISOPROP,
}

DEFAULT_SELECTED_ADDUCTS = {
    "positive": ("H", "NA", "K", "NH4", "2H", "H_NA"),
    "negative": ("M_H", "CL", "FA", "M_2H"),
}
DEFAULT_SELECTED_MODIFICATIONS = ("-H2O", "-2H2O", "-NH3", "-CO2")


def _lookup(table: Dict[str, IonModification], key: str, what: str) -> IonModification:
    k = str(key).strip().upper()
    for name, mod in table.items():
        if name.upper() == k:
            return mod
    raise ConfigurationError(f"Unknown {what}: {key!r} (known: {sorted(table)})")


def resolve_adducts(names: Iterable[str | IonModification]) -> Tuple[IonModification, ...]:
    return tuple(n if isinstance(n, IonModification) else _lookup(DEFAULT_ADDUCTS, n, "adduct") for n in names)


def resolve_modifications(names: Iterable[str | IonModification]) -> Tuple[IonModification, ...]:
    return tuple(
        n if isinstance(n, IonModification) else _lookup(DEFAULT_MODIFICATIONS, n, "modification") for n in names
    )


# ---------------------------------------------------------------------------
# Library generation


@dataclass(frozen=True)
class IonLibraryConfig:
    polarity: str = "positive"  # "positive" | "negative"
    max_charge: int = 2
    max_molecules: int = 3
    adducts: Tuple[IonModification, ...] = ()
    modifications: Tuple[IonModification, ...] = ()

    @classmethod
    def from_names(
        cls,
        polarity: str = "positive",
        *,
        max_charge: int = 2,
        max_molecules: int = 3,
        adducts: Optional[Sequence[str | IonModification]] = None,
        modifications: Optional[Sequence[str | IonModification]] = None,
    ) -> "IonLibraryConfig":
        pol = normalize_polarity(polarity)
        if adducts is None:
            adducts = DEFAULT_SELECTED_ADDUCTS[pol]
        if modifications is None:
            modifications = DEFAULT_SELECTED_MODIFICATIONS
        return cls(
            polarity=pol,
            max_charge=int(max_charge),
            max_molecules=int(max_molecules),
            adducts=resolve_adducts(adducts),
            modifications=resolve_modifications(modifications),
        )


def validate_library_config(cfg: IonLibraryConfig) -> None:
    normalize_polarity(cfg.polarity)
    if int(cfg.max_charge) < 1:
        raise ConfigurationError(f"max_charge must be >= 1, got {cfg.max_charge!r}.")
    if int(cfg.max_molecules) < 1:
        raise ConfigurationError(f"max_molecules must be >= 1, got {cfg.max_molecules!r}.")
    if not cfg.adducts:
        raise ConfigurationError("At least one adduct must be selected.")


def _is_filtered(ion: IonType, mod: IonModification) -> bool:
    add = ion.adduct
    # [M-NH3+NH4]+ is the same as [M+H]+
    nh4_with_nh3_loss = any(p.name.upper() == "NH4" for p in add.parts) and any(
        p.name.upper() == "NH3" and p.mass < 0 for p in mod.parts
    )
    n_mods = ion.mod_count + mod.parts_count
    adduct_limit = add.has_modification_limit and n_mods > int(add.modification_limit)
    mod_limit = mod.has_modification_limit and n_mods > int(mod.modification_limit)
    existing = ion.modification
    existing_limit = (
        existing is not None and existing.has_modification_limit and n_mods > int(existing.modification_limit)
    )
    return nh4_with_nh3_loss or adduct_limit or mod_limit or existing_limit


@lru_cache(maxsize=64)
def generate_ion_types(cfg: IonLibraryConfig) -> Tuple[IonType, ...]:
    """
    All candidate ion types for a configuration, deduplicated, in generation order:
      1. `[M+?]` placeholders for charges 1..max_charge
      2. every polarity-matching adduct with |z| <= max_charge for 1..max_molecules
      3. every type of (1) and (2) combined with each selected modification, unless filtered
    """
    validate_library_config(cfg)
    positive = normalize_polarity(cfg.polarity) == "positive"
    sign = 1 if positive else -1

    out: List[IonType] = []
    seen = set()

    def add(ion: IonType) -> None:
        if ion not in seen:
            seen.add(ion)
            out.append(ion)

    for c in range(1, int(cfg.max_charge) + 1):
        add(IonType(undefined_adduct(sign * c)))

    for a in cfg.adducts:
        if (a.charge > 0 and positive) or (a.charge < 0 and not positive):
            if a.abs_charge <= int(cfg.max_charge):
                for n in range(1, int(cfg.max_molecules) + 1):
                    add(IonType(a, None, n))

    base = list(out)
    for ion in base:
        for mod in cfg.modifications:
            if not _is_filtered(ion, mod):
                add(ion.create_modified(mod))
    return tuple(out)


class IonTypeLibrary:
    """Candidate ion types for one configuration; generation is memoized per config."""

    def __init__(self, cfg: IonLibraryConfig):
        validate_library_config(cfg)
        self.cfg = cfg

    @property
    def is_positive(self) -> bool:
        return normalize_polarity(self.cfg.polarity) == "positive"

    @property
    def ion_types(self) -> Tuple[IonType, ...]:
        return generate_ion_types(self.cfg)

    def generate(self) -> List[IonType]:
        return list(generate_ion_types(self.cfg))

    def defined_ion_types(self) -> List[IonType]:
        return [t for t in self.ion_types if not t.is_undefined_adduct]

    def __len__(self) -> int:
        return len(self.ion_types)

    def __iter__(self):
        return iter(self.ion_types)

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "ion_type": t.to_string(),
                "mass_difference": float(t.mass_difference),
                "charge": int(t.charge),
                "molecules": int(t.molecules),
                "mod_count": int(t.mod_count),
                "undefined_adduct": bool(t.is_undefined_adduct),
            }
            for t in self.ion_types
        ]
        return pd.DataFrame(rows, columns=["ion_type", "mass_difference", "charge", "molecules", "mod_count", "undefined_adduct"])
