from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import numpy as np

from .errors import MissingMassListError
from .ion_identity import IonIdentity
from .ion_types import IonType


@dataclass(frozen=True, eq=False)
class FragmentScan:
    """A fragmentation (MS/MS) scan with named centroid mass lists of shape (n, 2): mz, intensity."""

    scan_number: int
    precursor_mz: float
    mass_lists: Mapping[str, np.ndarray] = field(default_factory=dict)

    def mass_list(self, name: str, *, row_id: int = -1) -> np.ndarray:
        dps = self.mass_lists.get(name)
        if dps is None:
            raise MissingMassListError(name, self.scan_number, row_id)
        arr = np.asarray(dps, dtype=float)
        if arr.size == 0:
            return np.zeros((0, 2), dtype=float)
        if arr.ndim != 2 or arr.shape[1] != 2:
            raise ValueError(f"Mass list {name!r} must have shape (n, 2), got {arr.shape}.")
        return arr


@dataclass(frozen=True, eq=False)
class Feature:
    """One detected chromatographic peak of a row in one sample."""

    sample: str
    mz: float
    rt: float
    height: float
    scans: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    intensities: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=float))
    charge: int = 0
    fragment_scan: Optional[FragmentScan] = None

    def __post_init__(self) -> None:
        scans = np.asarray(self.scans, dtype=int).reshape(-1)
        inten = np.asarray(self.intensities, dtype=float).reshape(-1)
        if scans.size != inten.size:
            raise ValueError(
                f"Feature profile of sample {self.sample!r} has {scans.size} scans but {inten.size} intensities."
            )
        order = np.argsort(scans, kind="mergesort")
        scans = scans[order]
        inten = inten[order]
        object.__setattr__(self, "scans", scans)
        object.__setattr__(self, "intensities", inten)

    @property
    def has_profile(self) -> bool:
        return int(self.scans.size) > 0


@dataclass(eq=False)
class Row:
    """
    Features of one compound aligned across samples.

    `mz`/`rt` override the averages computed from the features (feature tables
    usually carry their own consensus values).
    """

    id: int
    features: Dict[str, Feature] = field(default_factory=dict)
    mz: Optional[float] = None
    rt: Optional[float] = None
    charge: int = 0
    ion_identities: List[IonIdentity] = field(default_factory=list)
    group_id: Optional[int] = None
    preferred_identity: Optional[IonIdentity] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def average_mz(self) -> float:
        if self.mz is not None:
            return float(self.mz)
        if not self.features:
            return float("nan")
        return float(np.mean([f.mz for f in self.features.values()]))

    @property
    def average_rt(self) -> float:
        if self.rt is not None:
            return float(self.rt)
        if not self.features:
            return float("nan")
        return float(np.mean([f.rt for f in self.features.values()]))

    @property
    def samples(self) -> List[str]:
        return list(self.features)

    def feature(self, sample: str) -> Optional[Feature]:
        return self.features.get(sample)

    def height(self, sample: str) -> float:
        f = self.features.get(sample)
        return float("nan") if f is None else float(f.height)

    @property
    def best_feature(self) -> Optional[Feature]:
        if not self.features:
            return None
        return max(self.features.values(), key=lambda f: f.height)

    @property
    def max_height(self) -> float:
        best = self.best_feature
        return 0.0 if best is None else float(best.height)

    @property
    def best_fragment_scan(self) -> Optional[FragmentScan]:
        """Fragment scan of the highest feature that has one."""
        with_scan = [f for f in self.features.values() if f.fragment_scan is not None]
        if not with_scan:
            return None
        return max(with_scan, key=lambda f: f.height).fragment_scan

    @property
    def detected_charge(self) -> int:
        if int(self.charge) != 0:
            return abs(int(self.charge))
        best = self.best_feature
        return 0 if best is None else abs(int(best.charge))

    # ion identities -----------------------------------------------------

    @property
    def has_ion_identity(self) -> bool:
        return bool(self.ion_identities)

    def find_identity(self, ion_type: IonType) -> Optional[IonIdentity]:
        for ident in self.ion_identities:
            if ident.ion_type == ion_type:
                return ident
        return None

    def add_ion_identity(self, identity: IonIdentity) -> IonIdentity:
        """Append unless an identity of the same ion type exists; returns the stored one."""
        if identity.row_id != self.id:
            raise ValueError(f"Identity for row {identity.row_id} cannot be added to row {self.id}.")
        with self._lock:
            existing = self.find_identity(identity.ion_type)
            if existing is not None:
                return existing
            self.ion_identities.append(identity)
            return identity

    def remove_ion_identity(self, identity: IonIdentity) -> bool:
        with self._lock:
            for i, ident in enumerate(self.ion_identities):
                if ident is identity:
                    del self.ion_identities[i]
                    if self.preferred_identity is identity:
                        self.preferred_identity = None
                    return True
        return False

    def clear_ion_identities(self) -> None:
        with self._lock:
            self.ion_identities = []
            self.preferred_identity = None


class FeatureTable:
    """Arena of rows addressed by row id, plus the ordered sample names."""

    def __init__(self, rows: Iterable[Row], samples: Optional[Sequence[str]] = None):
        self._rows: Dict[int, Row] = {}
        for r in rows:
            if r.id in self._rows:
                raise ValueError(f"Duplicate row id: {r.id}")
            self._rows[int(r.id)] = r
        if samples is None:
            seen: Dict[str, None] = {}
            for r in self._rows.values():
                for s in r.features:
                    seen.setdefault(s, None)
            samples = list(seen)
        self.samples: List[str] = [str(s) for s in samples]

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self._rows.values())

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._rows

    def row(self, row_id: int) -> Row:
        return self._rows[int(row_id)]

    def get(self, row_id: int) -> Optional[Row]:
        return self._rows.get(int(row_id))

    @property
    def row_ids(self) -> List[int]:
        return list(self._rows)

    def clear_groups(self) -> None:
        for r in self._rows.values():
            r.group_id = None


def clear_ion_identities(table: FeatureTable) -> int:
    """Remove every ion identity from every row; returns the number of rows that had any."""
    n = 0
    for row in table:
        if row.has_ion_identity:
            row.clear_ion_identities()
            n += 1
    return n
