from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .ion_types import IonType

if TYPE_CHECKING:  # pragma: no cover
    from .grouping import RowGroup
    from .model import Row


@dataclass(frozen=True)
class MSMSEvidence:
    """One MS/MS observation backing an ion identity."""

    kind: str  # "multimer" | "neutral_loss" | "ms2_similarity"
    mz: float
    intensity: float
    ion_type: Optional[IonType] = None
    parent_mz: float = float("nan")
    partner_row: int = -1
    score: float = float("nan")

    @property
    def mz_difference(self) -> float:
        return float(self.parent_mz) - float(self.mz)


class IonIdentity:
    """
    Assignment of an ion type to one row.

    Rows and networks are addressed by integer id: `row_id` is the owning row,
    `partners` maps partner row id -> the partner's ion type, `network_id` is the
    network that currently holds this identity (None if it is in no network).
    """

    def __init__(self, ion_type: IonType, row_id: int):
        self.ion_type = ion_type
        self.row_id = int(row_id)
        self.partners: Dict[int, IonType] = {}
        self.network_id: Optional[int] = None
        self.msms_multimer_count = 0
        self.msms_neutral_loss_count = 0
        self.msms_evidence: List[MSMSEvidence] = []

    @property
    def partner_ids(self) -> Tuple[int, ...]:
        return tuple(sorted(self.partners))

    @property
    def is_charged(self) -> bool:
        return self.ion_type.abs_charge > 0

    def add_partner(self, row_id: int, ion_type: IonType) -> None:
        self.partners[int(row_id)] = ion_type

    def remove_partner(self, row_id: int) -> None:
        self.partners.pop(int(row_id), None)

    def links_to(self, group: Optional["RowGroup"] = None) -> int:
        """Number of partner rows, optionally only those inside `group`."""
        if group is None:
            return len(self.partners)
        return sum(1 for pid in self.partners if group.contains(pid))

    def add_msms_evidence(self, evidence: MSMSEvidence) -> None:
        self.msms_evidence.append(evidence)
        if evidence.kind == "multimer":
            self.msms_multimer_count += 1
        elif evidence.kind == "neutral_loss":
            self.msms_neutral_loss_count += 1
        elif evidence.kind != "ms2_similarity":
            raise ValueError(f"Unsupported MS/MS evidence kind: {evidence.kind!r}")

    def copy_msms_evidence(self, other: "IonIdentity") -> None:
        for ev in other.msms_evidence:
            self.add_msms_evidence(ev)

    def __repr__(self) -> str:
        net = "-" if self.network_id is None else str(self.network_id)
        return f"IonIdentity({self.ion_type}, row={self.row_id}, partners={list(self.partner_ids)}, net={net})"


def add_identity_pair(row1: "Row", type1: IonType, row2: "Row", type2: IonType) -> Tuple[IonIdentity, IonIdentity]:
    """Get or create the identities of both rows and link them as partners."""
    a = row1.add_ion_identity(IonIdentity(type1, row1.id))
    b = row2.add_ion_identity(IonIdentity(type2, row2.id))
    a.add_partner(row2.id, type2)
    b.add_partner(row1.id, type1)
    return a, b
