from __future__ import annotations

import logging
from functools import cmp_to_key
from typing import Dict, List, Mapping, Optional, Sequence

from .grouping import RowGroup
from .ion_identity import IonIdentity
from .model import FeatureTable, Row
from .networks import IonNetwork

logger = logging.getLogger(__name__)


def _sign(x: int) -> int:
    return (x > 0) - (x < 0)


def _is_worst(ident: Optional[IonIdentity]) -> bool:
    return ident is None or ident.ion_type.is_undefined_adduct_parent


def compare_identities(
    a: Optional[IonIdentity],
    b: Optional[IonIdentity],
    network_sizes: Mapping[int, int],
    group: Optional[RowGroup] = None,
) -> int:
    """
    Positive if `a` is the more likely identity, negative if `b` is, 0 for a tie.

    Order of criteria:
      1. a missing identity or a `[M+?]` parent is worst
      2. larger network
      3. a multimer with MS/MS multimer evidence beats fewer molecules
      4. MS/MS neutral loss evidence beats none
      5. fewer molecules
      6. more partner links (only partners inside `group` if given)
      7. lower absolute charge
      8. a defined adduct beats a `[M-mod+?]` identity
    """
    wa, wb = _is_worst(a), _is_worst(b)
    if wa or wb:
        return _sign(int(wb) - int(wa))
    assert a is not None and b is not None

    sa = network_sizes.get(a.network_id, 0) if a.network_id is not None else 0
    sb = network_sizes.get(b.network_id, 0) if b.network_id is not None else 0
    if sa != sb:
        return _sign(sa - sb)

    ma, mb = a.ion_type.molecules, b.ion_type.molecules
    if ma > mb and a.msms_multimer_count > 0:
        return 1
    if mb > ma and b.msms_multimer_count > 0:
        return -1

    na, nb = a.msms_neutral_loss_count > 0, b.msms_neutral_loss_count > 0
    if na != nb:
        return 1 if na else -1

    if ma != mb:
        return _sign(mb - ma)

    la, lb = a.links_to(group), b.links_to(group)
    if la != lb:
        return _sign(la - lb)

    ca, cb = a.ion_type.abs_charge, b.ion_type.abs_charge
    if ca != cb:
        return _sign(cb - ca)

    ua, ub = a.ion_type.is_undefined_adduct, b.ion_type.is_undefined_adduct
    return _sign(int(ub) - int(ua))


class IdentityRanker:
    """Deterministic total order over competing identities of one row."""

    def __init__(self, networks: Sequence[IonNetwork] = (), group: Optional[RowGroup] = None):
        self.network_sizes: Dict[int, int] = {int(n.id): len(n) for n in networks if n.id is not None}
        self.group = group

    def compare(self, a: Optional[IonIdentity], b: Optional[IonIdentity]) -> int:
        return compare_identities(a, b, self.network_sizes, self.group)

    def sort(self, identities: Sequence[IonIdentity]) -> List[IonIdentity]:
        """Best first; full ties keep a stable order by ion type name."""

        def cmp(a: IonIdentity, b: IonIdentity) -> int:
            c = self.compare(b, a)
            if c != 0:
                return c
            ka, kb = a.ion_type.sort_key(), b.ion_type.sort_key()
            return (ka > kb) - (ka < kb)

        return sorted(identities, key=cmp_to_key(cmp))

    def most_likely(self, row: Row) -> Optional[IonIdentity]:
        if not row.ion_identities:
            return None
        return self.sort(row.ion_identities)[0]


def set_preferred_identities(
    table: FeatureTable,
    networks: Sequence[IonNetwork],
    groups: Optional[Sequence[RowGroup]] = None,
) -> int:
    """
    Sort each row's identities best-first and store the best as preferred.

    With `groups`, link counts only consider partners in the row's group.
    Returns the number of rows with a preferred identity.
    """
    by_id = {g.id: g for g in groups} if groups is not None else {}
    plain = IdentityRanker(networks)
    n = 0
    for row in table:
        if not row.ion_identities:
            row.preferred_identity = None
            continue
        group = by_id.get(row.group_id) if row.group_id is not None else None
        ranker = plain if group is None else IdentityRanker(networks, group)
        ordered = ranker.sort(row.ion_identities)
        row.ion_identities = ordered
        row.preferred_identity = ordered[0]
        n += 1
    logger.info("Set preferred ion identities for %d rows", n)
    return n


def get_best_network(networks: Sequence[IonNetwork], group: Optional[RowGroup] = None) -> Optional[IonNetwork]:
    """Largest network (lowest id on ties), restricted to networks of `group` if given."""
    cands = [n for n in networks if len(n) > 0]
    if group is not None:
        cands = [n for n in cands if n.group_id == group.id]
    if not cands:
        return None
    return max(cands, key=lambda n: (len(n), -(n.id if n.id is not None else 0)))
