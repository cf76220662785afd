from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple, Union

from .interval import GenomicInterval

# SAM CIGAR letters grouped by which coordinates they consume.
REF_AND_QUERY_OPS = frozenset("M=X")
REF_ONLY_OPS = frozenset("DN")
QUERY_ONLY_OPS = frozenset("IS")
NON_CONSUMING_OPS = frozenset("HP")

_CIGAR_RE = re.compile(r"(\d+)([^\d])")


@dataclass(frozen=True)
class CigarOperation:
    """One length-tagged CIGAR instruction, e.g. ``CigarOperation("M", 10)``.

    ``op`` is a SAM letter; letters outside ``MIDNSHP=X`` are kept as-is and treated
    as unknown by the cache.
    """

    op: str
    length: int


def parse_cigar(cigar: str) -> Tuple[CigarOperation, ...]:
    """Parse a CIGAR string such as ``"5S10M2I3M"``."""
    if cigar in ("", "*"):
        return ()
    ops = tuple(CigarOperation(op, int(n)) for n, op in _CIGAR_RE.findall(cigar))
    if sum(len(f"{o.length}{o.op}") for o in ops) != len(cigar):
        raise ValueError(f"Malformed CIGAR string: {cigar!r}")
    return ops


@dataclass(frozen=True)
class Alignment:
    """An aligned read.

    Attributes
    ----------
    interval:
        Reference span covered by the read (closed, 0-based).
    strand:
        '+' or '-'.
    cigar_ops:
        Ordered CIGAR operations describing how the read maps onto the reference.
    seq:
        Read bases including soft-clipped bases. May be empty when the source did
        not store a sequence; such reads contribute depth but no base evidence.
    name:
        Read name (informational only).
    """

    interval: GenomicInterval
    strand: str
    cigar_ops: Tuple[CigarOperation, ...]
    seq: str = ""
    name: str = ""

    def sequence(self) -> str:
        return self.seq or ""

    @classmethod
    def from_cigar_string(
        cls,
        interval: GenomicInterval,
        cigar: str,
        seq: str = "",
        *,
        strand: str = "+",
        name: str = "",
    ) -> "Alignment":
        return cls(interval=interval, strand=strand, cigar_ops=parse_cigar(cigar), seq=seq, name=name)

    @classmethod
    def matched(
        cls,
        interval: GenomicInterval,
        seq: str,
        *,
        strand: str = "+",
        name: str = "",
    ) -> "Alignment":
        """A gapless read covering ``interval`` with a single match operation."""
        ops: Sequence[CigarOperation] = (CigarOperation("M", interval.length()),)
        return cls(interval=interval, strand=strand, cigar_ops=tuple(ops), seq=seq, name=name)


@dataclass(frozen=True)
class Feature:
    """A scored genomic feature. Contributes depth only, never base evidence."""

    id: str
    feature_type: str
    position: GenomicInterval
    score: float = 0.0


CoverageItem = Union[Alignment, Feature]


@dataclass
class Bin:
    """Aggregated statistics for one reference position.

    ``ref`` and ``mismatches`` are only filled in by a mismatch update, and only at
    positions with alignment evidence. When ``mismatches`` is set, its values sum to
    at most ``count``; the remainder agrees with ``ref``.
    """

    count: int = 0
    ref: Optional[str] = None
    mismatches: Optional[Dict[str, int]] = field(default=None)

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {"count": self.count}
        if self.ref is not None:
            out["ref"] = self.ref
        if self.mismatches:
            out["mismatches"] = dict(self.mismatches)
        return out
