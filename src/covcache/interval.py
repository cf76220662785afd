from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

from .errors import InvalidRegionError

_UCSC_PREFIX = "chr"

_REGION_RE = re.compile(r"^(?P<contig>[^:\s]+):(?P<start>[\d,]+)-(?P<stop>[\d,]+)$")


def normalize_contig(contig: str) -> str:
    """Strip one optional leading 'chr' so that 'chr1' and '1' compare equal."""
    if contig.startswith(_UCSC_PREFIX):
        return contig[len(_UCSC_PREFIX) :]
    return contig


@dataclass(frozen=True)
class GenomicInterval:
    """A closed span [start, stop] on a contig.

    Coordinates are 0-based in internal representation; both ends are included,
    so ``length() == stop - start + 1``.
    """

    contig: str
    start: int
    stop: int

    def __post_init__(self) -> None:
        if self.start > self.stop:
            raise InvalidRegionError(
                f"Interval start must be <= stop: {self.contig}:{self.start}-{self.stop}"
            )

    @property
    def normalized_contig(self) -> str:
        return normalize_contig(self.contig)

    def length(self) -> int:
        return self.stop - self.start + 1

    def positions(self) -> range:
        return range(self.start, self.stop + 1)

    def same_contig(self, other: "GenomicInterval") -> bool:
        return self.normalized_contig == other.normalized_contig

    def contains(self, other: Union[int, "GenomicInterval"]) -> bool:
        """True if a position, or a whole interval on the same contig, lies inside this one."""
        if isinstance(other, GenomicInterval):
            return self.same_contig(other) and self.start <= other.start and other.stop <= self.stop
        return self.start <= other <= self.stop

    def intersects(self, other: "GenomicInterval") -> bool:
        return self.same_contig(other) and self.start <= other.stop and other.start <= self.stop

    def intersect(self, other: "GenomicInterval") -> Optional["GenomicInterval"]:
        if not self.intersects(other):
            return None
        return GenomicInterval(self.contig, max(self.start, other.start), min(self.stop, other.stop))

    def __str__(self) -> str:
        return f"{self.contig}:{self.start}-{self.stop}"


def parse_region(region: str) -> GenomicInterval:
    """Parse a samtools-style region string ``contig:start-stop``.

    The string uses 1-based inclusive coordinates; the returned interval is 0-based
    (``chr1:101-200`` -> ``GenomicInterval("chr1", 100, 199)``).
    """
    m = _REGION_RE.match(region.strip())
    if m is None:
        raise InvalidRegionError(f"Cannot parse region {region!r}; expected contig:start-stop")
    start1 = int(m.group("start").replace(",", ""))
    stop1 = int(m.group("stop").replace(",", ""))
    if start1 < 1:
        raise InvalidRegionError(f"Region start is 1-based and must be >= 1: {region!r}")
    return GenomicInterval(m.group("contig"), start1 - 1, stop1 - 1)
