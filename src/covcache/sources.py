"""pysam-backed item and reference providers.

The cache itself only needs an iterable of items and an object with
``get_range_as_string``; this module supplies both for BAM/FASTA inputs.
"""

from __future__ import annotations

import concurrent.futures
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Tuple

import pysam
from tqdm import tqdm

from .interval import GenomicInterval
from .models import Alignment, CigarOperation
from .validation import remap_contig

if TYPE_CHECKING:
    from .cache import ReferenceSource

logger = logging.getLogger(__name__)

# pysam cigartuples codes -> SAM letters (BAM_CMATCH .. BAM_CDIFF, BAM_CBACK)
_PYSAM_CIGAR_LETTERS = "MIDNSHP=XB"


def cigar_ops_from_tuples(cigartuples: Optional[Sequence[Tuple[int, int]]]) -> Tuple[CigarOperation, ...]:
    ops: List[CigarOperation] = []
    for code, length in cigartuples or ():
        letter = _PYSAM_CIGAR_LETTERS[code] if 0 <= code < len(_PYSAM_CIGAR_LETTERS) else str(code)
        ops.append(CigarOperation(letter, int(length)))
    return tuple(ops)


def alignment_from_segment(read: pysam.AlignedSegment) -> Optional[Alignment]:
    """Convert a mapped pysam read into an :class:`Alignment`.

    pysam coordinates are 0-based half-open; the returned interval is closed.
    Returns None for unmapped reads and reads without a CIGAR.
    """
    if read.is_unmapped or read.cigartuples is None:
        return None
    start0 = read.reference_start
    end0 = read.reference_end
    if start0 is None or end0 is None or end0 <= start0:
        return None
    return Alignment(
        interval=GenomicInterval(str(read.reference_name), int(start0), int(end0) - 1),
        strand="-" if read.is_reverse else "+",
        cigar_ops=cigar_ops_from_tuples(read.cigartuples),
        seq=read.query_sequence or "",
        name=str(read.query_name),
    )


def iter_bam_alignments(
    bam_path: str | Path,
    region: Optional[GenomicInterval] = None,
    *,
    min_mapq: int = 0,
    skip_duplicates: bool = True,
    include_secondary: bool = False,
    include_supplementary: bool = False,
    progress: bool = False,
    counts: Optional[Dict[str, int]] = None,
) -> Iterator[Alignment]:
    """Yield filtered alignments from a BAM, optionally restricted to a region.

    ``counts``, if given, is updated with per-filter tallies as reads are consumed.
    """
    tally = counts if counts is not None else {}
    for key in (
        "reads_total",
        "reads_used",
        "reads_unmapped",
        "reads_skipped_mapq",
        "reads_skipped_secondary",
        "reads_skipped_supplementary",
        "reads_skipped_duplicates",
    ):
        tally.setdefault(key, 0)

    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        if region is None:
            it = bam.fetch(until_eof=True)
        else:
            contig = _resolve_contig(region.contig, list(bam.references))
            it = bam.fetch(contig, region.start, region.stop + 1)
        if progress:
            it = tqdm(it, unit="read", desc="Reading alignments")

        for read in it:
            tally["reads_total"] += 1
            if read.is_unmapped:
                tally["reads_unmapped"] += 1
                continue
            if read.is_secondary and not include_secondary:
                tally["reads_skipped_secondary"] += 1
                continue
            if read.is_supplementary and not include_supplementary:
                tally["reads_skipped_supplementary"] += 1
                continue
            if skip_duplicates and read.is_duplicate:
                tally["reads_skipped_duplicates"] += 1
                continue
            if read.mapping_quality < min_mapq:
                tally["reads_skipped_mapq"] += 1
                continue
            aln = alignment_from_segment(read)
            if aln is None:
                tally["reads_unmapped"] += 1
                continue
            tally["reads_used"] += 1
            yield aln

    logger.info("Read %d alignments (%d used) from %s", tally["reads_total"], tally["reads_used"], bam_path)


def _resolve_contig(contig: str, available: List[str]) -> str:
    """Find ``contig`` among ``available`` names, trying UCSC and Ensembl spellings."""
    if contig in available:
        return contig
    for style in ("ucsc", "ensembl"):
        candidate = remap_contig(contig, style)
        if candidate in available:
            return candidate
    raise KeyError(f"Contig {contig!r} not found (available: {', '.join(available[:10])})")


class FastaReferenceSource:
    """Reference provider backed by an indexed FASTA (pysam.FastaFile).

    Bases are returned uppercase; the file is opened on first use.
    """

    def __init__(self, fasta_path: str | Path) -> None:
        self.fasta_path = str(fasta_path)
        self._fasta: Optional[pysam.FastaFile] = None

    @property
    def fasta(self) -> pysam.FastaFile:
        if self._fasta is None:
            self._fasta = pysam.FastaFile(self.fasta_path)
        return self._fasta

    def reference_length(self, contig: str) -> int:
        """Length of ``contig``, matched with or without the 'chr' prefix."""
        return int(self.fasta.get_reference_length(_resolve_contig(contig, list(self.fasta.references))))

    def get_range_as_string(self, interval: GenomicInterval) -> str:
        contig = _resolve_contig(interval.contig, list(self.fasta.references))
        seq = self.fasta.fetch(contig, interval.start, interval.stop + 1).upper()
        if len(seq) != interval.length():
            raise ValueError(
                f"{self.fasta_path}: {interval} runs past the end of {contig} "
                f"(length {self.fasta.get_reference_length(contig)})"
            )
        return seq

    def close(self) -> None:
        if self._fasta is not None:
            self._fasta.close()
            self._fasta = None

    def __enter__(self) -> "FastaReferenceSource":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ThreadPoolReferenceSource:
    """Answer reference requests asynchronously from a thread pool.

    Wraps any synchronous provider; ``get_range_as_string`` returns a
    ``concurrent.futures.Future`` much like a network-backed provider would.
    """

    def __init__(self, source: "ReferenceSource", *, max_workers: int = 2) -> None:
        self.source = source
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)

    def get_range_as_string(self, interval: GenomicInterval) -> "concurrent.futures.Future[str]":
        return self._executor.submit(self.source.get_range_as_string, interval)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "ThreadPoolReferenceSource":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
