"""covcache: sparse genomic coverage and mismatch aggregation.

Push alignments or features into a :class:`CoverageCache`, read per-position
depth back with ``bins_for_ref``, and annotate reference mismatches on demand
with ``update_mismatches``. A small CLI wraps this for BAM/FASTA inputs:

    covcache depth --bam reads.bam --region chr1:1-200 --ref ref.fa --outdir out

"""

from __future__ import annotations

__all__ = [
    "__version__",
    "Alignment",
    "Bin",
    "CigarOperation",
    "CoverageCache",
    "CoverageError",
    "Feature",
    "GenomicInterval",
    "InvalidRegionError",
    "MismatchRequest",
    "ReferenceUnavailableError",
    "parse_cigar",
    "parse_region",
]

__version__ = "0.1.0"

from .cache import CoverageCache, MismatchRequest
from .errors import CoverageError, InvalidRegionError, ReferenceUnavailableError
from .interval import GenomicInterval, parse_region
from .models import Alignment, Bin, CigarOperation, Feature, parse_cigar
