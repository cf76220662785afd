import pytest

from covcache.errors import InvalidRegionError
from covcache.interval import GenomicInterval, normalize_contig, parse_region
from covcache.models import Alignment, CigarOperation, parse_cigar


def test_length_is_inclusive() -> None:
    assert GenomicInterval("chr1", 10, 15).length() == 6
    assert GenomicInterval("chr1", 7, 7).length() == 1


def test_start_after_stop_rejected() -> None:
    with pytest.raises(InvalidRegionError):
        GenomicInterval("chr1", 11, 10)


def test_contig_normalization() -> None:
    assert normalize_contig("chr17") == "17"
    assert normalize_contig("17") == "17"
    assert normalize_contig("chrUn_gl000220") == "Un_gl000220"
    a = GenomicInterval("chr1", 100, 200)
    b = GenomicInterval("1", 150, 250)
    assert a.intersects(b)
    assert a.intersect(b) == GenomicInterval("chr1", 150, 200)


def test_contains_and_overlap() -> None:
    iv = GenomicInterval("chr2", 100, 200)
    assert iv.contains(100)
    assert iv.contains(200)
    assert not iv.contains(201)
    assert iv.contains(GenomicInterval("2", 120, 130))
    assert not iv.contains(GenomicInterval("chr3", 120, 130))
    assert not iv.intersects(GenomicInterval("chr2", 201, 300))
    assert iv.intersect(GenomicInterval("chr2", 201, 300)) is None
    assert list(GenomicInterval("x", 3, 5).positions()) == [3, 4, 5]


def test_parse_region_is_one_based() -> None:
    iv = parse_region("chr1:101-200")
    assert iv == GenomicInterval("chr1", 100, 199)
    assert str(iv) == "chr1:100-199"
    assert parse_region("X:1,000-2,000") == GenomicInterval("X", 999, 1999)


@pytest.mark.parametrize("text", ["chr1", "chr1:0-10", "chr1:20-10", "chr1:a-b"])
def test_parse_region_rejects_bad_input(text: str) -> None:
    with pytest.raises(InvalidRegionError):
        parse_region(text)


def test_parse_cigar() -> None:
    assert parse_cigar("5S10M2I3D4M") == (
        CigarOperation("S", 5),
        CigarOperation("M", 10),
        CigarOperation("I", 2),
        CigarOperation("D", 3),
        CigarOperation("M", 4),
    )
    assert parse_cigar("*") == ()
    with pytest.raises(ValueError):
        parse_cigar("M10")


def test_alignment_constructors() -> None:
    iv = GenomicInterval("chr1", 10, 15)
    read = Alignment.matched(iv, "ACGTAC", name="r1")
    assert read.cigar_ops == (CigarOperation("M", 6),)
    assert read.sequence() == "ACGTAC"
    assert read.strand == "+"

    gapped = Alignment.from_cigar_string(GenomicInterval("chr1", 10, 19), "3M2D5M", "ACGTACGT", strand="-")
    assert gapped.strand == "-"
    assert len(gapped.cigar_ops) == 3
    assert Alignment.matched(iv, "").sequence() == ""
