from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"
TOY_MISMATCH_POS0 = 40


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _make_read(
    name: str,
    start0: int,
    seq: str,
    cigartuples: Sequence[Tuple[int, int]],
    *,
    mapq: int = 60,
    reverse: bool = False,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 16 if reverse else 0
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = list(cigartuples)
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    return a


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny reference and BAM suitable for quick demos/tests.

    The outputs include:
    - toy_ref.fa (+ .fai)
    - reads.bam (+ .bai)

    Six staggered gapless reads overlap position ``TOY_MISMATCH_POS0`` (0-based),
    where every other read carries a non-reference base. Three more reads exercise a
    deletion, an insertion and a soft clip.

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)

    ref_seq = ("ACGT" * 50)[:200]
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, TOY_CONTIG, ref_seq)
    pysam.faidx(str(ref_fa))

    bam_path = outdir_p / "reads.bam"
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": TOY_CONTIG, "LN": len(ref_seq)}],
    }

    reads: List[pysam.AlignedSegment] = []
    for i in range(6):
        start0 = 20 + i
        seq = list(ref_seq[start0 : start0 + 50])
        if i % 2 == 0:
            rel = TOY_MISMATCH_POS0 - start0
            seq[rel] = _mutate_base(seq[rel])
        reads.append(_make_read(f"m{i}", start0, "".join(seq), [(0, 50)], reverse=bool(i % 2)))

    # 20M3D20M
    seq = ref_seq[60:80] + ref_seq[83:103]
    reads.append(_make_read("del", 60, seq, [(0, 20), (2, 3), (0, 20)]))

    # 20M2I20M
    seq = ref_seq[100:120] + "TT" + ref_seq[120:140]
    reads.append(_make_read("ins", 100, seq, [(0, 20), (1, 2), (0, 20)]))

    # 5S30M
    seq = "GGGGG" + ref_seq[150:180]
    reads.append(_make_read("clip", 150, seq, [(4, 5), (0, 30)]))

    reads.sort(key=lambda r: r.reference_start)

    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)

    pysam.index(str(bam_path))

    summary = {
        "ref_fa": str(ref_fa),
        "bam": str(bam_path),
        "region": f"{TOY_CONTIG}:1-{len(ref_seq)}",
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
