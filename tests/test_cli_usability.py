import gzip
import json
import shutil
import subprocess
import sys
from pathlib import Path

from covcache.toy_data import make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "covcache"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def test_make_toy_data_and_depth(tmp_path: Path) -> None:
    toy_dir = tmp_path / "toy"
    cp = _run_cli(["make-toy-data", "--outdir", str(toy_dir)])
    assert cp.returncode == 0

    outdir = tmp_path / "out"
    cp = _run_cli(
        [
            "depth",
            "--bam",
            str(toy_dir / "reads.bam"),
            "--ref",
            str(toy_dir / "toy_ref.fa"),
            "--region",
            "chr1:1-200",
            "--outdir",
            str(outdir),
            "--no-progress",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert summary["max_coverage"] == 7
    assert summary["mismatch_positions"] == 1
    assert summary["counts"]["reads_used"] == 9

    with gzip.open(outdir / "coverage.tsv.gz", "rt") as fh:
        rows = [line.rstrip("\n").split("\t") for line in fh]
    assert rows[0] == ["contig", "pos1", "count", "ref", "mismatches"]
    by_pos = {int(r[1]): r for r in rows[1:]}
    assert by_pos[41] == ["chr1", "41", "6", "A", "C:3"]
    assert by_pos[21][2:] == ["1", "A", "."]
    assert 81 not in by_pos


def test_depth_without_reference(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "out"
    cp = _run_cli(
        ["depth", "--bam", toy["bam"], "--region", "1:41-41", "--outdir", str(outdir), "--no-progress"]
    )
    assert cp.returncode == 0, cp.stderr
    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert summary["covered_positions"] == 1
    assert summary["max_coverage"] == 6
    assert summary["mismatch_positions"] == 0


def test_depth_dry_run_does_not_write_outputs(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "depth"
    cp = _run_cli(
        [
            "depth",
            "--bam",
            toy["bam"],
            "--ref",
            toy["ref_fa"],
            "--region",
            "chr1:1-100",
            "--outdir",
            str(outdir),
            "--dry-run",
        ]
    )
    assert cp.returncode == 0
    assert "Dry-run" in cp.stdout
    assert "BAM contig style: ucsc" in cp.stdout
    assert not (outdir / "summary.json").exists()


def test_unindexed_bam_message(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    bare = tmp_path / "bare.bam"
    shutil.copy(toy["bam"], bare)
    cp = _run_cli(["depth", "--bam", str(bare), "--region", "chr1:1-10", "--outdir", str(tmp_path / "out")])
    assert cp.returncode == 2
    assert "samtools index" in cp.stderr


def test_bad_region_is_rejected(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    cp = _run_cli(["depth", "--bam", toy["bam"], "--region", "chr1:50-10", "--outdir", str(tmp_path / "out")])
    assert cp.returncode == 2
    assert "region" in cp.stderr.lower()


def test_region_past_contig_end_with_reference(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")

    outdir = tmp_path / "out"
    cp = _run_cli(
        [
            "depth",
            "--bam",
            toy["bam"],
            "--ref",
            toy["ref_fa"],
            "--region",
            "chr1:1-250",
            "--outdir",
            str(outdir),
            "--no-progress",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert summary["mismatch_positions"] == 1
    assert summary["max_coverage"] == 7
    assert (outdir / "coverage.tsv.gz").exists()

    beyond = tmp_path / "beyond"
    cp = _run_cli(
        [
            "depth",
            "--bam",
            toy["bam"],
            "--ref",
            toy["ref_fa"],
            "--region",
            "chr1:201-250",
            "--outdir",
            str(beyond),
            "--no-progress",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    summary = json.loads((beyond / "summary.json").read_text(encoding="utf-8"))
    assert summary["covered_positions"] == 0
    assert summary["mean_depth"] == 0.0
