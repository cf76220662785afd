from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

import pysam

from . import __version__
from .cache import CoverageCache
from .errors import CoverageError
from .interval import GenomicInterval, parse_region
from .sources import FastaReferenceSource, iter_bam_alignments
from .toy_data import make_toy_data
from .utils import ensure_outdir, format_mismatches, open_textmaybe_gzip, write_json
from .validation import check_bam_index, check_fasta_index, detect_contig_style


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _region(text: str) -> GenomicInterval:
    try:
        return parse_region(text)
    except CoverageError as e:
        raise argparse.ArgumentTypeError(str(e))


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    if isinstance(err, CoverageError):
        msg = str(err)
    else:
        msg = f"{err.__class__.__name__}: {err}"

    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _bam_contigs(bam_path: str) -> list[str]:
    with pysam.AlignmentFile(bam_path, "rb") as bam:
        return list(bam.header.references)


def _fasta_contigs(fasta_path: str) -> list[str]:
    with pysam.FastaFile(fasta_path) as fasta:
        return list(fasta.references)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="covcache",
        description=(
            "covcache: sparse per-position coverage and reference mismatch counts "
            "from aligned reads."
        ),
    )
    p.add_argument("--version", action="version", version=f"covcache {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference FASTA and BAM for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # depth
    # -----------------
    d = sub.add_parser(
        "depth",
        help="Compute per-position depth (and mismatches, with --ref) over a region.",
    )
    d.add_argument("--bam", required=True, type=_path_exists, help="Input BAM (sorted, indexed).")
    d.add_argument(
        "--region",
        required=True,
        type=_region,
        help="Region as contig:start-stop, 1-based inclusive (e.g. chr1:1000-2000).",
    )
    d.add_argument(
        "--ref",
        default=None,
        type=_path_exists,
        help="Indexed reference FASTA; enables mismatch annotation.",
    )
    d.add_argument("--outdir", required=True, help="Output directory.")
    d.add_argument("--min-mapq", type=int, default=0, help="Skip reads below this MAPQ.")
    d.add_argument("--keep-duplicates", action="store_true", help="Keep reads flagged as duplicates.")
    d.add_argument("--include-secondary", action="store_true", help="Include secondary alignments.")
    d.add_argument(
        "--include-supplementary", action="store_true", help="Include supplementary alignments."
    )
    d.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    d.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    d.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v, -vv).")

    return p


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def _write_coverage_tsv(path: Path, cache: CoverageCache, region: GenomicInterval) -> int:
    bins = cache.bins_for_ref(region.contig)
    rows = 0
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(["contig", "pos1", "count", "ref", "mismatches"]) + "\n")
        for pos in sorted(p for p in bins if region.contains(p)):
            b = bins[pos]
            fh.write(
                f"{region.contig}\t{pos + 1}\t{b.count}\t{b.ref or '.'}\t{format_mismatches(b.mismatches)}\n"
            )
            rows += 1
    return rows


def _clamp_to_reference(region: GenomicInterval, reference: FastaReferenceSource) -> Optional[GenomicInterval]:
    """Trim ``region`` to the reference contig; None if it starts past the end."""
    length = reference.reference_length(region.contig)
    if region.stop < length:
        return region
    if region.start >= length:
        return None
    logging.getLogger("covcache").info(
        "Region %s runs past the end of %s (length %d); annotating mismatches up to %d",
        region,
        region.contig,
        length,
        length,
    )
    return GenomicInterval(region.contig, region.start, length - 1)


def cmd_depth(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "depth.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("covcache")
    logger.info("covcache %s", __version__)

    region: GenomicInterval = args.region

    try:
        check_bam_index(args.bam)
        bam_style = detect_contig_style(_bam_contigs(args.bam))
        ref_style = None
        if args.ref is not None:
            check_fasta_index(args.ref)
            ref_style = detect_contig_style(_fasta_contigs(args.ref))
            if ref_style != bam_style:
                logger.warning(
                    "Contig style mismatch detected (BAM=%s, FASTA=%s); names are matched "
                    "with and without the 'chr' prefix.",
                    bam_style,
                    ref_style,
                )

        if args.dry_run:
            print("Dry-run: inputs look OK.")
            print(f"Region: {region.contig}:{region.start + 1}-{region.stop + 1}")
            print(f"BAM contig style: {bam_style}")
            if ref_style is not None:
                print(f"FASTA contig style: {ref_style}")
            print("Planned outputs:")
            print(f"  coverage.tsv.gz -> {outdir / 'coverage.tsv.gz'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        outdir = ensure_outdir(outdir)

        counts: Dict[str, int] = {}
        reference = FastaReferenceSource(args.ref) if args.ref is not None else None
        cache = CoverageCache(reference)
        cache.add_items(
            iter_bam_alignments(
                args.bam,
                region,
                min_mapq=int(args.min_mapq),
                skip_duplicates=not bool(args.keep_duplicates),
                include_secondary=bool(args.include_secondary),
                include_supplementary=bool(args.include_supplementary),
                progress=not bool(args.no_progress),
                counts=counts,
            )
        )

        if reference is not None:
            with reference:
                window = _clamp_to_reference(region, reference)
                if window is None:
                    logger.warning("Region %s lies past the end of the reference; skipping mismatches", region)
                else:
                    cache.update_mismatches(window)

        tsv_path = outdir / "coverage.tsv.gz"
        rows = _write_coverage_tsv(tsv_path, cache, region)

        stats = cache.summarize(region)

        summary = {
            "bam_path": args.bam,
            "ref_path": args.ref,
            "region": f"{region.contig}:{region.start + 1}-{region.stop + 1}",
            "counts": counts,
            "covered_positions": stats["covered_positions"],
            "rows_written": rows,
            "max_coverage": stats["max_coverage"],
            "contig_max_coverage": cache.max_coverage_for_ref(region.contig),
            "mean_depth": stats["mean_depth"],
            "mismatch_positions": stats["mismatch_positions"],
            "coverage_tsv": str(tsv_path),
        }
        write_json(outdir / "summary.json", summary)

        logger.info("Coverage written: %s", tsv_path)
        print(str(tsv_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "depth":
        return cmd_depth(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
