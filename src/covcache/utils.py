from __future__ import annotations

import gzip
import json
import logging
from pathlib import Path
from typing import Any, Mapping, Optional, TextIO

logger = logging.getLogger(__name__)


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)


def format_mismatches(mismatches: Optional[Mapping[str, int]]) -> str:
    """Render a mismatch map as ``C:1,T:2`` ('.' when empty)."""
    if not mismatches:
        return "."
    return ",".join(f"{base}:{n}" for base, n in sorted(mismatches.items()))

