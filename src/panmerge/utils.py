from __future__ import annotations

import gzip
import json
import logging
import os
import re
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, TextIO, Tuple

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9._-]+")


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, Mapping):
        return {str(k): _jsonable(v) for k, v in obj.items() if not str(k).startswith("_")}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(x) for x in obj]
    return obj


def dataclass_to_jsonable(dc: Any) -> Mapping[str, Any]:
    return _jsonable(asdict(dc))


def write_json(path: str | Path, obj: Any) -> None:
    if is_dataclass(obj) and not isinstance(obj, type):
        obj = dataclass_to_jsonable(obj)
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(_jsonable(obj), f, indent=2, sort_keys=True)


def atomic_replace(src: str | Path, dst: str | Path) -> Path:
    """Move ``src`` onto ``dst`` (same filesystem), replacing any existing file."""
    os.replace(str(src), str(dst))
    return Path(dst)


def safe_id(text: str) -> str:
    """Make ``text`` usable as a file name component."""
    cleaned = _SAFE_ID.sub("_", text).strip("._")
    return cleaned or "sample"


def parse_sample_arg(value: str) -> Tuple[str, Path]:
    """Parse ``SAMPLE=PATH`` (or a bare path, sample id taken from the file stem)."""
    if "=" in value:
        sample_id, path = value.split("=", 1)
        sample_id = sample_id.strip()
        if not sample_id:
            raise ValueError(f"Empty sample id in: {value}")
        return sample_id, Path(path)
    p = Path(value)
    name = p.name
    for suffix in (".bam", ".sam", ".cram"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return name, p


def read_samples_tsv(path: str | Path) -> List[Tuple[str, Path]]:
    """Read a two-column ``sample_id<TAB>path`` table (``#`` comments allowed).

    Relative paths are resolved against the table's directory.
    """
    base = Path(path).expanduser().resolve().parent
    out: List[Tuple[str, Path]] = []
    with open_textmaybe_gzip(path, "rt") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split("\t")
            if len(parts) < 2:
                raise ValueError(f"{path}:{lineno}: expected 'sample_id<TAB>path'")
            p = Path(parts[1].strip())
            if not p.is_absolute():
                p = base / p
            out.append((parts[0].strip(), p))
    return out


def collect_samples(pairs: List[Tuple[str, Path]]) -> Dict[str, Path]:
    """Check sample ids are unique and return them in input order."""
    samples: Dict[str, Path] = {}
    for sample_id, path in pairs:
        if sample_id in samples:
            raise ValueError(f"Duplicate sample id: {sample_id}")
        samples[sample_id] = path
    return samples
