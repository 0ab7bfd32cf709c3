from __future__ import annotations

import os


def norm_path(p: str) -> str:
    """Normalize archive names to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Strip leading/trailing slashes
    - Remove empty and '.' segments
    - Reject '..' segments
    """
    p = p.replace("\\", "/").strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise ValueError(f"Archive name may not contain '..': {p!r}")
    return "/".join(parts)


def extraction_target(outdir: str, name: str) -> str:
    """Filesystem path for archive entry ``name`` under ``outdir``."""
    rel = norm_path(name)
    if not rel:
        raise ValueError(f"Archive name {name!r} has no path components")
    return os.path.join(outdir, *rel.split("/"))
