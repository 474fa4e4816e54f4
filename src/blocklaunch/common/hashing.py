from __future__ import annotations

import hashlib
from pathlib import Path


def sha1_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha1()
    with path.open("rb") as fh:
        while True:
            data = fh.read(chunk_size)
            if not data:
                break
            h.update(data)
    return h.hexdigest()


def checksums_match(expected: str | None, observed: str | None) -> bool:
    if not expected or not observed:
        return False
    return expected.strip().lower() == observed.strip().lower()
