from __future__ import annotations

import logging
import os
import shutil
import uuid
import zipfile
from pathlib import Path
from typing import Iterable

from blocklaunch.common.manifest_security import validate_relative_path


log = logging.getLogger(__name__)


def extract_natives(archive: Path, target: Path, exclude: Iterable[str] = ()) -> list[Path]:
    """Unpack a native classifier jar into ``target``, skipping ``exclude`` prefixes.

    Members are written through a temporary name and renamed into place so a
    concurrent reader never sees a half-written library.
    """
    prefixes = tuple(str(p).replace("\\", "/") for p in exclude)
    target.mkdir(parents=True, exist_ok=True)
    root = target.resolve()
    written: list[Path] = []
    with zipfile.ZipFile(archive, "r") as zf:
        for info in zf.infolist():
            member = validate_relative_path(info.filename)
            name = str(member) + ("/" if info.is_dir() else "")
            if prefixes and name.startswith(prefixes):
                continue

            mode = (info.external_attr >> 16) & 0o170000
            if mode == 0o120000:
                raise ValueError(f"Archive contains a symbolic link entry: {info.filename}")

            dest_path = (target / Path(*member.parts)).resolve()
            if not str(dest_path).startswith(str(root) + os.sep):
                raise ValueError(f"Archive entry escapes extraction root: {info.filename}")

            if info.is_dir():
                dest_path.mkdir(parents=True, exist_ok=True)
                continue

            dest_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = dest_path.with_name(f"{dest_path.name}.{uuid.uuid4().hex[:8]}.part")
            try:
                with zf.open(info, "r") as src, tmp.open("wb") as dst:
                    shutil.copyfileobj(src, dst, length=1024 * 1024)
                os.replace(tmp, dest_path)
            finally:
                tmp.unlink(missing_ok=True)
            written.append(dest_path)
    log.info("Extracted %d native files from %s", len(written), archive.name)
    return written
