from __future__ import annotations

import json
import os
import time
from pathlib import Path

from codex_pool.core.types import JsonValue

_DIR_MODE = 0o700
_FILE_MODE = 0o600


def read_json_file(path: Path) -> JsonValue:
    """Read a JSON document; raises OSError / ValueError for the caller to classify."""
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def write_json_atomic(path: Path, payload: JsonValue) -> None:
    """Write ``payload`` next to ``path`` and rename it into place.

    Readers never observe a truncated document, and the file is created owner-only.
    """
    path.parent.mkdir(parents=True, exist_ok=True, mode=_DIR_MODE)
    temp_path = path.with_name(f"{path.name}.tmp-{os.getpid()}-{time.time_ns()}")
    data = json.dumps(payload, indent=2, sort_keys=False)
    try:
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.write("\n")
        temp_path.replace(path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
