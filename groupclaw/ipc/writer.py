"""Atomic JSON writes for mailbox requests and read-only snapshots.

A file is written to ``<name>.tmp`` and renamed into place, so a reader that
only looks at ``*.json`` never sees a partial document.
"""

import json
import os
import time
import uuid
from pathlib import Path


def write_json_atomic(path, data):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
    return path


def request_filename():
    """``<epoch-ms>-<random>.json``; sorts in approximate creation order."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.json"


def write_request(namespace_dir, queue, data):
    """File a request into ``<namespace_dir>/<queue>/`` and return its path."""
    if "type" not in data:
        raise ValueError("request needs a 'type'")
    return write_json_atomic(Path(namespace_dir) / queue / request_filename(), data)
