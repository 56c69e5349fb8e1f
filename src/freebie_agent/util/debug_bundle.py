from __future__ import annotations

import dataclasses
import json
import re
import time
import zipfile
from pathlib import Path
from typing import Any, Optional

from ..models import RunSummary


# Capture prefixes written by the session, scanner and executor (see `DrivenBrowser.save_debug`).
_PURCHASE_RE = re.compile(r"^purchase_failure_(?P<item_id>[^.]+)\.[a-z]+$")
_STEP_RE = re.compile(r"^step_\d{3}_")
_SESSION_PREFIXES = ("login_",)
_SCAN_PREFIXES = ("scan_",)


def capture_arcname(file_name: str) -> tuple[str, Optional[str]]:
    """
    Map a capture file to its place in the bundle.

    Returns (arcname, item_id). Purchase failures are grouped per item so every artifact for one
    failed checkout sits in a single folder.
    """
    m = _PURCHASE_RE.match(file_name)
    if m:
        item_id = m.group("item_id")
        return f"purchases/{item_id}/{file_name}", item_id
    if _STEP_RE.match(file_name):
        return f"steps/{file_name}", None
    if file_name.startswith(_SESSION_PREFIXES):
        return f"session/{file_name}", None
    if file_name.startswith(_SCAN_PREFIXES):
        return f"scan/{file_name}", None
    return f"other/{file_name}", None


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: Optional[str],
    out_dir: str = "data",
    label: str = "",
    summary: Optional[RunSummary] = None,
) -> Path:
    """
    Zip the run log, the page captures and a `summary.json` into a single shareable file.

    `summary.json` carries the run counters (when a summary is given) and the ids of items whose
    checkout left failure captures. Never includes .env, config.yaml or the state DB: those hold
    credentials and purchase history.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    tag = (label or "").strip().lower().replace(" ", "-")
    tag_part = f"_{tag}" if tag else ""
    out_path = out_root / f"debug_bundle{tag_part}_{stamp}.zip"

    dbg = Path(debug_dir)
    failed_items: list[str] = []
    captures = 0

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        if log_file:
            log = Path(log_file)
            if log.is_file():
                z.write(log, arcname=log.name)

        if dbg.is_dir():
            for p in sorted(dbg.iterdir()):
                if not p.is_file():
                    continue
                arcname, item_id = capture_arcname(p.name)
                try:
                    z.write(p, arcname=arcname)
                except OSError:
                    # a capture may be replaced while we zip
                    continue
                captures += 1
                if item_id is not None and item_id not in failed_items:
                    failed_items.append(item_id)

        manifest: dict[str, Any] = {
            "label": tag or None,
            "created_at": stamp,
            "captures": captures,
            "failed_items": failed_items,
            "run": dataclasses.asdict(summary) if summary is not None else None,
        }
        z.writestr("summary.json", json.dumps(manifest, indent=2, sort_keys=True))

    return out_path
