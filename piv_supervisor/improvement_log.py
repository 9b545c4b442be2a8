"""
Append-only markdown log of every supervisor intervention.
"""

import logging
from pathlib import Path

from .models import ImprovementLogEntry

logger = logging.getLogger("piv.improvement_log")

LOG_HEADER = "# PIV Supervisor | Improvement Log\n\n"


def format_entry(entry: ImprovementLogEntry) -> str:
    phase = "N/A" if entry.phase is None else str(entry.phase)
    lines = [
        f"### {entry.timestamp} | {entry.project} (Phase {phase})",
        "",
        f"- **Stall:** {entry.stall_type}",
        f"- **Action:** {entry.action}",
        f"- **Outcome:** {entry.outcome}",
        f"- **Details:** {entry.details}",
    ]
    if entry.bug_location:
        lines.append(f"- **Bug Location:** {entry.bug_location}")
    if entry.root_cause:
        lines.append(f"- **Root Cause:** {entry.root_cause}")
    if entry.file_path:
        lines.append(f"- **File:** {entry.file_path}")
    if entry.fix_applied is not None:
        lines.append(f"- **Fix Applied:** {'yes' if entry.fix_applied else 'no'}")
    if entry.propagated_to:
        lines.append(f"- **Propagated To:** {', '.join(entry.propagated_to)}")
    if entry.memory_record_id:
        lines.append(f"- **Memory Record:** {entry.memory_record_id}")
    if entry.memory_retrieved_ids:
        lines.append(f"- **Memory Recalled:** {', '.join(entry.memory_retrieved_ids)}")
    return "\n".join(lines) + "\n\n"


def append_to_improvement_log(entry: ImprovementLogEntry, log_path: str) -> bool:
    """Append one entry, creating the file (and its directory) on first use.

    Never raises; returns False if the write failed.
    """
    path = Path(log_path).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not path.exists() or path.stat().st_size == 0
        with open(path, "a", encoding="utf-8") as f:
            if new_file:
                f.write(LOG_HEADER)
            f.write(format_entry(entry))
        return True
    except Exception as e:
        logger.warning(f"Failed to write improvement log {path}: {e}")
        return False
