"""
Stall classification.

Decision tree for a project whose status is running:
  heartbeat fresh (or in the future)            -> healthy (None)
  stale, PID missing or dead                    -> orchestrator_crashed / high
  stale, PID alive, pending manifest failures   -> execution_error / high
  stale, PID alive, no manifest clues           -> session_hung / low
"""

import logging
import math
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .config import MonitorConfig
from .models import Confidence, RegistryProject, StallClassification, StallType
from .process import is_process_alive

logger = logging.getLogger("piv.classifier")

_FRACTION_RE = re.compile(r"\.(\d+)")
_OFFSET_RE = re.compile(r"([+-]\d{2}):?(\d{2})?$")


def parse_heartbeat(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 heartbeat. Naive timestamps are taken as UTC."""
    if not value:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    # fromisoformat before 3.11 takes only 3 or 6 fraction digits and hh:mm offsets
    raw = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), raw, count=1)
    if "T" in raw or " " in raw:
        date_part, sep, time_part = raw.partition("T") if "T" in raw else raw.partition(" ")
        time_part = _OFFSET_RE.sub(lambda m: f"{m.group(1)}:{m.group(2) or '00'}", time_part)
        raw = date_part + sep + time_part
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def heartbeat_age_ms(heartbeat: str, now: Optional[datetime] = None) -> float:
    """Milliseconds since the heartbeat; infinite when unknown."""
    parsed = parse_heartbeat(heartbeat)
    if parsed is None:
        return math.inf
    now = now or datetime.now(timezone.utc)
    return (now - parsed).total_seconds() * 1000.0


def read_project_manifest(project_path: str, manifest_relpath: str) -> Optional[Dict[str, Any]]:
    """Load the project's manifest, or None if it is absent or unreadable."""
    manifest_path = Path(project_path) / manifest_relpath
    try:
        if not manifest_path.exists():
            return None
        with open(manifest_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except Exception as e:
        logger.debug(f"Manifest unreadable at {manifest_path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def count_pending_failures(manifest: Optional[Dict[str, Any]]) -> int:
    if not manifest:
        return 0
    failures = manifest.get("failures")
    if not isinstance(failures, list):
        return 0
    return sum(1 for f in failures if isinstance(f, dict) and f.get("resolution") == "pending")


def classify_stall(project: RegistryProject, config: MonitorConfig,
                   now: Optional[datetime] = None,
                   process=None) -> Optional[StallClassification]:
    """Classify the stall type of one project. Returns None when healthy.

    `process` is anything with an is_alive(pid) method; defaults to the
    signal-0 probe. Never raises.
    """
    age_ms = heartbeat_age_ms(project.heartbeat, now)

    # Future timestamps (clock skew) count as fresh
    if age_ms < 0:
        return None
    if age_ms < config.heartbeat_stale_ms:
        return None

    pid = project.orchestrator_pid
    minutes = "unknown" if math.isinf(age_ms) else f"{round(age_ms / 60000)} min"

    try:
        alive = pid is not None and (process.is_alive(pid) if process else is_process_alive(pid))
    except Exception as e:
        logger.warning(f"Liveness probe failed for {project.name} (PID {pid}): {e}")
        return StallClassification(
            project=project,
            stall_type=StallType.SESSION_HUNG,
            confidence=Confidence.LOW,
            details=f"PID {pid} liveness unknown ({e}), heartbeat stale ({minutes}), no manifest clues",
            heartbeat_age_ms=age_ms,
        )

    if not alive:
        details = "No orchestrator PID recorded" if pid is None else f"PID {pid} is dead"
        return StallClassification(
            project=project,
            stall_type=StallType.ORCHESTRATOR_CRASHED,
            confidence=Confidence.HIGH,
            details=details,
            heartbeat_age_ms=age_ms,
        )

    manifest = read_project_manifest(project.path, config.manifest_relpath)
    pending = count_pending_failures(manifest)
    if pending > 0:
        return StallClassification(
            project=project,
            stall_type=StallType.EXECUTION_ERROR,
            confidence=Confidence.HIGH,
            details=f"PID {pid} alive, {pending} pending failure(s) in manifest",
            heartbeat_age_ms=age_ms,
        )

    return StallClassification(
        project=project,
        stall_type=StallType.SESSION_HUNG,
        confidence=Confidence.LOW,
        details=f"PID {pid} alive, heartbeat stale ({minutes}), no manifest clues",
        heartbeat_age_ms=age_ms,
    )
