"""
Framework versioning and the shared git revert helper.
"""

import hashlib
import logging
import os
import subprocess
from pathlib import Path

logger = logging.getLogger("piv.version")

FRAMEWORK_TREES = (".claude/commands", ".claude/orchestrator")
SKIP_DIRS = {"node_modules", "dist", ".git", "__pycache__"}
VERSION_LENGTH = 12


def get_dev_kit_version(dev_kit_dir: str) -> str:
    """Short git HEAD of the dev kit, or "unknown"."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=dev_kit_dir,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git rev-parse failed in {dev_kit_dir}: {e}")
        return "unknown"
    if result.returncode != 0:
        return "unknown"
    return result.stdout.strip() or "unknown"


def get_framework_version(dev_kit_dir: str) -> str:
    """Content hash of the framework trees.

    Changes whenever a framework file changes, committed or not, so projects
    that received a hot fix compare equal to the dev kit and the rest do not.
    """
    root = Path(dev_kit_dir)
    digest = hashlib.sha256()
    found = False

    for tree in FRAMEWORK_TREES:
        base = root / tree
        if not base.is_dir():
            continue
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                try:
                    content = path.read_bytes()
                except OSError as e:
                    logger.debug(f"Skipping unreadable {path}: {e}")
                    continue
                digest.update(path.relative_to(root).as_posix().encode("utf-8"))
                digest.update(b"\0")
                digest.update(content)
                found = True

    if not found:
        return get_dev_kit_version(dev_kit_dir)
    return digest.hexdigest()[:VERSION_LENGTH]


def git_checkout_file(relative_path: str, tree_root: str) -> bool:
    """Discard working-tree changes to one file. Returns True on success."""
    try:
        result = subprocess.run(
            ["git", "checkout", "--", relative_path],
            cwd=tree_root,
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Revert of {relative_path} in {tree_root} failed: {e}")
        return False
    if result.returncode != 0:
        logger.warning(f"Revert of {relative_path} in {tree_root} failed: {result.stderr.strip()}")
        return False
    logger.info(f"Reverted {relative_path} in {tree_root}")
    return True
