"""
Central project registry (~/.piv/registry.yaml).

Single source of truth for fleet state. Orchestrators refresh their own
heartbeat entries; the supervisor reads the whole file each cycle and writes
back its recovery changes.

Writes are whole-file atomic replacements (temp file + fsync + rename) taken
under a FileLock on <registry>.lock. Reads never raise: a missing or damaged
file reads as an empty registry so the supervisor keeps running.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from filelock import FileLock

from .models import CentralRegistry, ProjectStatus, RegistryProject, utc_now_iso
from .process import is_process_alive

logger = logging.getLogger("piv.registry")

REGISTRY_DIR = Path.home() / ".piv"
REGISTRY_FILE = "registry.yaml"
LOCK_TIMEOUT_S = 10


class RegistryWriteError(Exception):
    """Raised when the registry cannot be written."""
    pass


def get_registry_path(registry_path: Optional[str] = None) -> Path:
    if registry_path:
        return Path(registry_path).expanduser()
    return REGISTRY_DIR / REGISTRY_FILE


def _lock_for(path: Path) -> FileLock:
    path.parent.mkdir(parents=True, exist_ok=True)
    return FileLock(str(path) + ".lock", timeout=LOCK_TIMEOUT_S)


def _empty_registry() -> CentralRegistry:
    return CentralRegistry(projects={}, last_updated=utc_now_iso())


def _parse_registry(content: str) -> CentralRegistry:
    parsed = yaml.safe_load(content)
    if not isinstance(parsed, dict) or not isinstance(parsed.get("projects"), dict):
        return _empty_registry()

    projects: Dict[str, RegistryProject] = {}
    for name, raw in parsed["projects"].items():
        if not isinstance(raw, dict):
            logger.warning(f"Skipping malformed registry entry: {name!r}")
            continue
        project = RegistryProject.from_dict(str(name), raw)
        projects[project.name] = project
    return CentralRegistry(projects=projects, last_updated=str(parsed.get("lastUpdated") or ""))


def read_central_registry(registry_path: Optional[str] = None) -> CentralRegistry:
    """Read and parse the registry. Returns an empty registry if missing or invalid."""
    path = get_registry_path(registry_path)
    if not path.exists():
        return _empty_registry()
    try:
        return _parse_registry(path.read_text(encoding="utf-8"))
    except Exception as e:
        logger.warning(f"Registry at {path} unreadable, treating as empty: {e}")
        return _empty_registry()


def _atomic_write(path: Path, content: str) -> None:
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception as e:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except OSError:
            pass
        raise RegistryWriteError(f"Failed to write {path}: {e}") from e


def _dump(registry: CentralRegistry) -> str:
    return yaml.safe_dump(registry.to_dict(), sort_keys=False, default_flow_style=False, width=10_000)


def write_central_registry(registry: CentralRegistry, registry_path: Optional[str] = None) -> None:
    """Replace the registry file with `registry`. Updates last_updated."""
    path = get_registry_path(registry_path)
    with _lock_for(path):
        registry.last_updated = utc_now_iso()
        _atomic_write(path, _dump(registry))


def update_registry(mutate: Callable[[CentralRegistry], Any],
                    registry_path: Optional[str] = None) -> CentralRegistry:
    """Read-modify-write under the registry lock.

    `mutate` receives a freshly read registry and edits it in place.
    """
    path = get_registry_path(registry_path)
    with _lock_for(path):
        registry = read_central_registry(registry_path)
        mutate(registry)
        registry.last_updated = utc_now_iso()
        _atomic_write(path, _dump(registry))
    return registry


def apply_project_updates(updates: Dict[str, Dict[str, Any]],
                          registry_path: Optional[str] = None) -> CentralRegistry:
    """Merge per-project field changes into the current registry in one write.

    updates maps project name -> {attribute name: new value}. Projects that were
    deregistered in the meantime are skipped.
    """
    def _merge(registry: CentralRegistry) -> None:
        for name, fields in updates.items():
            project = registry.projects.get(name)
            if project is None:
                logger.debug(f"Skipping update for deregistered project {name}")
                continue
            for attr, value in fields.items():
                setattr(project, attr, value)

    return update_registry(_merge, registry_path)


def register_project(project: RegistryProject, registry_path: Optional[str] = None) -> CentralRegistry:
    def _add(registry: CentralRegistry) -> None:
        registry.projects[project.name] = project

    return update_registry(_add, registry_path)


def deregister_project(name: str, registry_path: Optional[str] = None) -> CentralRegistry:
    def _remove(registry: CentralRegistry) -> None:
        registry.projects.pop(name, None)

    return update_registry(_remove, registry_path)


def update_heartbeat(name: str, phase: Optional[int], pid: Optional[int], status: str,
                     registry_path: Optional[str] = None) -> CentralRegistry:
    """Refresh heartbeat, phase, PID and status for one project."""
    def _touch(registry: CentralRegistry) -> None:
        project = registry.projects.get(name)
        if project is None:
            return
        project.heartbeat = utc_now_iso()
        project.current_phase = phase
        project.orchestrator_pid = pid
        project.status = status

    return update_registry(_touch, registry_path)


def get_project(name: str, registry_path: Optional[str] = None) -> Optional[RegistryProject]:
    return read_central_registry(registry_path).projects.get(name)


def list_projects(registry_path: Optional[str] = None) -> List[RegistryProject]:
    return list(read_central_registry(registry_path).projects.values())


def prune_dead_projects(registry_path: Optional[str] = None) -> CentralRegistry:
    """Mark projects whose orchestrator PID is dead as idle and clear the PID."""
    def _prune(registry: CentralRegistry) -> None:
        for project in registry.projects.values():
            if project.orchestrator_pid is not None and not is_process_alive(project.orchestrator_pid):
                logger.info(f"Pruning dead orchestrator PID {project.orchestrator_pid} ({project.name})")
                project.status = ProjectStatus.IDLE.value
                project.orchestrator_pid = None

    return update_registry(_prune, registry_path)
