"""
Fix propagation from the dev kit to the fleet.

Copies one fixed framework file into each target project, then records the
new framework version for every project that received it in a single
registry write.
"""

import logging
import shutil
from pathlib import Path
from typing import List, Optional

from .config import InterventorConfig
from .models import PropagationResult, RegistryProject
from .registry import apply_project_updates, read_central_registry
from .version import get_framework_version, git_checkout_file

logger = logging.getLogger("piv.propagator")


def propagate_fix(relative_path: str, targets: List[RegistryProject], config: InterventorConfig,
                  registry_path: Optional[str] = None) -> List[PropagationResult]:
    """Copy <dev_kit>/<relative_path> into every target project."""
    new_version = get_framework_version(config.dev_kit_dir)
    dev_kit = Path(config.dev_kit_dir).resolve()
    source = dev_kit / relative_path
    path_error = None
    if Path(relative_path).is_absolute():
        path_error = f"Refusing absolute path: {relative_path}"
    elif dev_kit not in source.resolve().parents:
        path_error = f"Refusing path outside the dev kit: {relative_path}"
    results: List[PropagationResult] = []

    for project in targets:
        try:
            if path_error:
                results.append(PropagationResult(
                    project=project.name,
                    success=False,
                    files_copied=[],
                    new_version=new_version,
                    error=path_error,
                ))
                continue

            if not source.is_file():
                results.append(PropagationResult(
                    project=project.name,
                    success=False,
                    files_copied=[],
                    new_version=new_version,
                    error=f"Source file not found: {source}",
                ))
                continue

            dest = Path(project.path) / relative_path
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
            logger.info(f"Propagated {relative_path} to {project.name}")
            results.append(PropagationResult(
                project=project.name,
                success=True,
                files_copied=[relative_path],
                new_version=new_version,
            ))
        except Exception as e:
            logger.warning(f"Propagation to {project.name} failed: {e}")
            results.append(PropagationResult(
                project=project.name,
                success=False,
                files_copied=[],
                new_version=new_version,
                error=str(e),
            ))

    succeeded = [r.project for r in results if r.success]
    if succeeded:
        apply_project_updates(
            {name: {"piv_commands_version": new_version} for name in succeeded},
            registry_path,
        )
    return results


def get_outdated_projects(current_version: str,
                          registry_path: Optional[str] = None) -> List[RegistryProject]:
    """Projects whose recorded framework version differs from current_version."""
    registry = read_central_registry(registry_path)
    return [p for p in registry.projects.values() if p.piv_commands_version != current_version]


def revert_fix(relative_path: str, tree_root: str) -> bool:
    return git_checkout_file(relative_path, tree_root)
