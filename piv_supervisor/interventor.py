"""
Interventor: diagnosis and hot-fix sessions.

Diagnosis runs a read-only session in the stalled project. Fixes run an
edit-capable session (in the dev kit for framework bugs, in the project for
project bugs) and are always validated independently afterwards; a fix that
fails validation, or a session that fails or declines, is reverted.

Nothing here raises on a session failure: the runner's SessionError is turned
into the most conservative result.
"""

import dataclasses
import logging
import math
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from .config import InterventorConfig
from .models import (BugLocation, Confidence, DiagnosticResult, HotFixResult,
                     RegistryProject, StallClassification)
from .propagator import revert_fix
from .session import (EDIT_TOOLS, READ_ONLY_TOOLS, ClaudeCliRunner, SessionError,
                      SessionRequest, decode_diagnosis, decode_fix_report,
                      extract_json_object)

logger = logging.getLogger("piv.interventor")

CREDENTIAL_CATEGORY_MARKERS = ("auth", "credential")
CREDENTIAL_CAUSE_MARKERS = ("credential", "api key")


def _default_runner(config: InterventorConfig) -> ClaudeCliRunner:
    return ClaudeCliRunner(config.agent_command, config.agent_model)


def build_diagnosis_prompt(project: RegistryProject, classification: StallClassification,
                           memory_context: Optional[str] = None) -> str:
    phase = "unknown" if project.current_phase is None else project.current_phase
    if math.isinf(classification.heartbeat_age_ms):
        age = "unknown"
    else:
        age = f"{round(classification.heartbeat_age_ms / 60000)} minutes"

    lines = [
        "You are diagnosing why a PIV orchestrator stalled.",
        "",
        f"Project: {project.name}",
        f"Path: {project.path}",
        f"Phase: {phase}",
        f"Stall type: {classification.stall_type.value}",
        f"Details: {classification.details}",
        f"Heartbeat age: {age}",
    ]
    if memory_context:
        lines += [
            "",
            "Similar past fixes (from memory, most relevant first):",
            memory_context,
        ]
    lines += [
        "",
        "Instructions:",
        "1. Read .agents/manifest.yaml for the failures section and recent state",
        "2. Check .agents/progress/ for the latest progress file to see blocked tasks",
        "3. If there are error details, trace them to the specific source file and line",
        "4. Determine the root cause: which file has the bug and what needs to change",
        "",
        "Respond with ONLY a JSON object (no markdown, no explanation):",
        "{",
        '  "rootCause": "description of the bug",',
        '  "filePath": "path/to/broken/file.ts or null",',
        '  "errorCategory": "syntax_error|test_failure|integration_auth|etc",',
        '  "bugLocation": "framework_bug|project_bug|human_required",',
        '  "confidence": "high|medium|low"',
        "}",
    ]
    return "\n".join(lines)


def build_fix_prompt(diagnostic: DiagnosticResult, is_framework: bool,
                     config: InterventorConfig) -> str:
    if is_framework:
        context = "You are fixing a framework bug in the PIV Dev Kit."
        checks = config.framework_typecheck_command + ["&&"] + config.framework_test_command
    else:
        context = "You are fixing a project-specific bug in generated agent code."
        checks = config.project_typecheck_command + ["&&"] + config.project_test_command

    return "\n".join([
        context,
        "",
        f"Root cause: {diagnostic.root_cause}",
        f"File: {diagnostic.file_path or 'unknown'}",
        f"Error category: {diagnostic.error_category}",
        "",
        "Constraints:",
        "- Fix must be in a SINGLE file only",
        "- Fix must be under 30 lines of changes",
        f"- After fixing, run: {' '.join(checks)}",
        "- If the fix requires changes to multiple files, do NOT make the fix. Instead respond with:",
        '  {"success": false, "reason": "multi-file fix required"}',
        "",
        "After fixing, respond with ONLY a JSON object (no markdown):",
        "{",
        '  "success": true,',
        '  "filePath": "path/to/fixed/file.ts",',
        '  "linesChanged": 5,',
        '  "details": "what was changed"',
        "}",
    ])


def diagnose_stall(project: RegistryProject, classification: StallClassification,
                   config: InterventorConfig, memory_context: Optional[str] = None,
                   runner=None) -> DiagnosticResult:
    """Run one read-only diagnosis session in the project root. Never raises."""
    runner = runner or _default_runner(config)
    fallback = classification.stall_type.value
    request = SessionRequest(
        cwd=project.path,
        allowed_tools=list(READ_ONLY_TOOLS),
        prompt=build_diagnosis_prompt(project, classification, memory_context),
        budget_usd=config.diagnosis_budget_usd,
        max_turns=config.diagnosis_max_turns,
        timeout_s=config.timeout_s,
    )

    try:
        result = runner.run(request)
    except SessionError as e:
        logger.warning(f"Diagnosis session failed for {project.name}: {e}")
        return DiagnosticResult(
            bug_location=BugLocation.HUMAN_REQUIRED,
            confidence=Confidence.LOW,
            root_cause=f"Diagnosis session failed: {e}",
            file_path=None,
            error_category=fallback,
            affected_projects=[project.name],
        )

    diagnostic = decode_diagnosis(extract_json_object(result.text), fallback,
                                  project.name, result.cost_usd)
    logger.info(f"Diagnosis for {project.name}: {diagnostic.bug_location.value} "
                f"({diagnostic.confidence.value}) {diagnostic.file_path or 'no file'}, "
                f"cost ${result.cost_usd:.2f}")
    return diagnostic


def _is_credential_problem(diagnostic: DiagnosticResult) -> bool:
    category = (diagnostic.error_category or "").lower()
    if any(marker in category for marker in CREDENTIAL_CATEGORY_MARKERS):
        return True
    cause = (diagnostic.root_cause or "").lower()
    return any(marker in cause for marker in CREDENTIAL_CAUSE_MARKERS)


def _relative_to_prefix(file_path: str, prefixes: Sequence[str]) -> Optional[str]:
    """Return file_path rebased onto the first matching prefix, or None.

    "/srv/alpha/.claude/commands/go.md" becomes ".claude/commands/go.md".
    """
    path = file_path[2:] if file_path.startswith("./") else file_path
    for p in prefixes:
        if path.startswith(p):
            return path
        idx = path.find(f"/{p}")
        if idx >= 0:
            return path[idx + 1:]
    return None


def _pattern_group(subject_name: Optional[str],
                   concurrent: List[StallClassification]) -> List[str]:
    """Sorted names of stalled projects sharing a phase and stall type.

    Scoped to the subject's group when the subject is among the stalls,
    otherwise the largest group across all of them.
    """
    groups = {}
    for c in concurrent:
        key = (c.project.current_phase, c.stall_type)
        groups.setdefault(key, set()).add(c.project.name)

    subject = next((c for c in concurrent if c.project.name == subject_name), None)
    if subject is not None:
        return sorted(groups[(subject.project.current_phase, subject.stall_type)])

    candidates = sorted(sorted(names) for names in groups.values())
    return max(candidates, key=len) if candidates else []


def classify_bug_location(diagnostic: DiagnosticResult,
                          concurrent: List[StallClassification],
                          config: Optional[InterventorConfig] = None) -> DiagnosticResult:
    """Refine a diagnosis with cross-project evidence and file-path rules.

    Precedence: credential problems, then the multi-project pattern, then the
    file-path prefix. Returns a new DiagnosticResult.
    """
    config = config or InterventorConfig()
    updated = dataclasses.replace(diagnostic, affected_projects=list(diagnostic.affected_projects))

    if _is_credential_problem(updated):
        updated.bug_location = BugLocation.HUMAN_REQUIRED
        return updated

    framework_path = None
    project_path = None
    if updated.file_path:
        framework_path = _relative_to_prefix(updated.file_path, config.framework_prefixes)
        if framework_path is None:
            project_path = _relative_to_prefix(updated.file_path, config.project_prefixes)
        updated.file_path = framework_path or project_path or updated.file_path

    subject_name = updated.affected_projects[0] if updated.affected_projects else None
    matching = _pattern_group(subject_name, concurrent)
    if len(matching) >= 2:
        updated.bug_location = BugLocation.FRAMEWORK_BUG
        updated.confidence = Confidence.HIGH
        updated.multi_project_pattern = True
        updated.affected_projects = matching
        return updated

    if framework_path is not None:
        updated.bug_location = BugLocation.FRAMEWORK_BUG
        if updated.confidence == Confidence.LOW:
            updated.confidence = Confidence.MEDIUM
    elif project_path is not None:
        updated.bug_location = BugLocation.PROJECT_BUG

    return updated


def should_escalate(diagnostic: DiagnosticResult, already_failed_once: bool) -> bool:
    if diagnostic.bug_location == BugLocation.HUMAN_REQUIRED:
        return True
    if already_failed_once:
        return True
    return diagnostic.confidence == Confidence.LOW and not diagnostic.file_path


def fix_signature(diagnostic: DiagnosticResult) -> str:
    """Key identifying one fix attempt, used to remember failures."""
    return f"{diagnostic.error_category}:{diagnostic.file_path or 'unknown'}"


def run_validation(cwd: str, commands: List[List[str]], timeouts: List[float]) -> bool:
    """Run each check command in order; all must exit 0 within their timeout."""
    for cmd, timeout in zip(commands, timeouts):
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Validation '{' '.join(cmd)}' timed out after {timeout}s in {cwd}")
            return False
        except OSError as e:
            logger.warning(f"Validation '{' '.join(cmd)}' could not run in {cwd}: {e}")
            return False
        if result.returncode != 0:
            tail = (result.stdout + result.stderr).strip()[-500:]
            logger.warning(f"Validation '{' '.join(cmd)}' failed in {cwd}:\n{tail}")
            return False
    return True


def _validation_dir(root: str, subdir: str) -> str:
    candidate = Path(root) / subdir if subdir else Path(root)
    return str(candidate if candidate.is_dir() else Path(root))


def _tree_relative(file_path: Optional[str], tree_root: str) -> Optional[str]:
    """file_path relative to tree_root; None for absolute paths outside it."""
    if not file_path:
        return None
    path = Path(file_path)
    if not path.is_absolute():
        return file_path
    try:
        return str(path.resolve().relative_to(Path(tree_root).resolve()))
    except ValueError:
        return None


def _apply_fix(diagnostic: DiagnosticResult, config: InterventorConfig, tree_root: str,
               is_framework: bool, runner) -> HotFixResult:
    runner = runner or _default_runner(config)
    target = _tree_relative(diagnostic.file_path, tree_root) or "unknown"
    scope = "framework" if is_framework else "project"
    request = SessionRequest(
        cwd=tree_root,
        allowed_tools=list(EDIT_TOOLS),
        prompt=build_fix_prompt(diagnostic, is_framework, config),
        budget_usd=config.fix_budget_usd,
        max_turns=config.fix_max_turns,
        timeout_s=config.timeout_s,
    )

    def _revert(path: Optional[str]) -> bool:
        if not path or path == "unknown":
            return False
        return revert_fix(path, tree_root)

    try:
        session = runner.run(request)
    except SessionError as e:
        logger.warning(f"{scope.capitalize()} fix session failed for {target}: {e}")
        reverted = _revert(target)
        return HotFixResult(
            success=False,
            file_path=target,
            lines_changed=0,
            validation_passed=False,
            reverted_on_failure=reverted,
            details=f"Fix session failed: {e}",
        )

    report = decode_fix_report(extract_json_object(session.text))
    file_path = _tree_relative(report.file_path, tree_root) or target

    if not report.success:
        logger.info(f"{scope.capitalize()} fix declined for {target}: {report.details}")
        reverted = _revert(file_path)
        return HotFixResult(
            success=False,
            file_path=file_path,
            lines_changed=0,
            validation_passed=False,
            reverted_on_failure=reverted,
            details=report.details,
            session_cost_usd=session.cost_usd,
        )

    if is_framework:
        cwd = _validation_dir(tree_root, config.framework_validation_subdir)
        commands = [config.framework_typecheck_command, config.framework_test_command]
    else:
        cwd = _validation_dir(tree_root, config.project_validation_subdir)
        commands = [config.project_typecheck_command, config.project_test_command]

    if not run_validation(cwd, commands, [config.typecheck_timeout_s, config.test_timeout_s]):
        reverted = _revert(file_path)
        return HotFixResult(
            success=False,
            file_path=file_path,
            lines_changed=report.lines_changed,
            validation_passed=False,
            reverted_on_failure=reverted,
            details=f"Fix applied but validation failed, reverted ({report.details})",
            session_cost_usd=session.cost_usd,
        )

    logger.info(f"{scope.capitalize()} fix validated: {file_path} ({report.lines_changed} lines)")
    return HotFixResult(
        success=True,
        file_path=file_path,
        lines_changed=report.lines_changed,
        validation_passed=True,
        reverted_on_failure=False,
        details=report.details,
        session_cost_usd=session.cost_usd,
    )


def apply_framework_hot_fix(diagnostic: DiagnosticResult, config: InterventorConfig,
                            runner=None) -> HotFixResult:
    """Fix diagnostic.file_path in the dev kit, then validate the dev kit."""
    return _apply_fix(diagnostic, config, config.dev_kit_dir, True, runner)


def apply_project_fix(project: RegistryProject, diagnostic: DiagnosticResult,
                      config: InterventorConfig, runner=None) -> HotFixResult:
    """Same protocol as the hot fix, scoped to the project's own tree."""
    return _apply_fix(diagnostic, config, project.path, False, runner)
