"""
Monitor loop.

One cycle: read the registry, classify every running project, decide and
execute one recovery action per stalled project, log each intervention, then
merge the supervisor's field changes into a fresh read of the registry in a
single write.

Cycles are single-flight: a cycle requested while another is running is
skipped. Projects are handled sequentially, each behind its own exception
boundary.
"""

import logging
import os
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from filelock import FileLock, Timeout

from .classifier import classify_stall
from .config import SupervisorConfig
from .improvement_log import append_to_improvement_log
from .interventor import (apply_framework_hot_fix, apply_project_fix, classify_bug_location,
                          diagnose_stall, fix_signature, should_escalate)
from .memory import (create_memory_client, deduplicate_fixes, format_memory_context,
                     recall_similar_fixes, store_fix_record)
from .models import (ActionType, BugLocation, Confidence, CycleResult, DiagnosticResult,
                     FixRecord, HotFixResult, ImprovementLogEntry, ProjectStatus,
                     RegistryProject, StallClassification, utc_now_iso)
from .notifier import create_notifier, format_diagnosis_escalation, format_fix_failure
from .process import ProcessControl
from .propagator import get_outdated_projects, propagate_fix
from .recovery import determine_recovery, execute_escalation, execute_restart, restart_orchestrator
from .registry import RegistryWriteError, apply_project_updates, read_central_registry
from .session import ClaudeCliRunner
from .version import get_framework_version

logger = logging.getLogger("piv.monitor")

_UNSET = object()


@dataclass
class _Intervention:
    """What one diagnose/fix pass produced, for the log entry and the registry."""
    outcome: str
    recovered: bool = False
    changes: Dict[str, Any] = field(default_factory=dict)
    log_fields: Dict[str, Any] = field(default_factory=dict)


class Monitor:
    def __init__(self, config: SupervisorConfig, process=None, runner=None,
                 notifier=None, memory_client=_UNSET):
        self.config = config
        mon = config.monitor
        self.process = process or ProcessControl(mon.orchestrator_command, mon.kill_grace_s)
        self.runner = runner or ClaudeCliRunner(config.interventor.agent_command,
                                                config.interventor.agent_model)
        self.notifier = notifier or create_notifier(config.telegram)
        if memory_client is _UNSET:
            memory_client = create_memory_client(config.memory)
        self.memory_client = memory_client

        self.running = True
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()

    @property
    def registry_path(self) -> Optional[str]:
        return self.config.monitor.registry_path

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self, now: Optional[datetime] = None) -> Optional[CycleResult]:
        """Run one monitoring cycle. Returns None if a cycle is already running."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Previous cycle still running, skipping this one")
            return None
        try:
            return self._run_cycle(now or datetime.now(timezone.utc))
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, now: datetime) -> CycleResult:
        result = CycleResult()
        registry = read_central_registry(self.registry_path)
        running = [p for p in registry.projects.values()
                   if p.status == ProjectStatus.RUNNING.value]
        result.projects_checked = len(running)

        classifications: List[StallClassification] = []
        for project in running:
            try:
                classification = classify_stall(project, self.config.monitor, now, self.process)
            except Exception:
                logger.exception(f"Classification failed for {project.name}")
                continue
            if classification is not None:
                logger.info(f"Stall detected: {project.name} {classification.stall_type.value} "
                            f"({classification.confidence.value}): {classification.details}")
                classifications.append(classification)
        result.stalled = len(classifications)

        updates: Dict[str, Dict[str, Any]] = {}
        for classification in classifications:
            try:
                self._handle_stall(classification, classifications, result, updates)
            except Exception:
                logger.exception(f"Recovery failed for {classification.project.name}")

        if updates:
            try:
                apply_project_updates(updates, self.registry_path)
            except RegistryWriteError as e:
                logger.error(f"Registry write failed, changes will be retried next cycle: {e}")

        logger.info(
            f"Monitor cycle complete: {result.projects_checked} checked, {result.stalled} stalled, "
            f"{result.recovered} recovered, {result.escalated} escalated, "
            f"{result.interventions_attempted} interventions"
        )
        return result

    def _handle_stall(self, classification: StallClassification,
                      concurrent: List[StallClassification], result: CycleResult,
                      updates: Dict[str, Dict[str, Any]]) -> None:
        project = classification.project
        restart_count = project.effective_restart_count()
        action = determine_recovery(classification, restart_count, self.config.monitor)
        logger.info(f"{project.name}: action={action.type.value} (restarts {restart_count}/"
                    f"{self.config.monitor.max_restart_attempts})")

        changes: Dict[str, Any] = {}
        log_fields: Dict[str, Any] = {}

        if action.type == ActionType.RESTART:
            outcome, new_pid = execute_restart(action, self.process)
            changes["restart_count"] = restart_count + 1
            changes["restart_phase"] = project.current_phase
            changes["orchestrator_pid"] = new_pid
            if new_pid is not None:
                changes["heartbeat"] = utc_now_iso()
                changes["status"] = ProjectStatus.RUNNING.value
                result.recovered += 1
            else:
                logger.warning(f"{project.name}: restart did not produce a new orchestrator")

        elif action.type == ActionType.ESCALATE:
            outcome = execute_escalation(action, self.config.monitor, self.notifier)
            changes["status"] = ProjectStatus.ERROR.value
            result.escalated += 1

        else:
            result.interventions_attempted += 1
            intervention = self._handle_diagnosis(classification, concurrent)
            outcome = intervention.outcome
            changes.update(intervention.changes)
            log_fields.update(intervention.log_fields)
            if intervention.recovered:
                result.recovered += 1
            else:
                result.escalated += 1

        if changes:
            updates.setdefault(project.name, {}).update(changes)

        append_to_improvement_log(
            ImprovementLogEntry(
                timestamp=utc_now_iso(),
                project=project.name,
                phase=project.current_phase,
                stall_type=classification.stall_type.value,
                action=action.type.value,
                outcome=outcome,
                details=classification.details,
                **log_fields,
            ),
            self.config.monitor.improvement_log_path,
        )

    # ------------------------------------------------------------------
    # Diagnose / fix / propagate
    # ------------------------------------------------------------------

    def _recall(self, project: RegistryProject,
                classification: StallClassification) -> Tuple[Optional[str], List[str]]:
        if self.memory_client is None:
            return None, []
        mem = self.config.memory
        phase = "unknown" if project.current_phase is None else project.current_phase
        query = f"{classification.stall_type.value}: {classification.details} (Phase {phase})"
        scoped = recall_similar_fixes(self.memory_client, query,
                                      f"{mem.container_tag_prefix}{project.name}", mem)
        cross = recall_similar_fixes(self.memory_client, query, None, mem)
        fixes = deduplicate_fixes(scoped + cross)
        if not fixes:
            return None, []
        logger.info(f"Recalled {len(fixes)} similar fix(es) for {project.name}")
        return format_memory_context(fixes), [f.id for f in fixes]

    def _handle_diagnosis(self, classification: StallClassification,
                          concurrent: List[StallClassification]) -> _Intervention:
        project = classification.project
        itv = self.config.interventor

        memory_context, retrieved_ids = self._recall(project, classification)
        diagnostic = diagnose_stall(project, classification, itv, memory_context, runner=self.runner)
        diagnostic = classify_bug_location(diagnostic, concurrent, itv)

        signature = fix_signature(diagnostic)
        failed_before = signature in project.failed_fixes
        log_fields: Dict[str, Any] = {
            "bug_location": diagnostic.bug_location.value,
            "root_cause": diagnostic.root_cause,
            "file_path": diagnostic.file_path,
            "memory_retrieved_ids": retrieved_ids or None,
        }

        if should_escalate(diagnostic, failed_before):
            reason = f"fix {signature} already failed once" if failed_before else diagnostic.root_cause
            self.notifier.send(format_diagnosis_escalation(project.name, project.current_phase, diagnostic))
            log_fields["fix_applied"] = False
            return _Intervention(
                outcome=f"Escalated: {reason}",
                changes={"status": ProjectStatus.ERROR.value},
                log_fields=log_fields,
            )

        is_framework = diagnostic.bug_location == BugLocation.FRAMEWORK_BUG
        if is_framework:
            fix = apply_framework_hot_fix(diagnostic, itv, runner=self.runner)
        else:
            fix = apply_project_fix(project, diagnostic, itv, runner=self.runner)
        log_fields["file_path"] = fix.file_path
        log_fields["fix_applied"] = fix.success

        if not fix.success:
            failed = list(project.failed_fixes)
            if signature not in failed:
                failed.append(signature)
            self.notifier.send(format_fix_failure(project.name, project.current_phase, diagnostic, fix))
            return _Intervention(
                outcome=f"Escalated: fix failed ({fix.details})",
                changes={"status": ProjectStatus.ERROR.value, "failed_fixes": failed},
                log_fields=log_fields,
            )

        kind = "framework" if is_framework else "project"
        log_fields["memory_record_id"] = self._store_fix(project, classification, diagnostic, fix, kind)

        outcome = f"Fixed {kind} bug in {fix.file_path}"
        if is_framework:
            propagated = self._propagate(fix.file_path)
            log_fields["propagated_to"] = propagated or None
            outcome += f", propagated to {len(propagated)} project(s)"

        restart_outcome, new_pid = restart_orchestrator(project.path, project.orchestrator_pid, self.process)
        changes: Dict[str, Any] = {"orchestrator_pid": new_pid}
        if new_pid is None:
            logger.warning(f"{project.name}: fix applied but orchestrator did not restart")
            return _Intervention(
                outcome=f"{outcome}; {restart_outcome}",
                changes=changes,
                log_fields=log_fields,
            )

        changes["heartbeat"] = utc_now_iso()
        changes["status"] = ProjectStatus.RUNNING.value
        return _Intervention(
            outcome=f"{outcome}; {restart_outcome}",
            recovered=True,
            changes=changes,
            log_fields=log_fields,
        )

    def _propagate(self, relative_path: str) -> List[str]:
        itv = self.config.interventor
        new_version = get_framework_version(itv.dev_kit_dir)
        outdated = get_outdated_projects(new_version, self.registry_path)
        if not outdated:
            return []
        try:
            results = propagate_fix(relative_path, outdated, itv, self.registry_path)
        except RegistryWriteError as e:
            logger.error(f"Propagation copied files but the version update failed: {e}")
            return []
        for r in results:
            if not r.success:
                logger.warning(f"Propagation to {r.project} failed: {r.error}")
        return [r.project for r in results if r.success]

    def _store_fix(self, project: RegistryProject, classification: StallClassification,
                   diagnostic: DiagnosticResult, fix: HotFixResult, kind: str) -> Optional[str]:
        """Best-effort memory record for a validated fix."""
        if self.memory_client is None:
            return None
        mem = self.config.memory
        timestamp = utc_now_iso()
        record = FixRecord(
            content="\n".join([
                f"## Fix Record: {diagnostic.error_category}",
                "",
                f"**Error:** {classification.stall_type.value}: {classification.details}",
                f"**Root Cause:** {diagnostic.root_cause}",
                f"**Fix:** {fix.details}",
                f"**File:** {fix.file_path}",
                f"**Lines Changed:** {fix.lines_changed}",
                f"**Outcome:** Fixed {kind} bug",
            ]),
            custom_id=f"fix_{timestamp.replace(':', '-').replace('.', '-')}_{diagnostic.error_category}",
            container_tag=f"{mem.container_tag_prefix}{project.name}",
            metadata={
                "error_category": diagnostic.error_category,
                "phase": str(project.current_phase if project.current_phase is not None else 0),
                "project": project.name,
                "fix_type": "code_change",
                "severity": "critical" if diagnostic.confidence == Confidence.HIGH else "warning",
                "command": "monitor",
                "resolved": "true",
            },
            entity_context=mem.entity_context,
        )
        record_id = store_fix_record(self.memory_client, record)
        if record_id is None:
            logger.warning(f"Fix for {project.name} applied but not stored in memory")
        return record_id

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def stop(self, *_args) -> None:
        self.running = False
        self._stop_event.set()

    def run_forever(self) -> None:
        """First cycle immediately, then one per interval until stopped."""
        signal.signal(signal.SIGINT, self.stop)
        signal.signal(signal.SIGTERM, self.stop)

        interval_s = self.config.monitor.interval_ms / 1000.0
        logger.info(f"Supervisor started (PID {os.getpid()}), interval {interval_s / 60:.1f} min")

        while self.running:
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Monitor cycle failed")
            self._stop_event.wait(interval_s)

        logger.info("Supervisor shutting down")


class SupervisorGuard:
    """Single-instance guard: a non-blocking file lock plus a PID file."""

    def __init__(self, pid_path: str):
        self.pid_path = Path(pid_path).expanduser()
        self.lock = FileLock(str(self.pid_path) + ".lock", timeout=0)

    def existing_pid(self) -> Optional[int]:
        try:
            return int(self.pid_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.lock.acquire()
        except Timeout:
            return False
        self.pid_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        try:
            self.pid_path.unlink()
        except FileNotFoundError:
            pass
        if self.lock.is_locked:
            self.lock.release()

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Another supervisor holds {self.lock.lock_file} "
                               f"(PID {self.existing_pid() or 'unknown'})")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
