"""
Recovery decisions and the restart / escalate executors.

  orchestrator_crashed, session_hung -> restart until max_restart_attempts, then escalate
  execution_error                    -> diagnose (a restart cannot fix a logic error)
"""

import logging
from typing import Optional, Tuple

from .config import MonitorConfig
from .models import ActionType, RecoveryAction, StallClassification, StallType
from .notifier import format_escalation

logger = logging.getLogger("piv.recovery")


def determine_recovery(classification: StallClassification, restart_count: int,
                       config: MonitorConfig) -> RecoveryAction:
    """Map a stall classification and restart history to exactly one action."""
    stall_type = classification.stall_type

    if stall_type in (StallType.ORCHESTRATOR_CRASHED, StallType.SESSION_HUNG):
        action_type = ActionType.RESTART if restart_count < config.max_restart_attempts else ActionType.ESCALATE
    elif stall_type == StallType.EXECUTION_ERROR:
        action_type = ActionType.DIAGNOSE
    else:
        raise ValueError(f"Unknown stall type: {stall_type!r}")

    return RecoveryAction(
        type=action_type,
        project=classification.project,
        stall_type=stall_type,
        details=classification.details,
        restart_count=restart_count,
    )


def restart_orchestrator(project_path: str, pid: Optional[int], process) -> Tuple[str, Optional[int]]:
    """Kill the old orchestrator (if any) and spawn a fresh one.

    Returns (outcome text, new PID or None).
    """
    if pid is not None:
        if not process.kill(pid):
            logger.warning(f"PID {pid} may still be running after kill")
    new_pid = process.spawn_orchestrator(project_path)
    old = pid if pid is not None else "none"
    if new_pid is None:
        return f"Killed PID {old}, failed to spawn new orchestrator", None
    return f"Killed PID {old}, restarted orchestrator (new PID {new_pid})", new_pid


def execute_restart(action: RecoveryAction, process) -> Tuple[str, Optional[int]]:
    project = action.project
    logger.info(f"Restarting {project.name} (attempt {action.restart_count + 1}, {action.stall_type.value})")
    return restart_orchestrator(project.path, project.orchestrator_pid, process)


def execute_escalation(action: RecoveryAction, config: MonitorConfig, notifier) -> str:
    """Notify a human that automatic restarts are exhausted."""
    project = action.project
    message = format_escalation(
        project.name,
        project.current_phase,
        action.stall_type.value,
        action.details,
        f"Escalated after {action.restart_count} restart(s)",
        action.restart_count,
        config.max_restart_attempts,
    )
    result = notifier.send(message)
    if result.ok:
        return f"Escalated to Telegram: {action.details}"
    if not getattr(notifier, "configured", True):
        return "Escalation required but no Telegram configured, logged locally only"
    return f"Escalation failed (Telegram error: {result.error or 'unknown'}), logged locally"
