"""
Shared data model for the supervisor.

Registry records keep camelCase keys on disk because orchestrator processes
read and write the same registry file.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ProjectStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class StallType(str, Enum):
    ORCHESTRATOR_CRASHED = "orchestrator_crashed"
    SESSION_HUNG = "session_hung"
    EXECUTION_ERROR = "execution_error"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ActionType(str, Enum):
    RESTART = "restart"
    DIAGNOSE = "diagnose"
    ESCALATE = "escalate"


class BugLocation(str, Enum):
    FRAMEWORK_BUG = "framework_bug"
    PROJECT_BUG = "project_bug"
    HUMAN_REQUIRED = "human_required"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class RegistryProject:
    name: str
    path: str
    status: str = ProjectStatus.IDLE.value
    heartbeat: str = ""
    current_phase: Optional[int] = None
    piv_commands_version: str = ""
    orchestrator_pid: Optional[int] = None
    registered_at: str = ""
    last_completed_phase: Optional[int] = None
    # Supervisor-owned; persisted so a supervisor restart keeps exhaustion state
    restart_count: int = 0
    restart_phase: Optional[int] = None
    failed_fixes: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "RegistryProject":
        status = data.get("status", ProjectStatus.IDLE.value)
        if isinstance(status, ProjectStatus):
            status = status.value
        return cls(
            name=str(data.get("name") or name),
            path=str(data.get("path") or ""),
            status=str(status),
            heartbeat=str(data.get("heartbeat") or ""),
            current_phase=_optional_int(data.get("currentPhase")),
            piv_commands_version=str(data.get("pivCommandsVersion") or ""),
            orchestrator_pid=_optional_int(data.get("orchestratorPid")),
            registered_at=str(data.get("registeredAt") or ""),
            last_completed_phase=_optional_int(data.get("lastCompletedPhase")),
            restart_count=_optional_int(data.get("restartCount")) or 0,
            restart_phase=_optional_int(data.get("restartPhase")),
            failed_fixes=[str(s) for s in (data.get("failedFixes") or [])],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "status": self.status,
            "heartbeat": self.heartbeat,
            "currentPhase": self.current_phase,
            "pivCommandsVersion": self.piv_commands_version,
            "orchestratorPid": self.orchestrator_pid,
            "registeredAt": self.registered_at,
            "lastCompletedPhase": self.last_completed_phase,
            "restartCount": self.restart_count,
            "restartPhase": self.restart_phase,
            "failedFixes": list(self.failed_fixes),
        }

    def effective_restart_count(self) -> int:
        """Restart attempts made in the current phase (0 once the phase moves on)."""
        if self.restart_phase != self.current_phase:
            return 0
        return self.restart_count


@dataclass
class CentralRegistry:
    projects: Dict[str, RegistryProject] = field(default_factory=dict)
    last_updated: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projects": {name: p.to_dict() for name, p in self.projects.items()},
            "lastUpdated": self.last_updated,
        }


@dataclass
class StallClassification:
    project: RegistryProject
    stall_type: StallType
    confidence: Confidence
    details: str
    heartbeat_age_ms: float


@dataclass
class RecoveryAction:
    type: ActionType
    project: RegistryProject
    stall_type: StallType
    details: str
    restart_count: int


@dataclass
class DiagnosticResult:
    bug_location: BugLocation
    confidence: Confidence
    root_cause: str
    file_path: Optional[str]
    error_category: str
    multi_project_pattern: bool = False
    affected_projects: List[str] = field(default_factory=list)
    session_cost_usd: float = 0.0


@dataclass
class HotFixResult:
    success: bool
    file_path: str
    lines_changed: int
    validation_passed: bool
    reverted_on_failure: bool
    details: str
    session_cost_usd: float = 0.0


@dataclass
class FixRecord:
    content: str
    custom_id: str
    container_tag: str
    metadata: Dict[str, str]
    entity_context: str


@dataclass
class MemorySearchResult:
    id: str
    text: str
    similarity: float
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class PropagationResult:
    project: str
    success: bool
    files_copied: List[str]
    new_version: str
    error: Optional[str] = None


@dataclass
class ImprovementLogEntry:
    timestamp: str
    project: str
    phase: Optional[int]
    stall_type: str
    action: str
    outcome: str
    details: str
    bug_location: Optional[str] = None
    root_cause: Optional[str] = None
    file_path: Optional[str] = None
    fix_applied: Optional[bool] = None
    propagated_to: Optional[List[str]] = None
    memory_record_id: Optional[str] = None
    memory_retrieved_ids: Optional[List[str]] = None


@dataclass
class CycleResult:
    projects_checked: int = 0
    stalled: int = 0
    recovered: int = 0
    escalated: int = 0
    interventions_attempted: int = 0
