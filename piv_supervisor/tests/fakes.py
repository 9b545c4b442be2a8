"""
Stand-ins for the monitor's capabilities (process control, agent sessions,
notifications, memory) plus a temporary fleet on disk.
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from piv_supervisor.config import SupervisorConfig
from piv_supervisor.models import RegistryProject
from piv_supervisor.notifier import NotifyResult
from piv_supervisor.registry import register_project
from piv_supervisor.session import SessionResult


def minutes_ago(minutes):
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


class FakeProcess:
    def __init__(self, alive=(), next_pid=7000, spawn_ok=True):
        self.alive = set(alive)
        self.next_pid = next_pid
        self.spawn_ok = spawn_ok
        self.killed = []
        self.spawned = []

    def is_alive(self, pid):
        return pid in self.alive

    def kill(self, pid):
        self.killed.append(pid)
        self.alive.discard(pid)
        return True

    def spawn_orchestrator(self, path):
        self.spawned.append(path)
        if not self.spawn_ok:
            return None
        self.next_pid += 1
        self.alive.add(self.next_pid)
        return self.next_pid


class FakeRunner:
    """Answers diagnosis sessions and fix sessions with separate payloads."""

    def __init__(self, diagnosis=None, fix=None, diagnosis_error=None):
        self.diagnosis = diagnosis or {}
        self.fix = fix or {"success": False, "reason": "no fix configured"}
        self.diagnosis_error = diagnosis_error
        self.requests = []

    def run(self, request):
        self.requests.append(request)
        if "Edit" in request.allowed_tools:
            return SessionResult(text=json.dumps(self.fix), cost_usd=1.0)
        if self.diagnosis_error:
            raise self.diagnosis_error
        return SessionResult(text=json.dumps(self.diagnosis), cost_usd=0.2)

    @property
    def diagnosis_requests(self):
        return [r for r in self.requests if "Edit" not in r.allowed_tools]

    @property
    def fix_requests(self):
        return [r for r in self.requests if "Edit" in r.allowed_tools]


class FakeNotifier:
    configured = True

    def __init__(self):
        self.sent = []

    def send(self, text):
        self.sent.append(text)
        return NotifyResult(True)


class FakeMemory:
    def __init__(self, results=None, search_error=None, add_error=None):
        self.results = results or []
        self.search_error = search_error
        self.add_error = add_error
        self.searches = []
        self.added = []

    def search(self, payload):
        self.searches.append(payload)
        if self.search_error:
            raise self.search_error
        return {"results": self.results}

    def add(self, payload):
        self.added.append(payload)
        if self.add_error:
            raise self.add_error
        return {"id": "mem_42", "status": "queued"}

    def list_documents(self, limit=1):
        return {}


class Fleet:
    """Temporary registry, improvement log, dev kit and project trees."""

    def __init__(self):
        self.root = Path(tempfile.mkdtemp())
        self.dev_kit = self.root / "dev-kit"
        (self.dev_kit / ".claude" / "commands").mkdir(parents=True)
        (self.dev_kit / ".claude" / "commands" / "execute.md").write_text("# execute v2\n")
        self.config = SupervisorConfig()
        self.config.monitor.registry_path = str(self.root / "registry.yaml")
        self.config.monitor.improvement_log_path = str(self.root / "logs" / "improvement-log.md")
        self.config.monitor.heartbeat_stale_ms = 15 * 60_000
        self.config.monitor.max_restart_attempts = 3
        self.config.interventor.dev_kit_dir = str(self.dev_kit)

    @property
    def registry_path(self):
        return self.config.monitor.registry_path

    @property
    def log_text(self):
        path = Path(self.config.monitor.improvement_log_path)
        return path.read_text() if path.exists() else ""

    def add_project(self, name, pid=None, stale_minutes=20, phase=2, status="running",
                    pending_failures=0, **extra):
        path = self.root / "projects" / name
        path.mkdir(parents=True)
        if pending_failures:
            agents = path / ".agents"
            agents.mkdir()
            failures = "".join("  - command: execute\n    resolution: pending\n"
                               for _ in range(pending_failures))
            (agents / "manifest.yaml").write_text(f"phase: {phase}\nfailures:\n{failures}")
        project = RegistryProject(
            name=name,
            path=str(path),
            status=status,
            heartbeat=minutes_ago(stale_minutes),
            current_phase=phase,
            piv_commands_version="old",
            orchestrator_pid=pid,
            registered_at=minutes_ago(600),
            **extra,
        )
        register_project(project, self.registry_path)
        return project
