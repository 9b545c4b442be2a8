"""
Reasoning-agent sessions.

A session is "run a bounded agent with this toolset, prompt and budget in
this directory; return its final message or fail". ClaudeCliRunner drives the
`claude` CLI in print mode with JSON output. Any failure (timeout, budget or
turn limit, non-zero exit, malformed envelope) raises SessionError.

The decode_* helpers turn the loosely-typed JSON a session reports into
strict result objects with explicit defaults, so a malformed report can never
escape as an exception.
"""

import json
import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import BugLocation, Confidence, DiagnosticResult

logger = logging.getLogger("piv.session")

READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]
EDIT_TOOLS = ["Read", "Glob", "Grep", "Bash", "Edit", "Write"]

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class SessionError(Exception):
    """Raised when a reasoning session fails or exceeds its budget."""
    pass


@dataclass
class SessionRequest:
    cwd: str
    allowed_tools: List[str]
    prompt: str
    budget_usd: float
    max_turns: int
    timeout_s: float


@dataclass
class SessionResult:
    text: str
    cost_usd: float = 0.0
    num_turns: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)


class ClaudeCliRunner:
    """Runs sessions through the agent CLI in its own process group."""

    def __init__(self, command: str = "claude", model: Optional[str] = None):
        self.command = command
        self.model = model

    def build_command(self, request: SessionRequest) -> List[str]:
        tools = ",".join(request.allowed_tools)
        cmd = [
            self.command,
            "-p", request.prompt,
            "--output-format", "json",
            "--tools", tools,
            "--allowedTools", tools,
            "--max-turns", str(request.max_turns),
            "--max-budget-usd", f"{request.budget_usd:.2f}",
            "--permission-mode", "bypassPermissions",
        ]
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    def run(self, request: SessionRequest) -> SessionResult:
        env = os.environ.copy()
        # Nested agent sessions refuse to start while this is set
        env.pop("CLAUDECODE", None)

        cmd = self.build_command(request)
        logger.info(f"Starting session in {request.cwd} (tools={request.allowed_tools}, "
                    f"turns={request.max_turns}, budget=${request.budget_usd:.2f})")
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=request.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            raise SessionError(f"Failed to start agent session: {e}") from e

        try:
            stdout, stderr = proc.communicate(timeout=request.timeout_s)
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            raise SessionError(f"Session timed out after {request.timeout_s:.0f}s")

        if proc.returncode != 0:
            raise SessionError(
                f"Session exited with code {proc.returncode}: {(stderr or stdout or '').strip()[:300]}")

        return parse_session_output(stdout)


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        pgid = os.getpgid(proc.pid)
        os.killpg(pgid, signal.SIGTERM)
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            os.killpg(pgid, signal.SIGKILL)
            proc.wait(timeout=5)
    except (ProcessLookupError, OSError) as e:
        logger.debug(f"Session process already gone: {e}")


def parse_session_output(stdout: str) -> SessionResult:
    """Decode the CLI's JSON envelope into a SessionResult."""
    try:
        data = json.loads(stdout or "")
    except json.JSONDecodeError as e:
        raise SessionError(f"Malformed session output: {e}") from e

    # Verbose mode emits the whole message list; the result message is last
    if isinstance(data, list):
        results = [m for m in data if isinstance(m, dict) and m.get("type") == "result"]
        if not results:
            raise SessionError("Session output contained no result message")
        data = results[-1]
    if not isinstance(data, dict):
        raise SessionError("Session output is not a JSON object")

    subtype = data.get("subtype", "success")
    if data.get("is_error") or subtype != "success":
        raise SessionError(f"Session ended with {subtype}: {str(data.get('result') or '')[:300]}")

    text = data.get("result")
    if not isinstance(text, str):
        raise SessionError("Session result message has no text")

    try:
        cost = float(data.get("total_cost_usd") or 0.0)
    except (TypeError, ValueError):
        cost = 0.0
    try:
        turns = int(data.get("num_turns") or 0)
    except (TypeError, ValueError):
        turns = 0
    return SessionResult(text=text, cost_usd=cost, num_turns=turns, raw=data)


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Pull the JSON object out of a terminal message (fenced or bare)."""
    if not text:
        return None
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _enum_or(enum_cls, value: Any, default):
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


def _str_or(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _optional_path(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.lower() in ("null", "none", "unknown"):
        return None
    return value


def decode_diagnosis(payload: Optional[Dict[str, Any]], fallback_category: str,
                     project_name: str, cost_usd: float = 0.0) -> DiagnosticResult:
    """Strictly decode a diagnosis report; anything unusable becomes human_required/low."""
    if not isinstance(payload, dict):
        return DiagnosticResult(
            bug_location=BugLocation.HUMAN_REQUIRED,
            confidence=Confidence.LOW,
            root_cause="Diagnosis session returned no parseable result",
            file_path=None,
            error_category=fallback_category,
            affected_projects=[project_name],
            session_cost_usd=cost_usd,
        )

    return DiagnosticResult(
        bug_location=_enum_or(BugLocation, payload.get("bugLocation"), BugLocation.HUMAN_REQUIRED),
        confidence=_enum_or(Confidence, payload.get("confidence"), Confidence.LOW),
        root_cause=_str_or(payload.get("rootCause"), "Unknown"),
        file_path=_optional_path(payload.get("filePath")),
        error_category=_str_or(payload.get("errorCategory"), fallback_category),
        multi_project_pattern=False,
        affected_projects=[project_name],
        session_cost_usd=cost_usd,
    )


@dataclass
class FixReport:
    success: bool
    file_path: Optional[str]
    lines_changed: int
    details: str


def decode_fix_report(payload: Optional[Dict[str, Any]]) -> FixReport:
    """Decode a fix session's report. Only an explicit `success: true` counts as success."""
    if not isinstance(payload, dict):
        return FixReport(False, None, 0, "Fix session returned no success confirmation")

    success = payload.get("success") is True
    try:
        lines = int(payload.get("linesChanged") or 0)
    except (TypeError, ValueError):
        lines = 0
    if success:
        details = _str_or(payload.get("details"), "Fix applied")
    else:
        details = _str_or(payload.get("reason") or payload.get("details"),
                          "Fix session declined to apply a fix")
    return FixReport(success, _optional_path(payload.get("filePath")), lines, details)
