"""
Notification channel (Telegram Bot API over HTTP).

Only "send formatted text, get ok/error back" is needed by the supervisor.
Sends never raise; failures come back as NotifyResult(ok=False, error=...).
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import requests

from .config import TelegramConfig
from .models import DiagnosticResult, HotFixResult

logger = logging.getLogger("piv.notifier")

TELEGRAM_BASE = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096


@dataclass
class NotifyResult:
    ok: bool
    error: Optional[str] = None


def escape_html(text: str) -> str:
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split on newline boundaries so each chunk fits in one message."""
    if len(text) <= limit:
        return [text]

    chunks = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        split_idx = remaining.rfind("\n", 0, limit + 1)
        if split_idx <= 0:
            chunks.append(remaining[:limit])
            remaining = remaining[limit:]
        else:
            chunks.append(remaining[:split_idx])
            remaining = remaining[split_idx + 1:]
    return chunks


class NullNotifier:
    """Used when no channel is configured; escalations are only logged locally."""

    configured = False

    def send(self, text: str) -> NotifyResult:
        logger.warning("Notification channel not configured; escalation logged locally only")
        return NotifyResult(False, "notification channel not configured")


class TelegramNotifier:
    configured = True

    def __init__(self, config: TelegramConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def _call(self, method: str, payload: dict) -> dict:
        url = f"{TELEGRAM_BASE}/bot{self.config.token}/{method}"
        try:
            resp = self.session.post(url, json=payload, timeout=self.config.request_timeout_s)
        except requests.RequestException as e:
            return {"ok": False, "description": f"Network error: {e}"}
        try:
            body = resp.json()
        except ValueError:
            body = {"ok": False, "description": f"HTTP {resp.status_code}: non-JSON response"}
        if not isinstance(body, dict):
            body = {"ok": False, "description": f"HTTP {resp.status_code}: unexpected response"}
        body.setdefault("error_code", resp.status_code if not resp.ok else None)
        return body

    def send(self, text: str, parse_mode: Optional[str] = "HTML") -> NotifyResult:
        last = {"ok": False, "description": "No chunks"}
        for chunk in split_message(text):
            payload = {"chat_id": self.config.chat_id, "text": chunk}
            if parse_mode:
                payload["parse_mode"] = parse_mode
            last = self._call("sendMessage", payload)

            # Malformed HTML is rejected with 400; resend as plain text
            if not last.get("ok") and last.get("error_code") == 400 and parse_mode:
                last = self._call("sendMessage", {"chat_id": self.config.chat_id, "text": chunk})

            if not last.get("ok"):
                break

        if last.get("ok"):
            return NotifyResult(True)
        error = str(last.get("description") or "unknown error")
        logger.warning(f"Telegram send failed: {error}")
        return NotifyResult(False, error)

    def get_me(self) -> NotifyResult:
        """Verify the bot token."""
        body = self._call("getMe", {})
        if body.get("ok"):
            return NotifyResult(True)
        return NotifyResult(False, str(body.get("description") or "unknown error"))


def create_notifier(config: TelegramConfig):
    if config.configured:
        return TelegramNotifier(config)
    return NullNotifier()


def _phase(phase: Optional[int]) -> str:
    return "unknown" if phase is None else str(phase)


def format_escalation(project: str, phase: Optional[int], stall_type: str, details: str,
                      action_taken: str, restart_count: int, max_restarts: int) -> str:
    return "\n".join([
        "<b>🔴 Supervisor Escalation</b>",
        "",
        f"<b>Project:</b> {escape_html(project)}",
        f"<b>Phase:</b> {_phase(phase)}",
        f"<b>Stall Type:</b> {escape_html(stall_type)}",
        f"<b>Details:</b> {escape_html(details)}",
        f"<b>Action Taken:</b> {escape_html(action_taken)}",
        f"<b>Restarts:</b> {restart_count}/{max_restarts}",
    ])


def format_diagnosis_escalation(project: str, phase: Optional[int],
                                diagnostic: DiagnosticResult) -> str:
    affected = ", ".join(diagnostic.affected_projects) or project
    return "\n".join([
        "<b>🟠 Diagnosis Escalation</b>",
        "",
        f"<b>Project:</b> {escape_html(project)}",
        f"<b>Phase:</b> {_phase(phase)}",
        f"<b>Bug Type:</b> {escape_html(diagnostic.bug_location.value)}",
        f"<b>Confidence:</b> {escape_html(diagnostic.confidence.value)}",
        f"<b>Error Category:</b> {escape_html(diagnostic.error_category)}",
        f"<b>Root Cause:</b> {escape_html(diagnostic.root_cause)}",
        f"<b>File:</b> {escape_html(diagnostic.file_path or 'unknown')}",
        f"<b>Affected Projects:</b> {escape_html(affected)}",
        "",
        "<b>Action needed:</b> Manual investigation required. No fix was attempted.",
    ])


def format_fix_failure(project: str, phase: Optional[int], diagnostic: DiagnosticResult,
                       fix: HotFixResult) -> str:
    reverted = "Fix was reverted." if fix.reverted_on_failure else ""
    return "\n".join([
        "<b>🔴 Hot Fix Failed | Escalation</b>",
        "",
        f"<b>Project:</b> {escape_html(project)}",
        f"<b>Phase:</b> {_phase(phase)}",
        f"<b>Bug Type:</b> {escape_html(diagnostic.bug_location.value)}",
        f"<b>Root Cause:</b> {escape_html(diagnostic.root_cause)}",
        f"<b>File:</b> {escape_html(diagnostic.file_path or 'unknown')}",
        f"<b>Fix Attempted:</b> {escape_html(fix.details)}",
        f"<b>Validation:</b> {'Passed' if fix.validation_passed else 'Failed'}",
        f"<b>Fix Cost:</b> ${fix.session_cost_usd:.2f}",
        "",
        f"<b>Action needed:</b> Manual fix required. {reverted}".rstrip(),
    ])
