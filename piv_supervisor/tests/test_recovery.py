#!/usr/bin/env python3
"""
Tests for recovery.py: the decision engine and the restart/escalate executors.
"""

import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from piv_supervisor.config import MonitorConfig
from piv_supervisor.models import (ActionType, Confidence, RecoveryAction, RegistryProject,
                                   StallClassification, StallType)
from piv_supervisor.notifier import NotifyResult, NullNotifier
from piv_supervisor.recovery import (determine_recovery, execute_escalation, execute_restart,
                                     restart_orchestrator)


def classification(stall_type, pid=1234):
    p = RegistryProject(name="alpha", path="/srv/alpha", status="running",
                        current_phase=3, orchestrator_pid=pid)
    return StallClassification(p, stall_type, Confidence.HIGH, "details here", 1_200_000)


class FakeProcess:
    def __init__(self, spawn_pid=5555):
        self.spawn_pid = spawn_pid
        self.killed = []
        self.spawned = []

    def kill(self, pid):
        self.killed.append(pid)
        return True

    def spawn_orchestrator(self, path):
        self.spawned.append(path)
        return self.spawn_pid


class FakeNotifier:
    configured = True

    def __init__(self, ok=True, error=None):
        self.ok = ok
        self.error = error
        self.sent = []

    def send(self, text):
        self.sent.append(text)
        return NotifyResult(self.ok, self.error)


class TestDetermineRecovery(unittest.TestCase):

    def setUp(self):
        self.config = MonitorConfig(max_restart_attempts=3)

    def test_crashed_restarts_below_limit(self):
        for count in (0, 1, 2):
            action = determine_recovery(classification(StallType.ORCHESTRATOR_CRASHED), count, self.config)
            self.assertEqual(action.type, ActionType.RESTART)
            self.assertEqual(action.restart_count, count)

    def test_hung_escalates_at_limit(self):
        action = determine_recovery(classification(StallType.SESSION_HUNG), 3, self.config)
        self.assertEqual(action.type, ActionType.ESCALATE)

    def test_execution_error_always_diagnoses(self):
        for count in (0, 3, 10):
            action = determine_recovery(classification(StallType.EXECUTION_ERROR), count, self.config)
            self.assertEqual(action.type, ActionType.DIAGNOSE)

    def test_unknown_stall_type_fails_fast(self):
        c = classification(StallType.SESSION_HUNG)
        c.stall_type = "mystery"
        with self.assertRaises(ValueError):
            determine_recovery(c, 0, self.config)


class TestExecutors(unittest.TestCase):

    def test_restart_kills_then_spawns(self):
        process = FakeProcess(spawn_pid=7777)
        c = classification(StallType.ORCHESTRATOR_CRASHED, pid=1234)
        action = RecoveryAction(ActionType.RESTART, c.project, c.stall_type, c.details, 0)
        outcome, new_pid = execute_restart(action, process)
        self.assertEqual(process.killed, [1234])
        self.assertEqual(process.spawned, ["/srv/alpha"])
        self.assertEqual(new_pid, 7777)
        self.assertIn("new PID 7777", outcome)

    def test_restart_without_pid_skips_kill(self):
        process = FakeProcess()
        outcome, new_pid = restart_orchestrator("/srv/alpha", None, process)
        self.assertEqual(process.killed, [])
        self.assertIsNotNone(new_pid)

    def test_spawn_failure_reported(self):
        process = FakeProcess(spawn_pid=None)
        outcome, new_pid = restart_orchestrator("/srv/alpha", 1234, process)
        self.assertIsNone(new_pid)
        self.assertIn("failed to spawn", outcome)

    def _escalate(self, notifier):
        c = classification(StallType.SESSION_HUNG)
        action = RecoveryAction(ActionType.ESCALATE, c.project, c.stall_type, c.details, 3)
        return execute_escalation(action, MonitorConfig(max_restart_attempts=3), notifier)

    def test_escalation_sent(self):
        notifier = FakeNotifier()
        outcome = self._escalate(notifier)
        self.assertIn("Escalated to Telegram", outcome)
        self.assertEqual(len(notifier.sent), 1)
        self.assertIn("alpha", notifier.sent[0])
        self.assertIn("3/3", notifier.sent[0])

    def test_escalation_without_channel(self):
        outcome = self._escalate(NullNotifier())
        self.assertIn("no Telegram configured", outcome)

    def test_escalation_send_failure_does_not_raise(self):
        outcome = self._escalate(FakeNotifier(ok=False, error="chat not found"))
        self.assertIn("chat not found", outcome)


if __name__ == "__main__":
    unittest.main()
