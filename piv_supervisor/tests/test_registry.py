#!/usr/bin/env python3
"""
Tests for registry.py: YAML round-trips, damaged files, merges and pruning.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from piv_supervisor.models import RegistryProject
from piv_supervisor.registry import (RegistryWriteError, apply_project_updates,
                                     deregister_project, get_project, list_projects,
                                     prune_dead_projects, read_central_registry,
                                     register_project, update_heartbeat,
                                     write_central_registry)

DEAD_PID = 999_999_999


def project(name="alpha", **overrides):
    values = dict(name=name, path=f"/srv/{name}", status="running",
                  heartbeat="2026-03-01T12:00:00.000Z", current_phase=2,
                  piv_commands_version="abc123", orchestrator_pid=os.getpid(),
                  registered_at="2026-02-01T00:00:00.000Z")
    values.update(overrides)
    return RegistryProject(**values)


class RegistryTestCase(unittest.TestCase):

    def setUp(self):
        self.path = str(Path(tempfile.mkdtemp()) / "piv" / "registry.yaml")


class TestReadWrite(RegistryTestCase):

    def test_missing_file_is_empty(self):
        self.assertEqual(read_central_registry(self.path).projects, {})

    def test_damaged_file_is_empty(self):
        Path(self.path).parent.mkdir(parents=True)
        Path(self.path).write_text("projects: [this is: not valid\n")
        self.assertEqual(read_central_registry(self.path).projects, {})

    def test_round_trip_uses_camel_case_on_disk(self):
        register_project(project(restart_count=2, restart_phase=2,
                                 failed_fixes=["test_failure:src/a.ts"]), self.path)
        raw = yaml.safe_load(Path(self.path).read_text())
        entry = raw["projects"]["alpha"]
        self.assertEqual(entry["currentPhase"], 2)
        self.assertEqual(entry["pivCommandsVersion"], "abc123")
        self.assertEqual(entry["restartCount"], 2)
        self.assertIn("lastUpdated", raw)

        loaded = get_project("alpha", self.path)
        self.assertEqual(loaded.restart_count, 2)
        self.assertEqual(loaded.failed_fixes, ["test_failure:src/a.ts"])
        self.assertEqual(loaded.heartbeat, "2026-03-01T12:00:00.000Z")

    def test_entries_written_by_orchestrators_are_accepted(self):
        Path(self.path).parent.mkdir(parents=True)
        Path(self.path).write_text(
            "projects:\n"
            "  beta:\n"
            "    name: beta\n"
            "    path: /srv/beta\n"
            "    status: running\n"
            "    heartbeat: 2026-03-01T12:00:00Z\n"
            "    currentPhase: 4\n"
            "    orchestratorPid: 321\n"
            "  junk: 42\n"
            "lastUpdated: 2026-03-01T12:00:00Z\n"
        )
        projects = read_central_registry(self.path).projects
        self.assertEqual(list(projects), ["beta"])
        self.assertEqual(projects["beta"].current_phase, 4)
        self.assertEqual(projects["beta"].orchestrator_pid, 321)
        self.assertEqual(projects["beta"].restart_count, 0)
        self.assertIn("2026-03-01", projects["beta"].heartbeat)

    def test_write_failure_raises_and_leaves_no_temp(self):
        register_project(project(), self.path)
        registry = read_central_registry(self.path)
        with mock.patch("piv_supervisor.registry.os.replace", side_effect=OSError("read-only")):
            with self.assertRaises(RegistryWriteError):
                write_central_registry(registry, self.path)
        leftovers = [p for p in Path(self.path).parent.iterdir() if p.name.endswith(".tmp")]
        self.assertEqual(leftovers, [])


class TestUpdates(RegistryTestCase):

    def test_apply_updates_merges_into_fresh_read(self):
        register_project(project("alpha"), self.path)
        register_project(project("beta"), self.path)
        # Another writer bumps beta's version after our read
        stale_view = read_central_registry(self.path)
        apply_project_updates({"beta": {"piv_commands_version": "new"}}, self.path)

        apply_project_updates({"alpha": {"status": "error"},
                               "ghost": {"status": "error"}}, self.path)

        self.assertEqual(stale_view.projects["beta"].piv_commands_version, "abc123")
        self.assertEqual(get_project("beta", self.path).piv_commands_version, "new")
        self.assertEqual(get_project("alpha", self.path).status, "error")
        self.assertIsNone(get_project("ghost", self.path))

    def test_heartbeat_and_deregister(self):
        register_project(project("alpha", heartbeat=""), self.path)
        update_heartbeat("alpha", 3, 555, "running", self.path)
        alpha = get_project("alpha", self.path)
        self.assertEqual((alpha.current_phase, alpha.orchestrator_pid), (3, 555))
        self.assertTrue(alpha.heartbeat.endswith("Z"))

        deregister_project("alpha", self.path)
        self.assertEqual(list_projects(self.path), [])

    def test_prune_dead_projects(self):
        register_project(project("alive"), self.path)
        register_project(project("dead", orchestrator_pid=DEAD_PID), self.path)
        prune_dead_projects(self.path)
        self.assertEqual(get_project("alive", self.path).status, "running")
        dead = get_project("dead", self.path)
        self.assertEqual(dead.status, "idle")
        self.assertIsNone(dead.orchestrator_pid)


class TestRestartCount(unittest.TestCase):

    def test_phase_scoped(self):
        self.assertEqual(project(restart_count=2, restart_phase=2).effective_restart_count(), 2)
        self.assertEqual(project(restart_count=2, restart_phase=1).effective_restart_count(), 0)


if __name__ == "__main__":
    unittest.main()
