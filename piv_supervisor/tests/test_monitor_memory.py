#!/usr/bin/env python3
"""
Tests for the memory side of the monitor's diagnose/fix pipeline: recall
before diagnosis, store after a validated fix, and identical behaviour when
the memory backend is broken.
"""

import sys
import unittest
from pathlib import Path
from unittest import mock

import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import FakeMemory, FakeNotifier, FakeProcess, FakeRunner, Fleet
from piv_supervisor.models import ProjectStatus
from piv_supervisor.monitor import Monitor
from piv_supervisor.registry import get_project

PROJECT_DIAGNOSIS = {
    "rootCause": "off-by-one in pager",
    "filePath": "src/pager.ts",
    "errorCategory": "test_failure",
    "bugLocation": "project_bug",
    "confidence": "high",
}

ESCALATING_DIAGNOSIS = {
    "rootCause": "unclear",
    "filePath": None,
    "errorCategory": "unknown",
    "bugLocation": "project_bug",
    "confidence": "low",
}


class MemoryPipelineTestCase(unittest.TestCase):

    def setUp(self):
        self.fleet = Fleet()
        self.fleet.config.memory.container_tag_prefix = "project_"
        self.fleet.add_project("alpha", pid=100, pending_failures=1)
        self.process = FakeProcess(alive={100})
        self.notifier = FakeNotifier()

    def run_cycle(self, runner, memory):
        monitor = Monitor(self.fleet.config, process=self.process, runner=runner,
                          notifier=self.notifier, memory_client=memory)
        return monitor.run_cycle()


class TestRecall(MemoryPipelineTestCase):

    def test_project_and_cross_project_recall_feed_the_prompt(self):
        memory = FakeMemory(results=[
            {"id": "m1", "memory": "Guarded pager bounds", "similarity": 0.9},
            {"id": "m2", "memory": "Raised lint timeout", "similarity": 0.6},
        ])
        runner = FakeRunner(diagnosis=ESCALATING_DIAGNOSIS)
        self.run_cycle(runner, memory)

        self.assertEqual(len(memory.searches), 2)
        self.assertEqual(memory.searches[0]["containerTag"], "project_alpha")
        self.assertNotIn("containerTag", memory.searches[1])
        prompt = runner.diagnosis_requests[0].prompt
        self.assertIn("[0.90] Guarded pager bounds", prompt)
        self.assertEqual(prompt.count("Guarded pager bounds"), 1)
        self.assertIn("**Memory Recalled:** m1, m2", self.fleet.log_text)

    def test_recall_failure_behaves_like_memory_disabled(self):
        broken = FakeMemory(search_error=requests.ConnectionError("unreachable"))
        runner_broken = FakeRunner(diagnosis=ESCALATING_DIAGNOSIS)
        result_broken = self.run_cycle(runner_broken, broken)

        other = Fleet()
        other.add_project("alpha", pid=100, pending_failures=1)
        runner_off = FakeRunner(diagnosis=ESCALATING_DIAGNOSIS)
        result_off = Monitor(other.config, process=FakeProcess(alive={100}), runner=runner_off,
                             notifier=FakeNotifier(), memory_client=None).run_cycle()

        self.assertEqual(result_broken, result_off)
        self.assertNotIn("Similar past fixes", runner_broken.diagnosis_requests[0].prompt)
        self.assertEqual(get_project("alpha", self.fleet.registry_path).status,
                         ProjectStatus.ERROR.value)


@mock.patch("piv_supervisor.interventor.run_validation", return_value=True)
class TestStore(MemoryPipelineTestCase):

    def runner(self):
        return FakeRunner(diagnosis=PROJECT_DIAGNOSIS,
                          fix={"success": True, "filePath": "src/pager.ts",
                               "linesChanged": 2, "details": "clamped page index"})

    def test_validated_fix_is_stored(self, validate):
        memory = FakeMemory()
        result = self.run_cycle(self.runner(), memory)

        self.assertEqual(result.recovered, 1)
        stored = memory.added[0]
        self.assertTrue(stored["customId"].startswith("fix_"))
        self.assertTrue(stored["customId"].endswith("_test_failure"))
        self.assertNotIn(":", stored["customId"])
        self.assertEqual(stored["containerTag"], "project_alpha")
        self.assertEqual(stored["metadata"]["severity"], "critical")
        self.assertEqual(stored["metadata"]["phase"], "2")
        self.assertEqual(stored["metadata"]["resolved"], "true")
        self.assertIn("clamped page index", stored["content"])
        self.assertIn("**Memory Record:** mem_42", self.fleet.log_text)

    def test_store_failure_still_counts_as_recovered(self, validate):
        memory = FakeMemory(add_error=requests.HTTPError("500 Server Error"))
        result = self.run_cycle(self.runner(), memory)

        self.assertEqual(result.recovered, 1)
        self.assertEqual(result.escalated, 0)
        self.assertEqual(self.notifier.sent, [])
        alpha = get_project("alpha", self.fleet.registry_path)
        self.assertEqual(alpha.status, ProjectStatus.RUNNING.value)
        self.assertNotIn("Memory Record", self.fleet.log_text)


if __name__ == "__main__":
    unittest.main()
