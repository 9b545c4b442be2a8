#!/usr/bin/env python3
"""
Tests for cli.py commands that do not need a live agent.
"""

import io
import logging
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from piv_supervisor import config as config_module
from piv_supervisor.cli import main, setup_logging
from piv_supervisor.models import RegistryProject
from piv_supervisor.registry import get_project, register_project


class TestCli(unittest.TestCase):

    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())
        self.registry_path = str(self.tmp_dir / "registry.yaml")
        env = {k: v for k, v in os.environ.items()
               if not k.startswith(("PIV_", "TELEGRAM_", "SUPERMEMORY_"))}
        env["PIV_REGISTRY_PATH"] = self.registry_path
        patches = [
            mock.patch.dict(os.environ, env, clear=True),
            mock.patch.object(config_module, "DEFAULT_CONFIG_PATH", self.tmp_dir / "absent.json"),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def run_cli(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(list(argv))
        return code, out.getvalue()

    def test_status_prunes_dead_orchestrators(self):
        register_project(RegistryProject(name="alpha", path="/srv/alpha", status="running",
                                         current_phase=2, orchestrator_pid=999_999_999),
                         self.registry_path)
        code, out = self.run_cli("status")
        self.assertEqual(code, 0)
        self.assertIn("alpha", out)
        self.assertIn("idle", out)
        self.assertEqual(get_project("alpha", self.registry_path).status, "idle")

    def test_status_empty(self):
        code, out = self.run_cli("status")
        self.assertEqual(code, 0)
        self.assertIn("no projects registered", out)

    def test_health_without_backends(self):
        code, out = self.run_cli("health")
        self.assertEqual(code, 0)
        self.assertIn("Memory:   disabled", out)
        self.assertIn("Telegram: not configured", out)

    def test_missing_config_file(self):
        code, _ = self.run_cli("--config", str(self.tmp_dir / "nope.json"), "status")
        self.assertEqual(code, 2)

    def test_invalid_log_level_falls_back_to_info(self):
        os.environ["PIV_LOG_LEVEL"] = "CHATTY"
        setup_logging()
        self.assertEqual(logging.getLogger("piv").level, logging.INFO)


if __name__ == "__main__":
    unittest.main()
