#!/usr/bin/env python3
"""
PIV fleet supervisor command line.

Usage:
  piv-supervisor monitor           # Run the monitor loop (single instance)
  piv-supervisor once              # Run one cycle and print counters
  piv-supervisor status            # Prune dead PIDs, list registered projects
  piv-supervisor health            # Check memory backend and Telegram
  piv-supervisor --config supervisor.json monitor
"""

import argparse
import logging
import math
import os
import sys

from .classifier import heartbeat_age_ms
from .config import load_config
from .memory import check_memory_health, create_memory_client
from .monitor import Monitor, SupervisorGuard
from .notifier import create_notifier
from .registry import RegistryWriteError, get_registry_path, prune_dead_projects

logger = logging.getLogger("piv.cli")


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
        datefmt='%H:%M:%S'
    )
    log_level = os.environ.get("PIV_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, log_level, None)
    if not isinstance(level, int):
        logging.getLogger("piv").setLevel(logging.INFO)
        logger.warning(f"Invalid PIV_LOG_LEVEL '{log_level}', defaulting to INFO")
        return
    logging.getLogger("piv").setLevel(level)


def cmd_monitor(config) -> int:
    guard = SupervisorGuard(config.monitor.supervisor_pid_path)
    if not guard.acquire():
        pid = guard.existing_pid()
        print(f"ERROR: Another supervisor instance is already running (PID {pid or 'unknown'})",
              file=sys.stderr)
        print(f"  PID file: {guard.pid_path}", file=sys.stderr)
        return 1
    try:
        Monitor(config).run_forever()
    finally:
        guard.release()
    return 0


def cmd_once(config) -> int:
    result = Monitor(config).run_cycle()
    if result is None:
        return 1
    print(f"Checked:       {result.projects_checked}")
    print(f"Stalled:       {result.stalled}")
    print(f"Recovered:     {result.recovered}")
    print(f"Escalated:     {result.escalated}")
    print(f"Interventions: {result.interventions_attempted}")
    return 0


def _format_age(heartbeat: str) -> str:
    age_ms = heartbeat_age_ms(heartbeat)
    if math.isinf(age_ms):
        return "never"
    if age_ms < 0:
        return "future"
    minutes = int(age_ms // 60000)
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h{minutes % 60:02d}m"


def cmd_status(config) -> int:
    path = config.monitor.registry_path
    try:
        registry = prune_dead_projects(path)
    except RegistryWriteError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(f"Registry: {get_registry_path(path)}")
    if not registry.projects:
        print("  (no projects registered)")
        return 0

    print(f"  {'PROJECT':<24} {'STATUS':<10} {'PHASE':<6} {'PID':<8} {'HEARTBEAT':<10} VERSION")
    for project in sorted(registry.projects.values(), key=lambda p: p.name):
        phase = "-" if project.current_phase is None else str(project.current_phase)
        pid = "-" if project.orchestrator_pid is None else str(project.orchestrator_pid)
        print(f"  {project.name:<24} {project.status:<10} {phase:<6} {pid:<8} "
              f"{_format_age(project.heartbeat):<10} {project.piv_commands_version or '-'}")
    return 0


def cmd_health(config) -> int:
    ok = True

    client = create_memory_client(config.memory)
    if client is None:
        print("Memory:   disabled (no SUPERMEMORY_API_KEY)")
    elif check_memory_health(client):
        print("Memory:   ok")
    else:
        print("Memory:   UNREACHABLE")
        ok = False

    notifier = create_notifier(config.telegram)
    if not notifier.configured:
        print("Telegram: not configured (escalations are logged locally only)")
    else:
        check = notifier.get_me()
        if check.ok:
            print("Telegram: ok")
        else:
            print(f"Telegram: FAILED ({check.error})")
            ok = False

    return 0 if ok else 1


COMMANDS = {
    "monitor": cmd_monitor,
    "once": cmd_once,
    "status": cmd_status,
    "health": cmd_health,
}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="piv-supervisor", description="PIV fleet supervisor")
    parser.add_argument("--config", default=None,
                        help="Path to JSON config file (default: ~/.piv/supervisor.json if present)")
    parser.add_argument("command", choices=sorted(COMMANDS),
                        help="monitor | once | status | health")
    args = parser.parse_args(argv)

    setup_logging()
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"ERROR: Could not load config: {e}", file=sys.stderr)
        return 2

    return COMMANDS[args.command](config)


if __name__ == "__main__":
    sys.exit(main())
