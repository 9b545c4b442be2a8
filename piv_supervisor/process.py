"""
Process control for orchestrator processes.

Liveness probing, kill and detached spawn sit behind ProcessControl so the
monitor and classifier can be exercised with a stub in tests.
"""

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger("piv.process")


def is_process_alive(pid: int) -> bool:
    """Signal-0 existence probe. A process we may not signal still exists."""
    if pid <= 0:
        return False
    # Reap our own exited children first, otherwise a zombie looks alive
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except (ChildProcessError, OverflowError, ValueError):
        pass
    except OSError:
        pass
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except (OverflowError, ValueError):
        # PIDs outside the platform's pid_t range cannot exist
        return False


class ProcessControl:
    """Real process control backed by signals and subprocess."""

    def __init__(self, orchestrator_command: Sequence[str], kill_grace_s: float = 2.0):
        self.orchestrator_command: List[str] = list(orchestrator_command)
        self.kill_grace_s = kill_grace_s

    def is_alive(self, pid: int) -> bool:
        return is_process_alive(pid)

    def kill(self, pid: int) -> bool:
        """SIGTERM, wait for the grace period, then SIGKILL.

        Returns True if the process is gone. Already-dead PIDs count as killed.
        """
        try:
            os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, OverflowError, ValueError):
            return True
        except PermissionError as e:
            logger.warning(f"No permission to signal PID {pid}: {e}")
            return False

        deadline = time.time() + self.kill_grace_s
        while time.time() < deadline:
            if not is_process_alive(pid):
                return True
            time.sleep(0.2)

        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            return True
        except OSError as e:
            logger.warning(f"SIGKILL failed for PID {pid}: {e}")
        time.sleep(0.2)
        return not is_process_alive(pid)

    def spawn_orchestrator(self, project_path: str) -> Optional[int]:
        """Start a detached orchestrator rooted at project_path. Returns the new PID."""
        env = os.environ.copy()
        env.pop("CLAUDECODE", None)
        log_dir = Path(project_path) / ".agents"
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = open(log_dir / "orchestrator.log", "a")
        except OSError:
            log_file = None
        try:
            proc = subprocess.Popen(
                self.orchestrator_command,
                cwd=project_path,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_file or subprocess.DEVNULL,
                stderr=subprocess.STDOUT if log_file else subprocess.DEVNULL,
                start_new_session=True,  # survives the supervisor
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to spawn orchestrator in {project_path}: {e}")
            return None
        finally:
            if log_file is not None:
                log_file.close()

        logger.info(f"Spawned orchestrator PID {proc.pid} in {project_path}")
        return proc.pid
