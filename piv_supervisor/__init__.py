"""PIV Fleet Supervisor Package.

Watches a fleet of PIV orchestrator processes through the central registry,
restarts crashed or hung orchestrators, diagnoses execution errors with a
reasoning agent, hot-fixes and propagates framework bugs, and escalates to a
human over Telegram when automation cannot help.

Usage:
    piv-supervisor monitor

Or import and use programmatically:
    from piv_supervisor import Monitor, load_config
    Monitor(load_config()).run_cycle()
"""

from .config import load_config
from .monitor import Monitor

__version__ = "0.2.0"
__all__ = ["Monitor", "load_config", "__version__"]
