import os
import sys
import time
from typing import Callable, Optional

import pulumi

from config import is_truthy

POLL_INTERVAL = 0.1


def debugger_attached() -> bool:
    """A tracer is installed, or (3.12+) a tool holds the ``sys.monitoring`` debugger slot."""
    if sys.gettrace() is not None:
        return True
    monitoring = getattr(sys, "monitoring", None)
    if monitoring is None:
        return False
    return monitoring.get_tool(monitoring.DEBUGGER_ID) is not None


def should_wait_for_debugger() -> bool:
    """True when PULUMI_DEBUG is set and the program is not running a preview."""
    return is_truthy(os.environ.get("PULUMI_DEBUG")) and not pulumi.runtime.is_dry_run()


def wait_for_debugger(
    is_attached: Callable[[], bool] = debugger_attached,
    poll_interval: float = POLL_INTERVAL,
    sleep: Optional[Callable[[float], None]] = None,
) -> None:
    sleep = sleep or time.sleep
    pulumi.log.info(f"Waiting for a debugger to attach to process {os.getpid()}")
    while not is_attached():
        sleep(poll_interval)
    pulumi.log.info("Debugger attached")
