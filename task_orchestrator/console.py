"""
Console logging helpers shared by every orchestrator module.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from datetime import datetime

VERBOSE = False

_ORCHESTRATOR_PID = os.getpid()


def set_verbose(enabled: bool) -> None:
    """Turn verbose logging on or off for the whole process."""
    global VERBOSE
    VERBOSE = enabled


def log(message: str) -> None:
    """Print a timestamped log message with PID for process tracking."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [ORCHESTRATOR:{_ORCHESTRATOR_PID}] {message}", flush=True)


def verbose_log(message: str, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if VERBOSE:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(f"[{timestamp}] [{prefix}] {message}", flush=True)


def warn(message: str) -> None:
    print(f"[WARNING] {message}", flush=True)
