"""Utility modules for signup-pilot."""

from signup_pilot.utils.atomic import AtomicWriteError, atomic_write, atomic_write_json, read_json
from signup_pilot.utils.locks import KeyedLocks
from signup_pilot.utils.logging import (
    configure_logging,
    get_logger,
    log_stage_timing,
    set_attempt_context,
    set_stage,
    start_invocation,
)
from signup_pilot.utils.result import ConfigError, Err, ExitCode, Ok, Result

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "start_invocation",
    "set_attempt_context",
    "set_stage",
    "log_stage_timing",
    # Files
    "AtomicWriteError",
    "atomic_write",
    "atomic_write_json",
    "read_json",
    # Concurrency
    "KeyedLocks",
    # Results
    "Ok",
    "Err",
    "Result",
    "ConfigError",
    "ExitCode",
]
