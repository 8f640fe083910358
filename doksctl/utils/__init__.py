"""Utility functions and helpers for the doksctl application."""
import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import Config
from ..errors import MissingDependencyError

logger = logging.getLogger("doksctl.utils")


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def require_commands(commands: Sequence[str]) -> None:
    """Raise MissingDependencyError for the first command not found on PATH."""
    for cmd in commands:
        if not command_exists(cmd):
            raise MissingDependencyError(cmd)
        logger.debug(f"Found required command: {cmd}")


def run_command(
    cmd: List[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[int] = None,
) -> subprocess.CompletedProcess:
    cmd_str = ' '.join(cmd)
    logger.debug(f"💻 Running: {cmd_str}")
    try:
        result = subprocess.run(
            cmd,
            check=check,
            text=True,
            cwd=cwd,
            env=env,
            timeout=timeout or Config.COMMAND_TIMEOUT,
            stdout=subprocess.PIPE if capture_output else None,
            stderr=subprocess.PIPE if capture_output else None,
        )
        if capture_output:
            logger.debug(f"🟢 Output:\n{result.stdout}")
        return result
    except subprocess.CalledProcessError as e:
        msg = f"❌ Command failed: {cmd_str} (exit code: {e.returncode})"
        if capture_output:
            msg += f"\nStdout:\n{e.stdout}\nStderr:\n{e.stderr}"
        # Callers decide whether a failure is expected (e.g. "not found" probes)
        logger.debug(msg)
        raise


def poll_until(
    predicate: Callable[[], bool],
    interval: float,
    attempts: int,
    *,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Evaluate ``predicate`` up to ``attempts`` times, sleeping ``interval`` between tries.

    Args:
        predicate: Readiness check; exceptions count as "not ready yet"
        interval: Fixed delay between attempts in seconds
        attempts: Maximum number of evaluations
        description: Used in progress log lines
        sleep: Sleep function (injected by tests)

    Returns:
        True as soon as the predicate holds, False once the budget is exhausted
    """
    for attempt in range(1, attempts + 1):
        try:
            if predicate():
                return True
        except Exception as e:
            logger.debug(f"Check for {description} raised: {e}")

        if attempt < attempts:
            logger.info(f"⏳ Waiting for {description}... ({attempt}/{attempts})")
            sleep(interval)

    return False
