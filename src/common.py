"""Common utilities shared by the gate and its certificate tooling."""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Exit code reported for commands that never produced one
COMMAND_FAILED = -1


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: float = 10,
    input_text: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    A missing binary or an expired timeout is reported as a failed
    command rather than raised, so callers only deal with return codes.
    """
    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return COMMAND_FAILED, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return COMMAND_FAILED, '', str(e)


def command_output(cmd: list[str], timeout: float = 5) -> str:
    """Return stripped stdout of a command, or '' if it failed."""
    rc, out, err = run_command(cmd, timeout=timeout)
    if rc != 0:
        logger.debug("%s failed (rc=%d): %s", cmd[0], rc, err.strip())
        return ''
    return out.strip()


def find_executable(name: str, candidates: tuple[str, ...] = ()) -> Optional[str]:
    """Locate an executable on PATH, then at explicit fallback paths."""
    if found := shutil.which(name):
        return found
    for candidate in candidates:
        if Path(candidate).is_file():
            return candidate
    return None
