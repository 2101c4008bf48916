"""External command execution (talosctl, kubectl, helm)."""

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from talos_provisioner.exceptions import CommandError, ErrorCategory
from talos_provisioner.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 300


@dataclass
class CommandResult:
    """Captured output of a finished command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


def run_command(
    args: list[str],
    kubeconfig: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> CommandResult:
    """Run a command and capture its output.

    A non-zero exit code is returned to the caller, not raised, so adapters can
    classify the failure themselves.

    Args:
        args: Program and arguments
        kubeconfig: Optional kubeconfig exported as KUBECONFIG
        env: Extra environment variables
        timeout: Seconds before the process is killed

    Returns:
        CommandResult with stdout, stderr and return code

    Raises:
        CommandError: If the program is missing or times out
    """
    command_env = os.environ.copy()
    if env:
        command_env.update(env)
    if kubeconfig is not None:
        command_env["KUBECONFIG"] = str(kubeconfig)

    logger.debug(f"Running: {' '.join(args)}")

    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=command_env,
        )
    except FileNotFoundError:
        raise CommandError(
            f"{args[0]} is not installed or not in PATH",
            f"Install {args[0]} and make sure it is on your PATH",
        )
    except subprocess.TimeoutExpired:
        raise CommandError(
            f"{args[0]} timed out after {timeout} seconds",
            f"Command: {' '.join(args)}",
            category=ErrorCategory.TRANSIENT_NETWORK,
        )

    logger.debug(f"{args[0]} exited with return code {result.returncode}")
    return CommandResult(
        args=list(args), returncode=result.returncode, stdout=result.stdout, stderr=result.stderr
    )


def require_tool(name: str, install_url: str) -> None:
    """Fail if a command-line tool is not available.

    Raises:
        CommandError: If the tool cannot be found on PATH
    """
    if shutil.which(name) is None:
        raise CommandError(
            f"{name} is not installed or not in PATH",
            f"Please install from {install_url}",
        )
