"""Polling utilities for waiting on conditions with a timeout.

Every "wait for X" in the provisioner is expressed as a check callable handed
to :class:`PollingConfig`. A check returns:

* a value other than ``None`` when the condition is met (the value is returned),
* ``None`` when the condition is not met yet (polling continues),
* or raises, which stops polling immediately and propagates the error.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from talos_provisioner.exceptions import PollTimeoutError
from talos_provisioner.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollingConfig:
    """Configuration for a polling operation.

    Attributes:
        timeout: Total time budget in seconds
        interval: Sleep between attempts in seconds
        description: Human readable name of what is awaited
        max_attempts: Optional cap on the number of checks
    """

    timeout: float
    interval: float
    description: str
    max_attempts: int | None = None

    def poll(self, check: Callable[[], T | None]) -> T:
        """Poll until ``check`` returns a value, raises, or the budget runs out.

        Args:
            check: Condition callable (see module docstring)

        Returns:
            The value produced by the first successful check

        Raises:
            PollTimeoutError: If the condition is not met within the budget
        """
        logger.info(f"{self.description}...")

        start = time.monotonic()
        attempts = 0

        while True:
            attempts += 1
            value = check()
            if value is not None:
                logger.info(f"✓ {self.description}")
                return value

            elapsed = time.monotonic() - start
            if self.max_attempts is not None and attempts >= self.max_attempts:
                raise PollTimeoutError(
                    f"Gave up after {attempts} attempts: {self.description}",
                    f"Condition not met after {elapsed:.0f} seconds",
                )
            if elapsed >= self.timeout:
                raise PollTimeoutError(
                    f"Timeout after {self.timeout:.0f} seconds: {self.description}",
                    f"Condition checked {attempts} time(s) without success",
                )

            logger.debug(f"{self.description}: not ready (attempt {attempts})")
            time.sleep(self.interval)

    def poll_until(self, check: Callable[[], bool]) -> None:
        """Poll until ``check`` returns True.

        Simplified form for boolean conditions.
        """
        self.poll(lambda: True if check() else None)
