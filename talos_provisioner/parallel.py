"""Fan-out / fan-in helper for independent provisioning tasks."""

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

from talos_provisioner.exceptions import BatchError
from talos_provisioner.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MAX_WORKERS = 16


def run_parallel(
    func: Callable[[T], R],
    items: Iterable[T],
    description: str,
    name: Callable[[T], str] = str,
) -> list[R]:
    """Run ``func`` once per item concurrently and join all of them.

    Every task runs to completion before any error is raised, so the caller
    sees the full picture. Results keep the order of ``items``.

    Args:
        func: Unit of work, called with one item
        items: Independent inputs (each task owns its item)
        description: What the batch does, used in errors
        name: Labels an item in error reports

    Returns:
        One result per item, in input order

    Raises:
        The original exception if exactly one task failed, otherwise BatchError
    """
    items = list(items)
    if not items:
        return []

    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(items))) as executor:
        futures = [executor.submit(func, item) for item in items]

    results = []
    errors = []
    for item, future in zip(items, futures):
        error = future.exception()
        if error is not None:
            logger.error(f"{description}: {name(item)} failed: {error}")
            errors.append((name(item), error))
        else:
            results.append(future.result())

    if len(errors) == 1:
        raise errors[0][1]
    if errors:
        raise BatchError(description, errors)

    return results
