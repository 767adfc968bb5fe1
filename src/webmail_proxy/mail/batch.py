"""Best-effort concurrent batch operations."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, TypeVar

from webmail_proxy.lib.config import app_config
from webmail_proxy.lib.errors import InternalError, WebmailError
from webmail_proxy.lib.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class BatchResult:
    """Independent per-item outcomes. Successful items are never rolled back."""

    succeeded: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": self.errors,
        }


def run_batch(
    items: Iterable[T],
    fn: Callable[[T], Any],
    max_workers: int | None = None,
    describe: Callable[[T], dict[str, Any]] | None = None,
) -> BatchResult:
    """
    Apply ``fn`` to every item concurrently.

    Args:
        items: Work items (e.g. message references)
        fn: Operation; each call opens its own mail connection
        max_workers: Thread pool size (default: BATCH_MAX_WORKERS)
        describe: Turns an item into the identifying fields of an error entry

    Returns:
        BatchResult with success and failure counts
    """
    items = list(items)
    result = BatchResult()
    if not items:
        return result

    workers = max(1, min(max_workers or app_config.batch_max_workers, len(items)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mail-batch") as executor:
        futures = {executor.submit(fn, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                future.result()
                result.succeeded += 1
            except WebmailError as e:
                result.failed += 1
                entry = dict(describe(item)) if describe else {}
                entry.update({"error": e.category, "message": e.message})
                result.errors.append(entry)
                logger.warning(f"Batch item failed: {e.category}: {e.message}")
            except Exception as e:
                result.failed += 1
                entry = dict(describe(item)) if describe else {}
                entry.update({"error": InternalError.category, "message": InternalError.public_message})
                result.errors.append(entry)
                logger.exception(f"Batch item failed unexpectedly: {type(e).__name__}")

    logger.info(f"Batch finished: {result.succeeded} succeeded, {result.failed} failed")
    return result
