"""Best-effort side effects that must never fail the request they ride on.

Usage counters and cost logging run through `run_best_effort`, handed to
whatever executor the caller supplies (FastAPI BackgroundTasks in the API
layer, a small shared thread pool elsewhere).
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from companion.core.logging import log_event

# Signature matches BackgroundTasks.add_task
Defer = Callable[..., None]

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="companion-deferred")


def run_best_effort(label: str, fn: Callable, *args, **kwargs) -> None:
    try:
        fn(*args, **kwargs)
    except Exception as e:
        log_event(
            "warning",
            "deferred.failed",
            event_type=label,
            error_code="best_effort_failed",
            extra={"error": e},
        )


def submit_background(fn: Callable, *args, **kwargs) -> None:
    _executor.submit(fn, *args, **kwargs)


def run_inline(fn: Callable, *args, **kwargs) -> None:
    fn(*args, **kwargs)
