from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Callable

from .errors import CollaboratorTimeoutError

# Shared pool for bounded collaborator calls. A call that overruns keeps its
# thread until it returns, but the caller moves on.
_collaborator_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="collaborator")


def now_dt() -> datetime:
    return datetime.now()


def call_with_timeout(fn: Callable[..., Any], timeout_seconds: float, *args: Any, **kwargs: Any) -> Any:
    future = _collaborator_pool.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeout:
        future.cancel()
        name = getattr(fn, "__qualname__", repr(fn))
        raise CollaboratorTimeoutError(f"{name} did not finish within {timeout_seconds}s")
