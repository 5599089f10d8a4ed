"""Helpers for driving the async Kubernetes layer from synchronous code."""

from __future__ import annotations

import asyncio
import concurrent.futures
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine to completion from blocking code.

    The deployment pipeline is synchronous; every ``KubernetesController``
    call goes through here.

    Args:
        coro: The coroutine to execute

    Returns:
        The result of the coroutine

    Example:
        from src.infra.k8s import Kr8sController, run_sync

        nodes = run_sync(Kr8sController().get_nodes())
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    if loop.is_running():
        # Called from inside an event loop (e.g. a notebook); run on a worker
        # thread with its own loop instead of blocking this one.
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()
    return loop.run_until_complete(coro)
