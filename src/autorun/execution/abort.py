"""Cancellation tokens and the abort registry.

A run registers a CancellationToken under its run id (or
``workflow_{runId}`` for workflow runs) before invoking the agent runtime
and unregisters it unconditionally afterwards. An external "cancel run X"
request looks the token up and triggers it; the runtime observes the token
and stops cooperatively.

The registry is an injected object, not module state: each
AutomationCore (and each test) owns its own instance. It is per-process
and in-memory; a cancel request that lands on a different worker process
finds nothing and returns False.

Example:
    >>> registry = AbortRegistry()
    >>> token = CancellationToken()
    >>> registry.register("run_1", token)
    >>> registry.abort("run_1")
    True
    >>> token.cancelled
    True
"""

from __future__ import annotations

import asyncio

from autorun.core.errors import CANCELLED_MESSAGE, RunCancelledError
from autorun.core.logging import get_logger

logger = get_logger(__name__)

WORKFLOW_KEY_PREFIX = "workflow_"


class CancellationToken:
    """One-shot cancellation signal passed down the call chain."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = CANCELLED_MESSAGE) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self.reason or CANCELLED_MESSAGE)


class AbortRegistry:
    """Map of in-flight run keys to their cancellation tokens."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    @staticmethod
    def workflow_key(run_id: str) -> str:
        return f"{WORKFLOW_KEY_PREFIX}{run_id}"

    def register(self, key: str, token: CancellationToken | None) -> None:
        if not key or token is None:
            return
        self._tokens[key] = token

    def abort(self, key: str) -> bool:
        """Trigger the token registered under ``key``. True iff one was found."""
        token = self._tokens.get(key)
        if token is None:
            return False
        token.cancel()
        logger.info("abort.triggered", key=key)
        return True

    def unregister(self, key: str) -> None:
        self._tokens.pop(key, None)

    def get(self, key: str) -> CancellationToken | None:
        return self._tokens.get(key)

    def is_registered(self, key: str) -> bool:
        return key in self._tokens

    def keys(self) -> list[str]:
        return list(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)
