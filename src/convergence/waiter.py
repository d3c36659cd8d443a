"""Completion waiter for asynchronous provider requests.

Mutating calls return a request handle. The waiter polls the handle until
the provider reports the request done or failed, the timeout elapses, or
the caller cancels.
"""

from __future__ import annotations

import asyncio
import logging

from .config import DEFAULT_REQUEST_POLL_INTERVAL_SECONDS
from .provider import ProviderClient, RequestState, RequestStatus

logger = logging.getLogger(__name__)


class AsyncOperationError(Exception):
    """Base error for asynchronous request tracking."""

    def __init__(self, message: str, handle: str) -> None:
        super().__init__(message)
        self.handle = handle


class AsyncOperationFailedError(AsyncOperationError):
    """Raised when the provider reports the request failed."""

    def __init__(self, handle: str, provider_message: str) -> None:
        super().__init__(f"Request {handle} failed: {provider_message}", handle)
        self.provider_message = provider_message


class AsyncOperationTimeoutError(AsyncOperationError):
    """Raised when the request did not finish within the timeout."""

    def __init__(self, handle: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Request {handle} did not finish within {timeout_seconds}s", handle
        )
        self.timeout_seconds = timeout_seconds


class OperationCancelledError(AsyncOperationError):
    """Raised when the wait was cancelled before the request finished."""

    def __init__(self, handle: str) -> None:
        super().__init__(f"Wait for request {handle} was cancelled", handle)


class CompletionWaiter:
    """Polls asynchronous request handles until they settle."""

    def __init__(
        self,
        client: ProviderClient,
        poll_interval_seconds: float = DEFAULT_REQUEST_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._client = client
        self._poll_interval = poll_interval_seconds

    async def wait(
        self,
        handle: str | None,
        timeout_seconds: float,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Block until the request behind handle finishes.

        Args:
            handle: Request handle returned by a mutating call. None means the
                call completed synchronously and there is nothing to wait for.
            timeout_seconds: Upper bound for the whole wait.
            cancel_event: Optional event; setting it aborts the wait.

        Raises:
            AsyncOperationFailedError: If the provider reports failure.
            AsyncOperationTimeoutError: If the timeout elapses first.
            OperationCancelledError: If the wait is cancelled.
            ProviderError: If polling the request status fails.
        """
        if handle is None:
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        polls = 0

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelledError(handle)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise AsyncOperationTimeoutError(handle, timeout_seconds)

                state = await self._poll(handle, remaining, timeout_seconds, cancel_event)
                polls += 1

                match state.status:
                    case RequestStatus.DONE:
                        logger.debug(
                            "Request finished", extra={"handle": handle, "polls": polls}
                        )
                        return
                    case RequestStatus.FAILED:
                        raise AsyncOperationFailedError(handle, state.message)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise AsyncOperationTimeoutError(handle, timeout_seconds)

                await self._sleep(min(self._poll_interval, remaining), cancel_event)
        except asyncio.CancelledError as e:
            logger.info("Wait cancelled", extra={"handle": handle})
            raise OperationCancelledError(handle) from e

    async def _poll(
        self,
        handle: str,
        remaining: float,
        timeout_seconds: float,
        cancel_event: asyncio.Event | None,
    ) -> RequestState:
        """Fetch the request status, bounded by the deadline and the cancel event.

        A status call that outlives the bound keeps running on its executor
        thread; its result is discarded.
        """
        loop = asyncio.get_running_loop()
        poll = loop.run_in_executor(None, self._client.get_request_status, handle)
        waiters: set[asyncio.Future] = {poll}
        cancelled: asyncio.Future | None = None
        if cancel_event is not None:
            cancelled = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancelled)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancelled is not None:
                cancelled.cancel()
            if not poll.done():
                poll.cancel()

        if poll in done:
            return poll.result()
        if cancelled is not None and cancelled in done:
            logger.info("Wait cancelled during status call", extra={"handle": handle})
            raise OperationCancelledError(handle)
        logger.warning(
            "Status call exceeded the wait timeout",
            extra={"handle": handle, "timeout_seconds": timeout_seconds},
        )
        raise AsyncOperationTimeoutError(handle, timeout_seconds)

    async def _sleep(self, seconds: float, cancel_event: asyncio.Event | None) -> None:
        """Sleep, waking early if the cancel event is set."""
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            pass
