"""Session-scoped cooperative cancellation."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from deckhand.conversation import RequestMetadata
from deckhand.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

# Time given to an aborted stream to publish its request metadata.
CANCEL_GRACE_SECONDS = 0.005


async def cancel_task(task: asyncio.Future[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


class Subscription:
    """One operation's view of the cancellation signal. Fires at most once."""

    def __init__(self, broker: CancellationBroker):
        self._broker = broker
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def fire(self) -> None:
        if not self._event.is_set():
            self._event.set()

    def close(self) -> None:
        self._broker._unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class CancellationBroker:
    """Broadcast an interrupt to whichever operations are currently subscribed.

    Created by the session owner and torn down with the session. Signals reach
    only current subscribers; a signal with nobody listening is dropped.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []

    @property
    def has_subscribers(self) -> bool:
        return bool(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def signal(self) -> int:
        """Fire every current subscription; returns how many were listening."""
        subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.fire()
        log.debug("Cancellation signalled", subscribers=len(subscribers))
        return len(subscribers)

    async def race(self, work: Awaitable[T]) -> tuple[T | None, bool]:
        """Run work until it finishes or the broker fires.

        Returns ``(result, cancelled)``. The losing branch is cancelled and
        drained before returning; exceptions from the work propagate.
        """
        work_task = asyncio.ensure_future(work)
        subscription = self.subscribe()
        cancel_wait_task = asyncio.create_task(subscription.wait())
        try:
            done, _ = await asyncio.wait(
                {work_task, cancel_wait_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if work_task in done:
                await cancel_task(cancel_wait_task)
                return work_task.result(), False

            log.info("Operation interrupted")
            await self._drain(work_task)
            return None, True
        except asyncio.CancelledError:
            await cancel_task(work_task)
            raise
        finally:
            subscription.close()
            await cancel_task(cancel_wait_task)

    @staticmethod
    async def _drain(task: asyncio.Future[Any]) -> None:
        if task.done():
            if not task.cancelled() and task.exception() is not None:
                log.debug("Interrupted operation had failed", error=str(task.exception()))
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Interrupted operation raised while draining", error=str(e))

    def install_sigint_handler(self) -> Callable[[], None]:
        """Route SIGINT to the broker while something is subscribed.

        With nobody subscribed the handler raises ``KeyboardInterrupt`` so the
        line reader can treat it as a Ctrl+C keypress. Returns a function that
        restores the previous handler.
        """
        loop = asyncio.get_running_loop()

        def _handle_sigint(signum: int, frame: Any) -> None:
            if self.has_subscribers:
                loop.call_soon_threadsafe(self.signal)
                return
            raise KeyboardInterrupt

        previous = signal.signal(signal.SIGINT, _handle_sigint)

        def _restore() -> None:
            signal.signal(signal.SIGINT, previous)

        return _restore


class RequestMetadataSlot:
    """Request metadata observed so far by the running backend stream."""

    def __init__(self) -> None:
        self._value: RequestMetadata | None = None

    def set(self, metadata: RequestMetadata) -> None:
        self._value = metadata

    def peek(self) -> RequestMetadata | None:
        return self._value

    def take(self) -> RequestMetadata | None:
        value, self._value = self._value, None
        return value
