"""Process-wide termination broadcast.

When a launched process has no termination handler, its termination is
posted here exactly once. Any number of subscribers may listen, either to
every process or to a single handle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from .process import ProcessHandle

__all__ = ["TerminationBroadcast", "termination_broadcast"]

logger = logging.getLogger(__name__)

TerminationCallback = Callable[["ProcessHandle"], None]


@dataclass(eq=False)
class _Subscription:
    callback: TerminationCallback
    handle: "ProcessHandle | None" = None

    def matches(self, handle: "ProcessHandle") -> bool:
        return self.handle is None or self.handle is handle


class TerminationBroadcast:
    """Fan-out of termination events to subscribers.

    Example:
        ```python
        events = []
        unsubscribe = termination_broadcast.subscribe(events.append)
        try:
            handle = launch(ProcessDescriptor("/bin/true"))
            handle.wait_until_exit()
        finally:
            unsubscribe()
        ```
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self,
        callback: TerminationCallback,
        handle: "ProcessHandle | None" = None,
    ) -> Callable[[], None]:
        """Register a callback.

        Args:
            callback: called with the terminated handle, on a delivery thread
            handle: only deliver events for this handle (None = all)

        Returns:
            A function that removes the subscription
        """
        subscription = _Subscription(callback, handle)
        with self._lock:
            self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def post(self, handle: "ProcessHandle") -> int:
        """Deliver one termination event to every matching subscriber.

        Returns:
            Number of subscribers called
        """
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(handle)]

        for subscription in targets:
            try:
                subscription.callback(handle)
            except Exception as e:
                logger.warning(f"Error in termination subscriber for pid={handle.pid}: {e}")

        logger.debug(f"Posted termination pid={handle.pid} to {len(targets)} subscriber(s)")
        return len(targets)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)


termination_broadcast = TerminationBroadcast()
