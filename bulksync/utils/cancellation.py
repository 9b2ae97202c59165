"""Cooperative cancellation checked between collaborator calls."""

import threading

from bulksync.exceptions import OperationCancelled


class CancellationToken:
    """Thread-safe flag a caller sets to stop a running bulk operation.

    The orchestrator only looks at the token between collaborator calls, so an
    in-flight bulk load or statement always runs to completion first.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, state: str) -> None:
        if self._event.is_set():
            raise OperationCancelled(state)
