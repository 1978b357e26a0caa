from __future__ import annotations

import threading
from typing import Any, Optional

from .errors import OperationCancelled


class CancellationToken:
    """Cooperative cancellation flag checked between iterations or steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, **context: Any) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled", details=context)


def check_cancelled(token: Optional[CancellationToken], **context: Any) -> None:
    if token is not None:
        token.raise_if_cancelled(**context)
