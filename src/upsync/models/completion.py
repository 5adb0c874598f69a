"""Completion client base class with a bounded rate-limit retry loop."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from ..errors import ErrorKind, SyncError

LOGGER = logging.getLogger(__name__)


class CompletionClient:
    """Send a prompt, get free text back.

    Only ``SyncError(kind=RATE_LIMIT)`` is retried. The wait before retry
    ``n`` (starting at 0) is ``(retry_after or retry_base_delay) * 2 ** n``.
    After ``max_retries`` retries the last rate-limit error propagates
    unchanged; any other error propagates immediately.
    """

    def __init__(
        self,
        model: str,
        *,
        max_retries: int = 3,
        retry_base_delay: float = 60.0,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._model = model
        self._max_retries = max(0, max_retries)
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._clock = clock

    @property
    def model(self) -> str:
        return self._model

    def retry_delay(self, retry_index: int, retry_after: Optional[float] = None) -> float:
        base = retry_after if retry_after is not None and retry_after > 0 else self._retry_base_delay
        return base * (2 ** retry_index)

    def complete(self, prompt: str, *, deadline: Optional[float] = None) -> str:
        """Return the completion text for ``prompt``.

        ``deadline`` is a budget in seconds; the loop gives up (re-raising the
        rate-limit error) rather than sleep past it.
        """
        expires_at = self._clock() + deadline if deadline is not None else None

        for retry_index in range(self._max_retries + 1):
            try:
                return self._raw_complete(prompt)
            except SyncError as error:
                if error.kind is not ErrorKind.RATE_LIMIT or retry_index >= self._max_retries:
                    raise
                delay = self.retry_delay(retry_index, error.details.get("retry_after"))
                if expires_at is not None and self._clock() + delay > expires_at:
                    LOGGER.warning("Rate limited; next retry in %.0fs would pass the deadline", delay)
                    raise
                LOGGER.warning(
                    "Rate limited by completion service, retrying in %.0fs (retry %d/%d)",
                    delay,
                    retry_index + 1,
                    self._max_retries,
                )
                self._sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover

    def _raw_complete(self, prompt: str) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_complete().")


class StaticCompletionClient(CompletionClient):
    """Returns canned responses (or raises canned errors) in order."""

    def __init__(self, *responses: str | SyncError, **kwargs: Any) -> None:
        kwargs.setdefault("sleep", lambda _seconds: None)
        super().__init__("static", **kwargs)
        self._responses = list(responses)
        self.prompts: list[str] = []

    def _raw_complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self._responses:
            raise SyncError("No canned response left.", kind=ErrorKind.TRANSPORT)
        response = self._responses.pop(0)
        if isinstance(response, SyncError):
            raise response
        return response


__all__ = ["CompletionClient", "StaticCompletionClient"]
