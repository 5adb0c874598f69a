"""Production client that speaks the Anthropic Messages API."""

from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Mapping, Optional

from ..errors import ErrorKind, SyncError
from .completion import CompletionClient

__all__ = ["AnthropicClient"]


Transport = Callable[[Dict[str, Any]], str]

API_VERSION = "2023-06-01"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class AnthropicClient(CompletionClient):
    """Thin adapter around the Messages API."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.anthropic.com/v1/messages",
        model: str = "claude-3-5-sonnet-20241022",
        max_tokens: int = 16_384,
        transport: Optional[Transport] = None,
        timeout: float = 600.0,
        **retry: Any,
    ) -> None:
        super().__init__(model, **retry)
        self._api_key = api_key or os.getenv("CLAUDE_API_KEY") or os.getenv("ANTHROPIC_API_KEY")
        self._base_url = base_url
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise SyncError(
                "An API key is required when using the default transport.",
                kind=ErrorKind.CONFIG,
            )

    def build_payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }

    def _raw_complete(self, prompt: str) -> str:
        raw_response = self._transport(self.build_payload(prompt))
        text = self._extract_text(raw_response)
        if not text:
            raise SyncError(
                "Completion response did not contain any text.",
                kind=ErrorKind.TRANSPORT,
                details={"response": raw_response[:500]},
            )
        return text

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport."""
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "x-api-key": self._api_key or "",
                "anthropic-version": API_VERSION,
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return response.read().decode("utf-8")
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            if error.code == 429:
                raise SyncError(
                    "Rate limited by the completion service.",
                    kind=ErrorKind.RATE_LIMIT,
                    details={
                        "status": error.code,
                        "retry_after": _parse_retry_after(_header(error.headers, "retry-after")),
                    },
                ) from error
            raise SyncError(
                f"HTTP {error.code}: {message[:500]}",
                kind=ErrorKind.TRANSPORT,
                details={"status": error.code},
            ) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise SyncError(
                f"Failed to reach completion endpoint: {error.reason}",
                kind=ErrorKind.TRANSPORT,
            ) from error
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise SyncError("Completion request timed out.", kind=ErrorKind.TRANSPORT) from error

    @staticmethod
    def _extract_text(raw_response: str) -> str:
        """Join the text blocks of a Messages API response."""
        if not raw_response:
            return ""
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if not isinstance(data, dict):
            return raw_response
        if data.get("type") == "error":
            error = data.get("error") or {}
            kind = ErrorKind.RATE_LIMIT if error.get("type") == "rate_limit_error" else ErrorKind.TRANSPORT
            raise SyncError(str(error.get("message") or "completion service error"), kind=kind)

        blocks = data.get("content")
        if isinstance(blocks, list):
            parts = [
                block.get("text", "")
                for block in blocks
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            return "".join(parts)
        return ""


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if headers is None:
        return None
    return headers.get(name) or headers.get(name.title())
