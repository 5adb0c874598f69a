"""Pull request operations against the GitHub REST API."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import ErrorKind, SyncError

# (method, url, body) -> decoded JSON
Transport = Callable[[str, str, Optional[Dict[str, Any]]], Any]

_PAGE_SIZE = 100


@dataclass(frozen=True, slots=True)
class OpenPullRequest:
    number: int
    title: str
    url: str
    files: Tuple[str, ...] = ()


class GitHubClient:
    """Create and inspect pull requests for one repository."""

    def __init__(
        self,
        *,
        owner: str,
        repo: str,
        token: Optional[str] = None,
        api_url: str = "https://api.github.com",
        transport: Optional[Transport] = None,
        timeout: float = 30.0,
    ) -> None:
        if not owner or not repo:
            raise SyncError("GitHub owner and repo are required.", kind=ErrorKind.CONFIG)
        self.owner = owner
        self.repo = repo
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport or self._http_transport
        if transport is None and not token:
            raise SyncError(
                "A GitHub token is required when using the default transport.",
                kind=ErrorKind.CONFIG,
            )

    def _repo_url(self, suffix: str) -> str:
        return f"{self._api_url}/repos/{self.owner}/{self.repo}{suffix}"

    def _http_transport(self, method: str, url: str, body: Optional[Dict[str, Any]]) -> Any:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            method=method,
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise SyncError(
                f"GitHub HTTP {error.code}: {message[:500]}",
                kind=ErrorKind.TRANSPORT,
                details={"status": error.code, "url": url},
            ) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise SyncError(f"Failed to reach GitHub: {error.reason}", kind=ErrorKind.TRANSPORT) from error
        return json.loads(raw) if raw.strip() else None

    def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> str:
        """Open a pull request and return its HTML URL."""
        payload = self._transport(
            "POST",
            self._repo_url("/pulls"),
            {"title": title, "body": body, "head": head, "base": base},
        )
        if not isinstance(payload, Mapping) or not payload.get("html_url"):
            raise SyncError("GitHub did not return a pull request URL.", kind=ErrorKind.TRANSPORT)
        return str(payload["html_url"])

    def _paged(self, suffix: str) -> Iterable[Mapping[str, Any]]:
        page = 1
        while True:
            separator = "&" if "?" in suffix else "?"
            url = self._repo_url(f"{suffix}{separator}per_page={_PAGE_SIZE}&page={page}")
            items = self._transport("GET", url, None)
            if not isinstance(items, list) or not items:
                return
            for item in items:
                if isinstance(item, Mapping):
                    yield item
            if len(items) < _PAGE_SIZE:
                return
            page += 1

    def list_open_pull_requests(self, *, include_files: bool = True) -> List[OpenPullRequest]:
        pulls: List[OpenPullRequest] = []
        for item in self._paged("/pulls?state=open"):
            number = int(item.get("number", 0))
            files: Tuple[str, ...] = ()
            if include_files:
                files = tuple(
                    str(entry.get("filename"))
                    for entry in self._paged(f"/pulls/{number}/files")
                    if entry.get("filename")
                )
            pulls.append(
                OpenPullRequest(
                    number=number,
                    title=str(item.get("title", "")),
                    url=str(item.get("html_url", "")),
                    files=files,
                )
            )
        return pulls


def find_conflicting_pull_requests(
    paths: Iterable[str],
    pulls: Iterable[OpenPullRequest],
) -> Dict[int, List[str]]:
    """Map PR number to the subset of ``paths`` it also touches."""
    wanted = set(paths)
    conflicts: Dict[int, List[str]] = {}
    for pull in pulls:
        overlap = sorted(wanted.intersection(pull.files))
        if overlap:
            conflicts[pull.number] = overlap
    return conflicts


__all__ = ["GitHubClient", "OpenPullRequest", "find_conflicting_pull_requests"]
