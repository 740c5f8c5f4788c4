from __future__ import annotations

import time
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import httpx

from deploy_watch.errors import NetworkError, ProbeTimeoutError


DEFAULT_USER_AGENT = "deploy-watch/1.0"
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


@dataclass(frozen=True)
class ProbeResponse:
    url: str
    status_code: int
    headers: dict[str, str]
    body: str
    response_time_ms: float

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def content_length(self) -> int:
        raw = self.header("content-length")
        if raw is None:
            return len(self.body.encode("utf-8"))
        try:
            return int(raw)
        except ValueError:
            return 0


def safe_url(url: str) -> str:
    """Strip userinfo, query strings and fragments so secrets never end up in logs."""
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        netloc = parts.hostname or ""
        if ":" in netloc:
            netloc = f"[{netloc}]"
        if parts.port is not None:
            netloc = f"{netloc}:{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


class MetricSampler:
    """Performs exactly one timed GET per call. Retry policy belongs to callers."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_seconds: float = 10.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.client = client
        self.timeout_seconds = float(timeout_seconds)
        self.user_agent = user_agent

    async def probe(self, url: str, *, timeout_seconds: float | None = None) -> ProbeResponse:
        timeout = self.timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        headers = {"User-Agent": self.user_agent, "Accept": DEFAULT_ACCEPT}
        started = time.perf_counter()
        try:
            resp = await self.client.get(url, headers=headers, timeout=timeout, follow_redirects=False)
        except httpx.TimeoutException as e:
            raise ProbeTimeoutError(url, f"Request timeout after {int(timeout * 1000)}ms") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(url, f"{type(e).__name__}: {e}") from e

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return ProbeResponse(
            url=str(resp.url),
            status_code=resp.status_code,
            headers={k.lower(): v for k, v in resp.headers.items()},
            body=resp.text or "",
            response_time_ms=round(elapsed_ms, 3),
        )
