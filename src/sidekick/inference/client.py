"""HTTP client for the local llama.cpp server (``/health`` and ``/completion``)."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence
from urllib.parse import urlparse

import httpx

from sidekick.config import LOOPBACK_HOSTS
from sidekick.errors import MalformedResponseError, RequestFailedError
from sidekick.inference.engine import CompletionResponse

logger = logging.getLogger(__name__)

# Health probes must be cheap; a backend still loading weights answers 503.
_HEALTH_TIMEOUT = 2.0


def normalize_base_url(url: str) -> str:
    """Strip the trailing slash and add ``http://`` if no scheme is present.

    >>> normalize_base_url("127.0.0.1:8012/")
    'http://127.0.0.1:8012'
    >>> normalize_base_url("http://localhost:8012")
    'http://localhost:8012'
    """
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def is_loopback_url(url: str) -> bool:
    return urlparse(normalize_base_url(url)).hostname in LOOPBACK_HOSTS


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def base_url_for(host: str, port: int) -> str:
    if ":" in host:  # bare IPv6 literal
        host = f"[{host}]"
    return f"http://{host}:{port}"


class LlamaServerClient:
    """Talks to a llama.cpp-compatible server over loopback HTTP only."""

    def __init__(self, base_url: str, timeout: float = 5.0) -> None:
        base_url = normalize_base_url(base_url)
        if not is_loopback_url(base_url):
            raise ValueError(
                f"Refusing non-local backend URL {base_url}: completions never leave this machine."
            )
        self.base_url = base_url
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=2.0),
            # Loopback only; never route through a proxy from the environment
            trust_env=False,
        )

    async def health(self) -> bool:
        """True when ``GET /health`` answers 200."""
        try:
            resp = await self.client.get(f"{self.base_url}/health", timeout=_HEALTH_TIMEOUT)
            return resp.status_code == 200
        except (httpx.HTTPError, OSError):
            return False

    async def complete(
        self,
        prompt: str,
        *,
        n_predict: int,
        temperature: float,
        stop: Sequence[str] = (),
        top_k: int = 40,
        top_p: float = 0.9,
        repeat_penalty: float = 1.1,
        cache_prompt: bool = True,
        timeout: float | None = None,
    ) -> CompletionResponse:
        """Issue one non-streaming ``POST /completion``.

        Raises RequestFailedError on transport errors, timeouts and non-2xx
        statuses, MalformedResponseError when the body has no string ``content``.
        """
        payload: dict[str, Any] = {
            "prompt": prompt,
            "n_predict": n_predict,
            "temperature": temperature,
            "top_k": top_k,
            "top_p": top_p,
            "repeat_penalty": repeat_penalty,
            "stop": list(stop),
            "cache_prompt": cache_prompt,
            "stream": False,
        }
        req_timeout = httpx.Timeout(timeout or self.timeout, connect=2.0)
        url = f"{self.base_url}/completion"

        try:
            response = await self.client.post(url, json=payload, timeout=req_timeout)
            response.raise_for_status()
        except httpx.ConnectError as e:
            raise RequestFailedError(
                f"Cannot connect to {self.base_url}; is the backend running?",
                unreachable=True,
            ) from e
        except httpx.TimeoutException as e:
            raise RequestFailedError(
                f"Request to {self.base_url} timed out ({type(e).__name__})."
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            body = e.response.text[:200]
            raise RequestFailedError(f"Backend error {status}: {body}", status_code=status) from e
        except httpx.HTTPError as e:
            raise RequestFailedError(f"Request to {self.base_url} failed: {e}") from e

        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> CompletionResponse:
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedResponseError(f"Backend returned invalid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("content"), str):
            raise MalformedResponseError("Backend response has no string 'content' field")

        timings = data.get("timings")
        return CompletionResponse(
            content=data["content"],
            tokens_predicted=_as_int(data.get("tokens_predicted")),
            tokens_evaluated=_as_int(data.get("tokens_evaluated")),
            stop_reason=str(data.get("stop_type") or ""),
            timings=timings if isinstance(timings, dict) else {},
        )

    async def close(self) -> None:
        await self.client.aclose()
