"""HTTP transport adapter used by the guard facade."""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urljoin

import requests

from github_guard.utils.logger import get_logger

DEFAULT_BASE_URL = "https://api.github.com"
DEFAULT_USER_AGENT = "github-guard/0.1.0"


@dataclass
class TransportResponse:
    """The response shape ``GitHubGuard`` consumes.

    ``data`` is the decoded JSON body when the response is JSON, the text
    body otherwise, and None for empty bodies (e.g. 304). ``from_cache`` is
    set by the guard when the body came from the response cache.
    """

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    data: Any = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class RequestsTransport:
    """Performs calls through a ``requests.Session``.

    Relative URLs are resolved against ``base_url``. Network failures
    propagate as ``requests`` exceptions so the retry policy can classify
    them.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self.user_agent = user_agent
        self.logger = get_logger("core.transport")

    def _resolve(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return urljoin(self.base_url, url.lstrip("/"))

    def __call__(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
    ) -> TransportResponse:
        request_headers = {"Accept": "application/vnd.github+json", "User-Agent": self.user_agent}
        request_headers.update(headers or {})
        kwargs: Dict[str, Any] = {"headers": request_headers, "params": params, "timeout": self.timeout}
        if body is not None:
            if isinstance(body, (bytes, str)):
                kwargs["data"] = body
            else:
                kwargs["json"] = body

        full_url = self._resolve(url)
        self.logger.debug("%s %s", method.upper(), full_url)
        resp = self.session.request(method.upper(), full_url, **kwargs)
        return TransportResponse(status_code=resp.status_code, headers=dict(resp.headers), data=self._decode(resp))

    @staticmethod
    def _decode(resp: requests.Response) -> Any:
        if not resp.content:
            return None
        content_type = resp.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                return resp.json()
            except ValueError:
                return resp.text
        return resp.text

    def close(self) -> None:
        self.session.close()
