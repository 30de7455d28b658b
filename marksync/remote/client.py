"""
Thin GitHub REST client used by both remote backends.

Wraps one requests.Session and turns every non-success outcome into a
classified marksync error so the retry engine and the orchestrator never
look at raw HTTP responses.
"""
import time
import logging
from typing import Any, Dict, Optional

import requests

from marksync.constants import (
    DEFAULT_API_URL,
    DEFAULT_REQUEST_TIMEOUT,
    GITHUB_ACCEPT,
    GITHUB_API_VERSION,
)
from marksync.errors import (
    AuthenticationError,
    ConflictError,
    RemoteNotFound,
    SyncError,
    TransientTransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _retry_after(response: requests.Response) -> Optional[float]:
    """Seconds the server asked us to wait, if it said so."""
    value = response.headers.get("Retry-After")
    if value:
        try:
            return float(value)
        except ValueError:
            return None
    reset = response.headers.get("X-RateLimit-Reset")
    if reset:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            return None
    return None


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason or ""
    if isinstance(data, dict):
        return str(data.get("message", ""))
    return ""


class GitHubClient:
    """Authenticated access to the GitHub REST API."""

    def __init__(self, token: str, api_url: str = DEFAULT_API_URL,
                 timeout: int = DEFAULT_REQUEST_TIMEOUT,
                 user_agent: str = "marksync",
                 session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            token: Personal access token (gist or repo scope)
            api_url: API root, overridable for GitHub Enterprise
            timeout: Per-request timeout in seconds
            user_agent: User-Agent header value
            session: Pre-built session (tests inject one)
        """
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": GITHUB_ACCEPT,
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
            "User-Agent": user_agent,
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    @classmethod
    def from_config(cls, config) -> "GitHubClient":
        return cls(
            token=config.token,
            api_url=config.api_url,
            timeout=config.timeout,
            user_agent=config.user_agent,
        )

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.api_url}/{path.lstrip('/')}"

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Send one request and classify the outcome.

        Raises:
            TransientTransportError: Timeouts, connection failures, 429, 5xx
                and exhausted rate limits
            AuthenticationError: 401 and permission 403s
            RemoteNotFound: 404
            ConflictError: 409 and 412
            ValidationError: 422
            SyncError: Any other unexpected status
        """
        url = self._url(path)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise TransientTransportError(f"Request timed out: {method} {url}") from e
        except requests.ConnectionError as e:
            raise TransientTransportError(f"Connection error: {method} {url}: {e}") from e
        except requests.RequestException as e:
            raise TransientTransportError(f"Request failed: {method} {url}: {e}") from e

        logger.debug(f"{method} {url} -> {response.status_code}")
        self._raise_for_status(response, method, url)
        return response

    def _raise_for_status(self, response: requests.Response, method: str, url: str) -> None:
        status = response.status_code
        if status < 400:
            return

        message = _error_message(response)
        where = f"{method} {url}"

        if status == 401:
            raise AuthenticationError(f"GitHub rejected the token ({status}): {message}")
        if status == 403:
            rate_limited = (response.headers.get("X-RateLimit-Remaining") == "0"
                            or "rate limit" in message.lower())
            if rate_limited:
                raise TransientTransportError(f"GitHub rate limit exceeded: {message}",
                                              status_code=status, retry_after=_retry_after(response))
            raise AuthenticationError(f"GitHub denied access to {where}: {message}")
        if status == 404:
            raise RemoteNotFound(f"Not found: {where}")
        if status in (409, 412):
            raise ConflictError(f"Remote changed concurrently ({status}): {message}")
        if status == 422:
            raise ValidationError(f"GitHub refused the request: {message}", [message])
        if status == 429 or status >= 500:
            raise TransientTransportError(f"GitHub API error {status}: {message}",
                                          status_code=status, retry_after=_retry_after(response))
        raise SyncError(f"GitHub API error {status} for {where}: {message}", {"status_code": status})

    def _json(self, response: requests.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ValidationError("GitHub returned a non-JSON body", [str(e)]) from e

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._json(self.request("GET", path, params=params))

    def get_text(self, url: str) -> str:
        response = self.request("GET", url)
        response.encoding = response.encoding or "utf-8"
        return response.text

    def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return self._json(self.request("POST", path, json=json))

    def patch(self, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return self._json(self.request("PATCH", path, json=json))

    def put(self, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return self._json(self.request("PUT", path, json=json))

    def delete(self, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return self._json(self.request("DELETE", path, json=json))

    def authenticate(self) -> str:
        """
        Check the token against ``/user``.

        Returns:
            The authenticated login

        Raises:
            AuthenticationError: If no token is configured or it is rejected
        """
        if not self.token:
            raise AuthenticationError("GitHub token is not set")
        user = self.get("/user")
        login = user.get("login", "") if isinstance(user, dict) else ""
        logger.debug(f"Authenticated as {login}")
        return login
