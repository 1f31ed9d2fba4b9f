"""HTTP client for the Azure Resource Manager REST API.

Wraps an ``httpx.Client`` with bearer-token authentication from
azure-identity, maps error responses onto the ``ArmError`` hierarchy,
follows ``nextLink`` pagination and decodes bodies defensively (string
encoded JSON, duplicate case-variant keys).
"""

import logging
import threading
import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import DefaultAzureCredential

from ..policy.values import lookup_key, parse_json_payload
from .errors import ArmApiError, ArmAuthenticationError, ArmError, ArmNotFoundError, TransientArmError
from .retry import Retrier, RetryPolicy


logger = logging.getLogger(__name__)


DEFAULT_BASE_URL = "https://management.azure.com"
TOKEN_SCOPE = "https://management.azure.com/.default"

# Refresh the bearer token this many seconds before it expires
TOKEN_REFRESH_MARGIN = 300

# Safety bound on nextLink chains
MAX_PAGES = 1000


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given as seconds or an HTTP date."""
    if not value:
        return None

    text = value.strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    return max(0.0, retry_at.timestamp() - time.time())


def _error_details(body: Any) -> tuple:
    """Extract (code, message) from an ARM error body."""
    if not isinstance(body, dict):
        return None, None
    found, error = lookup_key(body, 'error')
    if not found or not isinstance(error, dict):
        return None, None
    _, code = lookup_key(error, 'code')
    _, message = lookup_key(error, 'message')
    return code, message


class ArmClient:
    """Read-only ARM REST client with retry and pagination."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        credential=None,
        timeout: float = 60.0,
        retry_policy: Optional[RetryPolicy] = None,
        retrier: Optional[Retrier] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Management endpoint
            credential: azure-identity credential; DefaultAzureCredential when omitted
            timeout: Per-request timeout in seconds
            retry_policy: Retry settings for transient failures
            retrier: Pre-built Retrier (overrides retry_policy)
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url.rstrip('/')
        self._credential = credential
        self._token: Optional[str] = None
        self._token_expires_on = 0.0
        self._token_lock = threading.Lock()

        self.retrier = retrier or Retrier(retry_policy)
        self._http = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

        self._stats = {"requests": 0, "pages": 0}
        self._stats_lock = threading.Lock()

    def __enter__(self) -> "ArmClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _get_token(self) -> str:
        with self._token_lock:
            if self._token and time.time() < self._token_expires_on - TOKEN_REFRESH_MARGIN:
                return self._token

            if self._credential is None:
                self._credential = DefaultAzureCredential()

            try:
                access_token = self._credential.get_token(TOKEN_SCOPE)
            except ClientAuthenticationError as e:
                raise ArmAuthenticationError(f"Could not acquire a management API token: {e}") from e
            self._token = access_token.token
            self._token_expires_on = float(access_token.expires_on)
            return self._token

    def _url(self, path: str) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(self, url: str, params: Optional[Dict[str, str]]) -> Any:
        """Perform one GET attempt, mapping failures onto ArmError types."""
        with self._stats_lock:
            self._stats["requests"] += 1

        headers = {"Authorization": f"Bearer {self._get_token()}"}

        try:
            response = self._http.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientArmError(f"Timeout calling {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientArmError(f"Transport error calling {url}: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientArmError(
                f"HTTP {status} for {url}",
                status_code=status,
                retry_after=parse_retry_after(response.headers.get('Retry-After')),
            )

        try:
            body = parse_json_payload(response.content)
        except ValueError as e:
            if status >= 400:
                body = None
            else:
                raise ArmApiError(status, url, code="InvalidJson", message=str(e)) from e

        if status == 404:
            code, message = _error_details(body)
            raise ArmNotFoundError(status, url, code, message)
        if status >= 400:
            code, message = _error_details(body)
            raise ArmApiError(status, url, code, message)

        return body

    def get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET one object, retrying transient failures.

        Args:
            path: Path relative to the management endpoint, or an absolute URL
            params: Query parameters (api-version, $filter)

        Returns:
            Decoded JSON body
        """
        url = self._url(path)
        return self.retrier.call(lambda: self._request(url, params), description=f"GET {path}")

    def get_all(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """GET a collection, following nextLink pages.

        Returns:
            Concatenated ``value`` arrays from every page
        """
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = path
        next_params = params
        seen = set()

        for _ in range(MAX_PAGES):
            if not next_url or next_url in seen:
                break
            seen.add(next_url)

            page = self.get(next_url, next_params)
            with self._stats_lock:
                self._stats["pages"] += 1

            if isinstance(page, list):
                items.extend(item for item in page if isinstance(item, dict))
                break
            if not isinstance(page, dict):
                raise ArmError(f"Unexpected collection payload from {next_url}: {type(page).__name__}")

            _, values = lookup_key(page, 'value')
            if isinstance(values, list):
                items.extend(item for item in values if isinstance(item, dict))

            _, next_url = lookup_key(page, 'nextLink')
            # nextLink already carries every query parameter
            next_params = None
        else:
            logger.warning(f"Stopped following nextLink for {path} after {MAX_PAGES} pages")

        return items

    def get_stats(self) -> Dict[str, Any]:
        """Get request statistics, including retries."""
        with self._stats_lock:
            stats = dict(self._stats)
        stats["retry"] = self.retrier.get_stats()
        return stats
