"""
Aggregation API client implementation.
"""

import logging
from decimal import Decimal
from typing import Any, Iterator, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import MaxRetryError
from urllib3.util.retry import Retry

from ..errors import (
    AggregatorAPIError,
    AggregatorError,
    AuthExpiredError,
    RateLimitError,
    TransientNetworkError,
)
from ..sources.base import Source

logger = logging.getLogger(__name__)

# Statuses retried with bounded backoff; everything else fails fast
RETRY_STATUSES = (429, 502, 503, 504)


class AggregatorClient:
    """
    Client for the aggregation API.

    Features:
    - Cursor-paginated transaction pages
    - Bounded exponential backoff on rate limiting and gateway errors
    - 401 surfaces immediately as AuthExpiredError
    """

    DEFAULT_TIMEOUT = 30
    TRANSACTIONS_ENDPOINT = "/v1/transactions"
    STATUS_ENDPOINT = "/v1/status"

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        max_backoff: float = 30.0,
        page_size: int = 100,
    ):
        """
        Initialize aggregation API client.

        Args:
            base_url: API root (e.g., "https://aggregator.example.com")
            token: Access token
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for retryable failures
            backoff_factor: Exponential backoff factor between retries
            max_backoff: Upper bound for a single backoff sleep, in seconds
            page_size: Transactions requested per page
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            }
        )

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            backoff_max=max_backoff,
            status_forcelist=list(RETRY_STATUSES),
            allowed_methods=["GET"],
            respect_retry_after_header=False,
            raise_on_status=True,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
    ) -> requests.Response:
        """Make an API request with error mapping."""
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"API Request: {method} {url} params={params}")

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                timeout=self.timeout,
            )
        except (requests.exceptions.RetryError, MaxRetryError) as e:
            if "429" in str(e):
                logger.warning(f"Rate limited by {url}, retries exhausted")
                raise RateLimitError(f"Rate limited by aggregation API: {e}") from e
            logger.warning(f"Retries exhausted for {url}: {e}")
            raise TransientNetworkError(f"Aggregation API unavailable: {e}") from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error to {url}: {e}")
            raise TransientNetworkError(
                f"Failed to connect to aggregation API at {self.base_url}: {e}"
            ) from e
        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout for {url}: {e}")
            raise TransientNetworkError(f"Request to aggregation API timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error for {url}: {e}")
            raise AggregatorError(f"Request failed: {e}") from e

        logger.debug(f"Response status: {response.status_code}")

        if response.status_code == 401:
            logger.error("Aggregation API rejected the access token")
            raise AuthExpiredError("Access token expired or revoked; re-authenticate")

        if response.status_code == 429:
            raise RateLimitError("Rate limited by aggregation API")

        if not response.ok:
            try:
                message = response.json().get("message", response.reason)
            except ValueError:
                message = response.reason
            logger.error(f"API Error {response.status_code}: {message}")
            raise AggregatorAPIError(
                status_code=response.status_code,
                message=message,
                response_body=response.text,
            )

        return response

    def _decode(self, response: requests.Response) -> dict[str, Any]:
        """Decode a JSON body keeping amounts exact."""
        try:
            body = response.json(parse_float=Decimal)
        except ValueError as e:
            raise AggregatorAPIError(
                status_code=response.status_code,
                message=f"Invalid JSON body: {e}",
                response_body=response.text,
            ) from e
        if not isinstance(body, dict):
            raise AggregatorAPIError(
                status_code=response.status_code,
                message=f"Expected a JSON object, got {type(body).__name__}",
                response_body=response.text,
            )
        return body

    def test_connection(self) -> bool:
        """Test connection to the aggregation API."""
        try:
            self._request("GET", self.STATUS_ENDPOINT)
            return True
        except AggregatorError:
            return False

    def fetch_page(
        self,
        cursor: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> dict[str, Any]:
        """Fetch one page of accounts and transactions."""
        params: dict[str, Any] = {"count": self.page_size}
        if cursor:
            params["cursor"] = cursor
        if start_date:
            params["start_date"] = start_date
        if end_date:
            params["end_date"] = end_date

        response = self._request("GET", self.TRANSACTIONS_ENDPOINT, params=params)
        return self._decode(response)

    def iter_pages(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> Iterator[dict[str, Any]]:
        """Yield pages until the API stops returning a cursor."""
        cursor: Optional[str] = None
        seen_cursors: set[str] = set()
        fetched = 0

        while True:
            page = self.fetch_page(cursor=cursor, start_date=start_date, end_date=end_date)
            fetched += 1
            yield page

            cursor = page.get("next_cursor")
            if not cursor:
                break
            if cursor in seen_cursors:
                logger.warning(f"Aggregation API repeated cursor {cursor!r}, stopping")
                break
            seen_cursors.add(cursor)
            if max_pages is not None and fetched >= max_pages:
                logger.info(f"Stopping after {fetched} pages (max_pages)")
                break

    def fetch_pages(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        pages = list(self.iter_pages(start_date, end_date, max_pages))
        total = sum(len(page.get("transactions") or []) for page in pages)
        logger.info(f"Fetched {len(pages)} page(s), {total} transactions")
        return pages

    def fetch_source(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> Source:
        """Fetch all pages and wrap them for the aggregator adapter."""
        pages = self.fetch_pages(start_date, end_date, max_pages)
        return Source.from_api_pages(pages, name=f"{self.base_url}{self.TRANSACTIONS_ENDPOINT}")
