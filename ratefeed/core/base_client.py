"""
Abstract base class for all provider clients.

A provider client is a protocol adapter for one funder portal: it performs
login-or-reuse against the Session Store, attaches session material to
every call and turns HTTP-level failures into the error taxonomy. Each
funder implements the capabilities it supports (quote, bulk export,
scrape); the rest raise NotImplementedError.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from .batch import StopSignal, process_batch
from .browser import BrowserManager
from .config import Credentials, ProviderConfig, get_provider_config
from .errors import ProtocolStructureError, SessionExpired, TransientNetworkError
from .rate_limiter import RateLimitPolicy
from .schema import BatchResult, ProviderCode, QuoteRequest, QuoteResult, RunProgress, Session
from .session_store import SessionStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[RunProgress], None]


class ProviderClient(ABC):
    """
    Abstract base class for funder protocol adapters.

    Class Attributes:
        PROVIDER: ProviderCode for this client
        BASE_URL: Portal root, used when the config has none
        LOGIN_MARKERS: Body fragments that only appear on the login page
        SESSION_TTL_HOURS: Lifetime given to sessions this client saves
        CSRF_HEADER: Header carrying the session's CSRF token, if any
        RATEBOOK_PARSER: RateParser subclass for this funder's export files

    Example:
        @register_provider(ProviderCode.LEX)
        class LexClient(ProviderClient):
            PROVIDER = ProviderCode.LEX
            LOGIN_MARKERS = ['name="txtPassword"']

            def login(self, credentials): ...
            def extract_session_tokens(self, html_body): ...
    """

    PROVIDER: ProviderCode = None
    BASE_URL: str = ""
    LOGIN_MARKERS: List[str] = []
    SESSION_TTL_HOURS: float = 8.0
    CSRF_HEADER: Optional[str] = None
    RATEBOOK_PARSER: Optional[type] = None

    DEFAULT_USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    )

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        config: Optional[ProviderConfig] = None,
        http: Optional[requests.Session] = None,
        policy: Optional[RateLimitPolicy] = None,
        headless: bool = True,
    ):
        """
        Initialize the client.

        Args:
            session_store: Where sessions are read and written
            config: Provider configuration (defaults to the registered one)
            http: HTTP session; injectable for tests
            policy: Pacing/retry policy; built from config when omitted
            headless: Run any browser this client opens headless
        """
        self.config = config or get_provider_config(self.PROVIDER.value)
        self.session_store = session_store or SessionStore()
        self.http = http or requests.Session()
        self.http.headers.setdefault('User-Agent', self.DEFAULT_USER_AGENT)
        self.policy = policy or RateLimitPolicy.from_config(self.config.rate_limit)
        self.headless = headless
        self._browser: Optional[BrowserManager] = None

    @property
    def provider_id(self) -> str:
        return self.PROVIDER.value

    @property
    def base_url(self) -> str:
        return (self.config.urls.base_url or self.BASE_URL).rstrip('/')

    @property
    def session_ttl_hours(self) -> float:
        return self.config.session.ttl_hours or self.SESSION_TTL_HOURS

    def url(self, path: str) -> str:
        if path.startswith('http'):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    @property
    def browser(self) -> BrowserManager:
        """Lazy initialization of browser manager."""
        if self._browser is None:
            self._browser = BrowserManager(
                headless=self.headless,
                request_delay=self.policy.min_delay,
            )
        return self._browser

    def close(self):
        """Clean up resources."""
        if self._browser:
            self._browser.close()
            self._browser = None
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # === Capabilities ===

    @property
    def supports_quote(self) -> bool:
        return self.config.supports('quote')

    @property
    def supports_export(self) -> bool:
        return self.config.supports('export')

    @property
    def supports_scrape(self) -> bool:
        return self.config.supports('scrape')

    # === Abstract methods - must be implemented by subclasses ===

    @abstractmethod
    def login(self, credentials: Credentials) -> Session:
        """
        Perform the login handshake and persist the resulting session.

        Raises:
            AuthenticationFailed: credentials rejected (error selectors matched)
            ProtocolStructureError: an expected token was not found
        """
        pass

    @abstractmethod
    def extract_session_tokens(self, html_body: str) -> Dict[str, Any]:
        """
        Pull session material (CSRF token, profile) out of a page body.

        All knowledge of the portal's embedded script variables lives here.
        """
        pass

    # === Optional capabilities - override where supported ===

    def quote(self, request: QuoteRequest) -> QuoteResult:
        raise NotImplementedError(f"{self.provider_id} does not support single quotes")

    def bulk_export(
        self,
        export_config: Any,
        on_progress: Optional[ProgressCallback] = None,
        stop: Optional[StopSignal] = None,
    ) -> str:
        """Run the bulk export protocol. Returns the downloaded CSV text."""
        raise NotImplementedError(f"{self.provider_id} does not support bulk export")

    def scrape(
        self,
        scrape_config: Any = None,
        on_progress: Optional[ProgressCallback] = None,
        stop: Optional[StopSignal] = None,
    ) -> List[Any]:
        raise NotImplementedError(f"{self.provider_id} does not support scraping")

    def run_batch_quotes(
        self,
        requests_: Iterable[QuoteRequest],
        on_progress: Optional[Callable[[int, int, Any], None]] = None,
        stop: Optional[StopSignal] = None,
    ) -> BatchResult:
        """Quote many vehicles through the batch processor."""
        return process_batch(
            list(requests_),
            self.quote,
            policy=self.policy,
            on_progress=on_progress,
            stop=stop,
            concurrency=self.config.rate_limit.concurrency,
        )

    # === Session handling ===

    def current_session(self) -> Session:
        """
        The provider's authoritative session.

        Raises:
            SessionExpired: no valid session in the store
        """
        session = self.session_store.get_valid_session(self.PROVIDER)
        if session is None:
            raise SessionExpired("No valid session; log in or capture a new one", provider=self.provider_id)
        return session

    def save_session(
        self,
        cookie_jar: str,
        csrf_token: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
    ) -> Session:
        return self.session_store.save_session(
            self.PROVIDER,
            cookie_jar=cookie_jar,
            csrf_token=csrf_token,
            profile=profile,
            ttl=self.session_ttl_hours,
        )

    def cookie_header(self) -> str:
        """Cookie header built from the HTTP session's jar."""
        return '; '.join(f"{c.name}={c.value}" for c in self.http.cookies)

    def expire_session(self, reason: str) -> SessionExpired:
        """Invalidate the stored session and build the error to raise."""
        self.session_store.invalidate(self.PROVIDER, reason)
        return SessionExpired(reason, provider=self.provider_id)

    def auth_headers(self, session: Session) -> Dict[str, str]:
        headers = {'Cookie': session.cookie_jar}
        if self.CSRF_HEADER and session.csrf_token:
            headers[self.CSRF_HEADER] = session.csrf_token
        return headers

    def is_login_page(self, body: str, url: Optional[str] = None) -> bool:
        """True when a response is the portal's login page."""
        if not body:
            return False
        return any(marker in body for marker in self.LOGIN_MARKERS)

    # === HTTP ===

    def request(
        self,
        method: str,
        path: str,
        authenticated: bool = True,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> requests.Response:
        """
        Issue an HTTP request against the portal.

        Authenticated calls carry the stored session's cookies and CSRF
        token. A login page in the response means the session was dropped
        server-side.

        Raises:
            SessionExpired: 401/403 or login page on an authenticated call
            TransientNetworkError: timeout, connection failure, 429 or 5xx
            ProtocolStructureError: any other 4xx
        """
        url = self.url(path)
        all_headers = dict(headers or {})
        if authenticated:
            all_headers.update(self.auth_headers(self.current_session()))
        kwargs.setdefault('timeout', self.config.request_timeout)

        logger.debug(f"{method} {url}")
        try:
            response = self.http.request(method, url, headers=all_headers, **kwargs)
        except requests.Timeout as e:
            raise TransientNetworkError(f"Timeout calling {path}: {e}", provider=self.provider_id)
        except requests.ConnectionError as e:
            raise TransientNetworkError(f"Connection error calling {path}: {e}", provider=self.provider_id)

        status = response.status_code
        if authenticated and status in (401, 403):
            raise self.expire_session(f"HTTP {status} from {path}")
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"HTTP {status} from {path}", provider=self.provider_id)
        if authenticated and self.is_login_page(response.text, response.url):
            raise self.expire_session(f"Login page returned for {path}")
        if status >= 400:
            raise self.structure_error(f"HTTP {status} from {path}", response.text)
        return response

    def request_json(self, method: str, path: str, **kwargs) -> Any:
        response = self.request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError:
            raise self.structure_error(f"Response from {path} was not valid JSON", response.text)

    def structure_error(self, message: str, body: Optional[str] = None) -> ProtocolStructureError:
        """Log a structural mismatch with a response excerpt and build the error."""
        error = ProtocolStructureError(message, provider=self.provider_id, context=body)
        if error.context:
            logger.error(f"{message}. Response excerpt: {error.context}")
        else:
            logger.error(message)
        return error
