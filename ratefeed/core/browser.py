"""
Browser utilities for portal automation.

This module provides the Selenium WebDriver manager used by the Drivalia
client and by interactive session capture, where a human logs in to a
portal in a visible browser and the resulting cookies and page tokens are
saved to the Session Store.
"""

import time
import logging
from typing import Any, Dict, List, Optional, Union

from selenium import webdriver
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.common.by import By
from selenium.webdriver.support.ui import WebDriverWait
from selenium.webdriver.support import expected_conditions as EC
from selenium.common.exceptions import (
    ElementClickInterceptedException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)
from webdriver_manager.chrome import ChromeDriverManager

from .config import get_provider_config
from .errors import AuthenticationFailed, ValidationError
from .schema import ProviderCode, Session

logger = logging.getLogger(__name__)

# Reads the page globals portals use to hand session material to their scripts
CAPTURE_SCRIPT = """
return {
    csrfToken: window.csrf_token || null,
    profile: window.profile || null
};
"""


class BrowserManager:
    """
    Manages Selenium WebDriver lifecycle and common operations.

    Provides:
    - Lazy driver initialization
    - Anti-detection Chrome options
    - Rate limiting between navigations
    - Element waits and resilient clicks
    - Cookie export as a Cookie header
    """

    DEFAULT_USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    )

    def __init__(
        self,
        headless: bool = True,
        request_delay: float = 1.0,
        user_agent: Optional[str] = None,
        window_size: tuple = (1920, 1080),
    ):
        """
        Args:
            headless: Run browser in headless mode
            request_delay: Minimum seconds between navigations
            user_agent: Custom user agent string
            window_size: Browser window dimensions (width, height)
        """
        self.headless = headless
        self.request_delay = request_delay
        self.user_agent = user_agent or self.DEFAULT_USER_AGENT
        self.window_size = window_size

        self._driver: Optional[webdriver.Chrome] = None
        self._last_request_time: float = 0

    @property
    def driver(self) -> webdriver.Chrome:
        """Lazy initialization of Selenium WebDriver."""
        if self._driver is None:
            self._driver = self._create_driver()
        return self._driver

    def _create_driver(self) -> webdriver.Chrome:
        options = Options()
        if self.headless:
            options.add_argument('--headless=new')
        options.add_argument('--no-sandbox')
        options.add_argument('--disable-dev-shm-usage')
        options.add_argument(f'--window-size={self.window_size[0]},{self.window_size[1]}')
        options.add_argument(f'--user-agent={self.user_agent}')

        # Reduce detection
        options.add_argument('--disable-blink-features=AutomationControlled')
        options.add_experimental_option('excludeSwitches', ['enable-automation'])
        options.add_experimental_option('useAutomationExtension', False)

        service = Service(ChromeDriverManager().install())
        driver = webdriver.Chrome(service=service, options=options)
        driver.execute_cdp_cmd('Page.addScriptToEvaluateOnNewDocument', {
            'source': "Object.defineProperty(navigator, 'webdriver', {get: () => undefined})"
        })
        return driver

    def add_init_script(self, source: str) -> None:
        """Run a script in every new document before page scripts load."""
        self.driver.execute_cdp_cmd('Page.addScriptToEvaluateOnNewDocument', {'source': source})

    def close(self):
        """Clean up WebDriver resources."""
        if self._driver:
            try:
                self._driver.quit()
            except WebDriverException as e:
                logger.warning(f"Error closing driver: {e}")
            finally:
                self._driver = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def rate_limit(self):
        """Ensure minimum delay between navigations."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self.request_delay:
            time.sleep(self.request_delay - elapsed)
        self._last_request_time = time.time()

    def get(self, url: str, wait_for_load: bool = True) -> None:
        self.rate_limit()
        self.driver.get(url)
        if wait_for_load:
            self.wait_for_page_load()

    def wait_for_page_load(self, timeout: int = 15, extra_wait: float = 1.0):
        try:
            WebDriverWait(self.driver, timeout).until(
                lambda d: d.execute_script("return document.readyState") == "complete"
            )
            if extra_wait > 0:
                time.sleep(extra_wait)
        except TimeoutException:
            logger.warning(f"Page load timeout after {timeout}s")

    def wait_for_element(
        self,
        by: By,
        value: str,
        timeout: int = 10,
        condition: str = "presence"
    ) -> Optional[Any]:
        """
        Wait for element to appear.

        Args:
            by: Selenium By locator type
            value: Locator value
            timeout: Maximum seconds to wait
            condition: 'presence', 'visible', or 'clickable'

        Returns:
            WebElement if found, None otherwise
        """
        conditions = {
            "presence": EC.presence_of_element_located,
            "visible": EC.visibility_of_element_located,
            "clickable": EC.element_to_be_clickable,
        }
        try:
            wait_condition = conditions.get(condition, EC.presence_of_element_located)
            return WebDriverWait(self.driver, timeout).until(wait_condition((by, value)))
        except TimeoutException:
            return None

    def find_by_text(self, text: str, tag: str = "*", timeout: int = 10) -> Optional[Any]:
        """First element whose visible text contains ``text``."""
        xpath = f"//{tag}[contains(normalize-space(.), {text!r})]"
        return self.wait_for_element(By.XPATH, xpath, timeout=timeout, condition="clickable")

    def safe_click(
        self,
        element,
        scroll_into_view: bool = True,
        use_js: bool = False,
        retries: int = 3
    ) -> bool:
        """
        Click an element, retrying when something overlays it.

        Returns:
            True if click succeeded, False otherwise
        """
        for attempt in range(retries):
            try:
                if scroll_into_view:
                    self.driver.execute_script(
                        "arguments[0].scrollIntoView({block: 'center'});",
                        element
                    )
                    time.sleep(0.3)
                if use_js:
                    self.driver.execute_script("arguments[0].click();", element)
                else:
                    element.click()
                return True
            except ElementClickInterceptedException:
                logger.debug(f"Click intercepted, attempt {attempt + 1}/{retries}")
                time.sleep(0.5)
            except StaleElementReferenceException:
                logger.debug(f"Stale element, attempt {attempt + 1}/{retries}")
                return False
            except WebDriverException as e:
                logger.debug(f"Click failed: {e}, attempt {attempt + 1}/{retries}")
                time.sleep(0.5)
        return False

    def execute_script(self, script: str, *args) -> Any:
        """Execute JavaScript in the browser."""
        return self.driver.execute_script(script, *args)

    def get_cookies(self) -> List[Dict[str, Any]]:
        return self.driver.get_cookies()

    def add_cookies(self, cookies: Dict[str, str]) -> None:
        """Load name/value cookies into the current domain."""
        for name, value in cookies.items():
            self.driver.add_cookie({'name': name, 'value': value})

    def cookie_header(self) -> str:
        """Current cookies as a raw Cookie header string."""
        return '; '.join(f"{c['name']}={c['value']}" for c in self.get_cookies())

    @property
    def page_source(self) -> str:
        return self.driver.page_source


def capture_session(
    provider: Union[ProviderCode, str],
    store,
    timeout: int = 300,
    login_markers: Optional[List[str]] = None,
    browser: Optional[BrowserManager] = None,
    poll_interval: float = 2.0,
) -> Session:
    """
    Capture a session from an interactive login.

    Opens a visible browser at the provider's login page and waits until
    the login markers disappear (the user has signed in). Cookies and the
    page's ``window.csrf_token`` / ``window.profile`` globals are then saved
    through ``store.save_captured``.

    Args:
        provider: Provider code
        store: SessionStore to save into
        timeout: Seconds to wait for the user to log in
        login_markers: Page fragments meaning "still on the login page".
            Defaults to the registered client's LOGIN_MARKERS.
        browser: Browser to drive; a visible one is opened when omitted

    Raises:
        AuthenticationFailed: login not completed within ``timeout``
    """
    provider = ProviderCode(provider)
    config = get_provider_config(provider.value)
    login_url = config.urls.login_url or config.urls.base_url

    if login_markers is None:
        from .registry import ProviderRegistry
        client_class = ProviderRegistry.get_client_class(provider)
        login_markers = list(client_class.LOGIN_MARKERS) if client_class else []

    own_browser = browser is None
    browser = browser or BrowserManager(headless=False, request_delay=0)
    try:
        logger.info(f"Opening {login_url}; log in within {timeout}s")
        browser.get(login_url)

        deadline = time.monotonic() + timeout
        while True:
            source = browser.page_source
            if not any(marker in source for marker in login_markers) and browser.get_cookies():
                break
            if time.monotonic() >= deadline:
                raise AuthenticationFailed(
                    f"Login not completed within {timeout}s", provider=provider.value
                )
            time.sleep(poll_interval)

        tokens = browser.execute_script(CAPTURE_SCRIPT) or {}
        capture = {
            'cookies': browser.cookie_header(),
            'csrfToken': tokens.get('csrfToken'),
            'profile': tokens.get('profile') or {},
        }
        if not capture['cookies']:
            raise ValidationError("No cookies after login", provider=provider.value)

        session = store.save_captured(provider, capture, ttl=config.session.ttl_hours)
        logger.info(f"Captured {provider.value} session {session.session_id}")
        return session
    finally:
        if own_browser:
            browser.close()
