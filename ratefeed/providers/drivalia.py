"""
Drivalia broker portal client.

The Drivalia quoting screen is an Angular application with no usable
public API, so quotes are produced by driving the page in a browser. A
fetch/XHR interceptor is installed before the page loads; when the quote
is saved, the application JSON it posts is captured and parsed instead of
scraping figures off the screen.
"""

import logging
import re
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from bs4 import BeautifulSoup
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.by import By

from ratefeed.core.base_client import ProviderClient
from ratefeed.core.config import Credentials
from ratefeed.core.errors import AuthenticationFailed, ProtocolStructureError, TransientNetworkError, ValidationError
from ratefeed.core.parsing import parse_money_minor
from ratefeed.core.registry import register_provider
from ratefeed.core.schema import (
    CanonicalRate,
    ContractType,
    ProviderCode,
    QuoteRequest,
    QuoteResult,
    Session,
)

logger = logging.getLogger(__name__)

QUOTE_ROUTE = "#/quoting/new"

# Keeps every JSON body from /application/ calls in window.__ratefeedApplications
INTERCEPTOR_SCRIPT = """
(function() {
  if (window.__ratefeedInterceptor) { return; }
  window.__ratefeedInterceptor = true;
  window.__ratefeedApplications = [];
  function keep(url, data) {
    if (url && String(url).indexOf('/application/') !== -1) {
      window.__ratefeedApplications.push(data);
    }
  }
  var originalFetch = window.fetch;
  window.fetch = function() {
    var args = arguments;
    return originalFetch.apply(this, args).then(function(response) {
      var url = (args[0] && args[0].url) || args[0];
      response.clone().json().then(function(data) { keep(url, data); }).catch(function() {});
      return response;
    });
  };
  var originalOpen = XMLHttpRequest.prototype.open;
  var originalSend = XMLHttpRequest.prototype.send;
  XMLHttpRequest.prototype.open = function(method, url) {
    this.__ratefeedUrl = url;
    return originalOpen.apply(this, arguments);
  };
  XMLHttpRequest.prototype.send = function() {
    this.addEventListener('load', function() {
      try { keep(this.__ratefeedUrl, JSON.parse(this.responseText)); } catch (e) {}
    });
    return originalSend.apply(this, arguments);
  };
})();
"""

READ_CAPTURED_SCRIPT = """
var captured = window.__ratefeedApplications || [];
return captured.length ? captured[captured.length - 1] : null;
"""

CLEAR_CAPTURED_SCRIPT = "window.__ratefeedApplications = [];"

# Angular only sees programmatic values after input/change/blur events
SET_INPUT_SCRIPT = """
var el = arguments[0];
el.value = '';
el.dispatchEvent(new Event('input', {bubbles: true}));
el.value = arguments[1];
['input', 'change', 'blur'].forEach(function(name) {
  el.dispatchEvent(new Event(name, {bubbles: true}));
});
"""

SELECT_CORPORATE_SCRIPT = """
arguments[0].value = 'string:C';
arguments[0].dispatchEvent(new Event('change', {bubbles: true}));
"""

CUSTOMER_PANEL_SELECTORS = [
    'mat-expansion-panel-header',
    '.mat-expansion-panel-header',
    '[aria-label*="Customer"]',
    'button[aria-expanded="false"]',
]
CUSTOMER_TYPE_SELECTOR = (
    '[aria-label="Customer Type"], select[ng-model*="customerType"], '
    'mat-select[formcontrolname*="customer"], select[name*="customer"]'
)
COMPANY_NAME_SELECTOR = (
    '[aria-label="Company Name"], input[placeholder*="Company"], '
    'input[formcontrolname*="company"], input[name*="company"]'
)
VEHICLE_SEARCH_SELECTOR = '[aria-label="Search a Vehicle"], input[placeholder*="Search"]'
SEARCH_RESULT_SELECTOR = 'mat-nav-list mat-list-item, .mat-list-item'
TERM_SELECTOR = '[aria-label*="Term"]'
MILEAGE_SELECTOR = '[aria-label*="Annual Mileage"], input[id*="calcfield"][aria-label*="Mileage"]'

PRODUCT_PATTERNS: Dict[ContractType, str] = {
    ContractType.CH: "BCH",
    ContractType.CHNM: "BROKER BCH",
    ContractType.PCH: "BROKER PCH",
    ContractType.PCHNM: "BROKER PCH",
}
DEFAULT_PRODUCT = "BROKER BCH"

_MONTHLY_PATTERNS = [
    re.compile(r'Monthly[^£\d]*£?\s*([\d,]+(?:\.\d+)?)', re.IGNORECASE),
    re.compile(r'Rental[^£\d]*£?\s*([\d,]+(?:\.\d+)?)', re.IGNORECASE),
]


def parse_monthly_from_text(text: Optional[str]) -> Optional[int]:
    """
    Read the monthly rental off the quote screen's text, in pence.

    Fallback for when no application response was captured.
    """
    if not text:
        return None
    for pattern in _MONTHLY_PATTERNS:
        match = pattern.search(text)
        if match:
            return parse_money_minor(match.group(1))
    return None


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, '', 0):
            return value
    return None


def parse_application_response(payload: Dict[str, Any], request: QuoteRequest) -> QuoteResult:
    """
    Normalize a captured application JSON into a quote result.

    The cash flow's first line is the initial payment; the second line is
    the regular rental, ``instalment`` ex VAT and ``totalPayment`` inc VAT.

    Raises:
        ProtocolStructureError: no regular rental in the cash flow
    """
    assets = payload.get('assets') or []
    asset = (assets[0] or {}).get('asset') or {} if assets else {}
    items = (asset.get('data') or {}).get('items') or [{}]
    lines = ((payload.get('finance') or {}).get('cashFlow') or {}).get('lines') or []

    first_line = lines[0] if lines else {}
    regular = lines[1] if len(lines) > 1 else {}
    monthly = parse_money_minor(regular.get('instalment'))
    monthly_inc_vat = parse_money_minor(_first(regular.get('totalPayment'), regular.get('instalment')))
    if monthly is None and monthly_inc_vat is None:
        raise ProtocolStructureError(
            "Application response has no regular rental line",
            provider=ProviderCode.DRIVALIA.value,
            context=str(payload),
        )

    personal = request.contract_type.is_personal
    total = monthly_inc_vat if personal else (monthly if monthly is not None else monthly_inc_vat)

    vehicle = request.vehicle
    cap_code = _first(
        (asset.get('catalogXref') or {}).get('catalogXrefCode'),
        items[0].get('catalogXrefCode'),
        vehicle.cap_code,
    )
    application_id = payload.get('applicationId')
    extras = {}
    if monthly is not None:
        extras['monthly_rental_ex_vat_minor'] = monthly
    if monthly_inc_vat is not None:
        extras['monthly_rental_inc_vat_minor'] = monthly_inc_vat

    rate = CanonicalRate(
        provider_code=ProviderCode.DRIVALIA,
        cap_code=cap_code,
        manufacturer=vehicle.manufacturer or 'Unknown',
        model=vehicle.model or cap_code or 'Unknown',
        variant=vehicle.variant,
        contract_type=request.contract_type,
        term=request.term,
        annual_mileage=request.annual_mileage,
        payment_plan=request.payment_plan,
        total_rental_minor=total,
        initial_payment_minor=parse_money_minor(first_line.get('totalPayment')),
        p11d_minor=parse_money_minor(_first(asset.get('catalogValue'), items[0].get('catalogValue'))),
        derivative_name=vehicle.derivative_name,
        unmatched=cap_code is None,
        match_confidence=100 if cap_code else None,
        vat_inclusive=personal,
        quote_reference=str(application_id) if application_id is not None else None,
        extras=extras,
    )
    return QuoteResult(
        request=request,
        rate=rate,
        quote_id=rate.quote_reference,
        raw=payload,
    )


@register_provider(ProviderCode.DRIVALIA)
class DrivaliaClient(ProviderClient):
    """
    Drivalia quoting screen automation.

    Uses the stored session's cookies in a Selenium browser. One quote at a
    time: the screen holds a single working quote.
    """

    PROVIDER = ProviderCode.DRIVALIA
    BASE_URL = "https://www.drivalia.co.uk"
    LOGIN_MARKERS = ['type="password"']
    SESSION_TTL_HOURS = 8.0

    @property
    def step_timeout(self) -> int:
        return int(self.config.settings.get('step_timeout', 15))

    @property
    def company_name(self) -> str:
        return self.config.settings.get('company_name') or "Quote Test Ltd"

    def extract_session_tokens(self, html_body: str) -> Dict[str, Any]:
        soup = BeautifulSoup(html_body, 'lxml')
        meta = soup.select_one('meta[name="csrf-token"], meta[name="_csrf"]')
        return {'csrf_token': meta.get('content') if meta else None}

    def login(self, credentials: Credentials) -> Session:
        """
        Log in through the portal's form in the browser and keep its cookies.

        Raises:
            AuthenticationFailed: still on the login form after submitting
            ProtocolStructureError: login form not found
        """
        login_url = self.config.urls.login_url or self.base_url
        logger.info(f"Logging in to Drivalia as {credentials.username}")
        self.browser.get(login_url)

        user_field = self.browser.wait_for_element(
            By.CSS_SELECTOR, 'input[type="email"], input[name*="user"], input[name*="email"]',
            timeout=self.step_timeout,
        )
        password_field = self.browser.wait_for_element(
            By.CSS_SELECTOR, 'input[type="password"]', timeout=self.step_timeout,
        )
        if user_field is None or password_field is None:
            raise self.structure_error("Drivalia login form not found", self.browser.page_source)

        user_field.send_keys(credentials.username)
        password_field.send_keys(credentials.password)
        password_field.submit()
        self.browser.wait_for_page_load(timeout=self.step_timeout, extra_wait=2.0)

        if self.is_login_page(self.browser.page_source):
            raise AuthenticationFailed("Login failed - check your credentials", provider=self.provider_id)

        tokens = self.extract_session_tokens(self.browser.page_source)
        session = self.save_session(self.browser.cookie_header(), csrf_token=tokens['csrf_token'])
        logger.info(f"Drivalia login successful, session {session.session_id}")
        return session

    # === Quoting ===

    def open_quote_screen(self) -> None:
        """Load the stored session into the browser and open a new quote."""
        session = self.current_session()
        self.browser.get(self.base_url)
        self.browser.add_cookies(session.cookies())
        self.browser.add_init_script(INTERCEPTOR_SCRIPT)
        self.browser.get(f"{self.base_url}/{QUOTE_ROUTE}")
        if self.is_login_page(self.browser.page_source):
            raise self.expire_session("Drivalia returned the login page")

    def quote(self, request: QuoteRequest) -> QuoteResult:
        """
        Run one quote through the quoting screen.

        Raises:
            ValidationError: request has no CAP code
            SessionExpired: browser was sent to the login page
            ProtocolStructureError: a screen step could not be found
            TransientNetworkError: the browser failed mid-run
        """
        if not request.vehicle.cap_code:
            raise ValidationError(f"Drivalia quotes need a CAP code ({request.label})", provider=self.provider_id)
        try:
            self.open_quote_screen()
            self.execute_steps(request)
            payload = self.wait_for_application()
            if payload is not None:
                return parse_application_response(payload, request)
            return self.quote_from_screen(request)
        except WebDriverException as e:
            raise TransientNetworkError(f"Browser error quoting {request.label}: {e}", provider=self.provider_id)

    def execute_steps(self, request: QuoteRequest) -> None:
        browser = self.browser

        for selector in CUSTOMER_PANEL_SELECTORS:
            panel = browser.wait_for_element(By.CSS_SELECTOR, selector, timeout=2)
            if panel is not None:
                browser.safe_click(panel)
                break

        customer_type = self._element(CUSTOMER_TYPE_SELECTOR, "customer type")
        if customer_type.tag_name.lower() == 'select':
            browser.execute_script(SELECT_CORPORATE_SCRIPT, customer_type)
        else:
            browser.safe_click(customer_type)
            self._click_text('Corporate', 'mat-option')

        browser.execute_script(SET_INPUT_SCRIPT, self._element(COMPANY_NAME_SELECTOR, "company name"), self.company_name)
        self._click_text('Choose a Vehicle', 'button')

        logger.debug(f"Searching Drivalia for CAP code {request.vehicle.cap_code}")
        browser.execute_script(SET_INPUT_SCRIPT, self._element(VEHICLE_SEARCH_SELECTOR, "vehicle search"),
                               request.vehicle.cap_code)
        time.sleep(1.5)
        browser.safe_click(self._element(SEARCH_RESULT_SELECTOR, "search result"))
        self._click_text('Use this vehicle', 'button')

        self._click_text('Select a Product', 'button')
        self._click_text(PRODUCT_PATTERNS.get(request.contract_type, DEFAULT_PRODUCT), 'mat-list-option')
        self._click_text('Use this Product', 'button')

        browser.execute_script(SET_INPUT_SCRIPT, self._element(TERM_SELECTOR, "term"), str(request.term))
        # Mileage is entered in thousands
        browser.execute_script(SET_INPUT_SCRIPT, self._element(MILEAGE_SELECTOR, "mileage"),
                               str(round(request.annual_mileage / 1000)))

        self._click_text('Recalculate', 'button')
        time.sleep(2)
        browser.execute_script(CLEAR_CAPTURED_SCRIPT)
        self._click_text('Save Quote', 'button')

    def wait_for_application(self, timeout: float = 5.0, poll_interval: float = 0.1) -> Optional[Dict[str, Any]]:
        """The last captured application JSON, or None after ``timeout``."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            payload = self.browser.execute_script(READ_CAPTURED_SCRIPT)
            if payload:
                return payload
            time.sleep(poll_interval)
        return None

    def quote_from_screen(self, request: QuoteRequest) -> QuoteResult:
        logger.warning(f"No application response captured for {request.label}, reading screen")
        text = self.browser.execute_script("return document.body.innerText;")
        monthly = parse_monthly_from_text(text)
        if monthly is None:
            raise self.structure_error(f"No rental found on quote screen for {request.label}", text)
        payload = {'finance': {'cashFlow': {'lines': [{}, {'instalment': str(Decimal(monthly) / 100)}]}}}
        result = parse_application_response(payload, request)
        result.rate.extras['source'] = 'screen'
        return result

    def _element(self, selector: str, step: str):
        element = self.browser.wait_for_element(By.CSS_SELECTOR, selector, timeout=self.step_timeout)
        if element is None:
            raise self.structure_error(f"Drivalia step '{step}' failed: {selector} not found")
        return element

    def _click_text(self, text: str, tag: str) -> None:
        element = self.browser.find_by_text(text, tag=tag, timeout=self.step_timeout)
        if element is None or not self.browser.safe_click(element):
            raise self.structure_error(f"Drivalia step '{text}' failed: no clickable {tag}")
        time.sleep(0.5)
