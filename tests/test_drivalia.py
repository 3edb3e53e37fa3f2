"""Tests for the Drivalia quoting-screen client."""

import pytest
from selenium.common.exceptions import WebDriverException

from ratefeed.core.errors import (
    ProtocolStructureError,
    SessionExpired,
    TransientNetworkError,
    ValidationError,
)
from ratefeed.core.schema import ContractType, ProviderCode, QuoteRequest, VehicleIdentity
from ratefeed.providers.drivalia import (
    INTERCEPTOR_SCRIPT,
    READ_CAPTURED_SCRIPT,
    DrivaliaClient,
    parse_application_response,
    parse_monthly_from_text,
)

APPLICATION = {
    'applicationId': 5551,
    'assets': [{'asset': {
        'catalogXref': {'catalogXrefCode': "KINI4EV"},
        'catalogValue': "35995.00",
        'data': {'items': [{}]},
    }}],
    'finance': {'cashFlow': {'lines': [
        {'totalPayment': "1800.00"},
        {'instalment': "300.00", 'totalPayment': "360.00"},
    ]}},
}


class FakeBrowser:
    """The parts of BrowserManager the quote flow touches."""

    def __init__(self, page_source="<html>Quoting</html>", captured=None, screen_text=""):
        self.page_source = page_source
        self.captured = captured
        self.screen_text = screen_text
        self.visited = []
        self.cookies = {}
        self.init_scripts = []
        self.closed = False

    def get(self, url, wait_for_load=True):
        self.visited.append(url)

    def add_cookies(self, cookies):
        self.cookies.update(cookies)

    def add_init_script(self, source):
        self.init_scripts.append(source)

    def execute_script(self, script, *args):
        if script == READ_CAPTURED_SCRIPT:
            return self.captured
        if 'innerText' in script:
            return self.screen_text
        return None

    def close(self):
        self.closed = True


def request(contract_type=ContractType.CH, **vehicle):
    identity = dict(manufacturer="Kia", model="Niro", variant="4 EV", cap_code="KINI4EV")
    identity.update(vehicle)
    return QuoteRequest(
        vehicle=VehicleIdentity(**identity),
        term=36,
        annual_mileage=10000,
        contract_type=contract_type,
    )


@pytest.fixture
def client(session_store, http, policy):
    session_store.save_session(ProviderCode.DRIVALIA, "JSESSIONID=j1; XSRF=x1")
    client = DrivaliaClient(session_store=session_store, http=http, policy=policy)
    client.execute_steps = lambda request: None
    return client


class TestApplicationResponse:

    def test_business_rental_is_ex_vat(self):
        result = parse_application_response(APPLICATION, request())

        rate = result.rate
        assert rate.total_rental_minor == 30000
        assert rate.initial_payment_minor == 180000
        assert rate.p11d_minor == 3599500
        assert rate.cap_code == "KINI4EV"
        assert not rate.vat_inclusive
        assert rate.extras['monthly_rental_inc_vat_minor'] == 36000
        assert result.quote_id == "5551"

    def test_personal_rental_is_inc_vat(self):
        rate = parse_application_response(APPLICATION, request(ContractType.PCH)).rate

        assert rate.total_rental_minor == 36000
        assert rate.vat_inclusive

    def test_vehicle_without_names(self):
        bare = request(manufacturer="", model="", variant="")
        rate = parse_application_response(APPLICATION, bare).rate

        assert rate.manufacturer == "Unknown"
        assert rate.model == "KINI4EV"

    def test_no_rental_line(self):
        with pytest.raises(ProtocolStructureError):
            parse_application_response({'finance': {'cashFlow': {'lines': [{}]}}}, request())


class TestScreenText:

    def test_monthly(self):
        assert parse_monthly_from_text("Monthly Rental £1,234.56 inc VAT") == 123456

    def test_rental_fallback(self):
        assert parse_monthly_from_text("Rental: 299") == 29900

    def test_nothing_found(self):
        assert parse_monthly_from_text(None) is None
        assert parse_monthly_from_text("Quote saved") is None


class TestQuote:

    def test_captured_application(self, client):
        browser = FakeBrowser(captured=APPLICATION)
        client._browser = browser

        result = client.quote(request())

        assert result.rate.total_rental_minor == 30000
        assert browser.visited == [
            "https://www.drivalia.co.uk",
            "https://www.drivalia.co.uk/#/quoting/new",
        ]
        assert browser.cookies == {'JSESSIONID': "j1", 'XSRF': "x1"}
        assert browser.init_scripts == [INTERCEPTOR_SCRIPT]

    def test_screen_fallback(self, client):
        client._browser = FakeBrowser(screen_text="Monthly rental £299.99")

        result = client.quote_from_screen(request())

        assert result.rate.total_rental_minor == 29999
        assert result.rate.extras['source'] == "screen"

    def test_screen_without_rental(self, client):
        client._browser = FakeBrowser(screen_text="Something went wrong")

        with pytest.raises(ProtocolStructureError):
            client.quote_from_screen(request())

    def test_login_page_expires_session(self, client, session_store):
        client._browser = FakeBrowser(page_source='<input type="password">')

        with pytest.raises(SessionExpired):
            client.quote(request())
        assert session_store.get_valid_session(ProviderCode.DRIVALIA) is None

    def test_browser_failure_is_transient(self, client):
        client._browser = FakeBrowser(captured=APPLICATION)

        def crash(request):
            raise WebDriverException("chrome not reachable")

        client.execute_steps = crash

        with pytest.raises(TransientNetworkError):
            client.quote(request())

    def test_cap_code_required(self, client):
        client._browser = FakeBrowser()

        with pytest.raises(ValidationError):
            client.quote(request(cap_code=None))
        assert client._browser.visited == []

    def test_close_closes_browser(self, client):
        browser = FakeBrowser()
        client._browser = browser

        client.close()

        assert browser.closed
