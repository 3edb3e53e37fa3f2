"""Tests for the Lex Autolease client and ratebook parser."""

import pytest

from ratefeed.core.config import Credentials
from ratefeed.core.errors import (
    AuthenticationFailed,
    ProtocolStructureError,
    SessionExpired,
    ValidationError,
)
from ratefeed.core.schema import (
    ContractType,
    FuelType,
    PaymentPlan,
    ProviderCode,
    QuoteRequest,
    VehicleIdentity,
)
from ratefeed.providers.lex import LexClient, LexRatebookParser, lex_contract_type

from .conftest import FakeResponse

LOGIN_FORM = """
<html><body><form>
<input type="hidden" name="__VIEWSTATE" value="vs123">
<input type="text" name="txtUsername"><input type="password" name="txtPassword">
</form></body></html>
"""

HOME_PAGE = """
<html><head><script>
window.csrf_token = "csrf-abc";
var profile = {"SalesCode": "S42", "RVCode": "05", "Role": "Broker"};
</script></head><body>Welcome</body></html>
"""


def envelope(data):
    return FakeResponse(json_data={'d': data})


@pytest.fixture
def client(session_store, http, policy):
    return LexClient(session_store=session_store, http=http, policy=policy)


@pytest.fixture
def logged_in(client, session_store):
    session_store.save_session(
        ProviderCode.LEX, "ASP.NET_SessionId=s1",
        csrf_token="csrf-abc", profile={'SalesCode': "S42", 'RVCode': "00"},
    )
    return client


def quote_request(**overrides):
    params = dict(
        vehicle=VehicleIdentity(
            manufacturer="BMW", model="3 Series", variant="320d M Sport", cap_code="BM3S20MSP",
            manufacturer_id="10", model_id="200", variant_id="3000",
        ),
        term=36,
        annual_mileage=10000,
        contract_type=ContractType.CHNM,
        payment_plan=PaymentPlan.SPREAD_3_DOWN,
    )
    params.update(overrides)
    return QuoteRequest(**params)


def route_quote(http, line, calc=None):
    http.route('POST', 'GetVariant', envelope({'WLTPCO2': "130", 'Description': "320d M Sport 4dr Step Auto"}))
    http.route('POST', 'CalculateQuote', envelope(calc or {'Success': True, 'LineNumbers': [1], 'QuoteId': 987}))
    http.route('POST', 'GetQuoteLine', envelope(line))


class TestLogin:

    def test_login_saves_session(self, client, http, session_store):
        http.cookies.set('ASP.NET_SessionId', 'xyz')
        http.route('GET', 'lexautolease', FakeResponse(text=LOGIN_FORM))
        http.route('POST', 'lexautolease', FakeResponse(text=HOME_PAGE))

        session = client.login(Credentials(username="broker", password="pw"))

        assert session.csrf_token == "csrf-abc"
        assert session.cookie_jar == "ASP.NET_SessionId=xyz"
        assert session.profile['SalesCode'] == "S42"
        assert session.profile['RVCode'] == "05"
        assert session.profile['Username'] == "broker"
        form = http.calls[1]['data']
        assert form['__VIEWSTATE'] == "vs123"
        assert form['txtUsername'] == "broker"
        assert session_store.get_valid_session(ProviderCode.LEX).session_id == session.session_id

    def test_rejected_credentials(self, client, http):
        http.route('GET', 'lexautolease', FakeResponse(text=LOGIN_FORM))
        http.route('POST', 'lexautolease', FakeResponse(text=LOGIN_FORM))

        with pytest.raises(AuthenticationFailed):
            client.login(Credentials(username="broker", password="wrong"))

    def test_error_message_surfaced(self, client, http):
        http.route('GET', 'lexautolease', FakeResponse(text=LOGIN_FORM))
        http.route('POST', 'lexautolease', FakeResponse(
            text='<div class="error-message">Account locked</div>' + LOGIN_FORM,
        ))

        with pytest.raises(AuthenticationFailed, match="Account locked"):
            client.login(Credentials(username="broker", password="pw"))

    def test_missing_csrf_is_structure_error(self, client, http):
        http.route('GET', 'lexautolease', FakeResponse(text=LOGIN_FORM))
        http.route('POST', 'lexautolease', FakeResponse(text="<html><body>Welcome</body></html>"))

        with pytest.raises(ProtocolStructureError):
            client.login(Credentials(username="broker", password="pw"))

    def test_extract_tokens_single_quotes(self, client):
        tokens = client.extract_session_tokens("csrf_token: 'tok'; profile = {'SalesCode': 'X1'}")
        assert tokens == {'csrf_token': "tok", 'profile': {'SalesCode': "X1"}}


class TestQuote:
    """GetVariant, CalculateQuote, GetQuoteLine."""

    def test_business_quote(self, logged_in, http):
        route_quote(http, {'MonthlyRental': 450.0, 'CalcStatus': 0, 'Term': 36, 'Mileage': 10000})

        result = logged_in.quote(quote_request())

        rate = result.rate
        assert rate.total_rental_minor == 45000
        assert rate.co2_gkm == 130
        assert rate.term == 36
        assert rate.annual_mileage == 10000
        assert rate.cap_code == "BM3S20MSP"
        assert not rate.vat_inclusive
        assert result.line_number == 1
        assert result.quote_id == "987"

    def test_calls_carry_session(self, logged_in, http):
        route_quote(http, {'MonthlyRental': 450.0})

        logged_in.quote(quote_request())

        assert [c['url'].rsplit('/', 1)[-1] for c in http.calls] == [
            'GetVariant', 'CalculateQuote', 'GetQuoteLine',
        ]
        for call in http.calls:
            assert call['headers']['Cookie'] == "ASP.NET_SessionId=s1"
            assert call['headers']['x-csrf-check'] == "csrf-abc"
        calc = http.calls[1]['json']['calcrequest']
        assert calc['WLTPCo2'] == "130"
        assert calc['PaymentPlanId'] == "23"
        assert calc['ActiveLine']['ContractTypeId'] == "5"
        assert calc['ActiveLine']['Commission'] == "S42"
        assert http.calls[2]['json'] == {'lineNo': 1}

    def test_missing_initial_payment_estimated(self, logged_in, http):
        route_quote(http, {'MonthlyRental': 450.0})

        rate = logged_in.quote(quote_request()).rate

        assert rate.initial_payment_minor == 135000
        assert rate.estimated_fields == ['initial_payment_minor']

    def test_personal_quote_adds_vat(self, logged_in, http):
        route_quote(http, {'MonthlyRental': 450.0, 'InitialPayment': 1350.0})

        rate = logged_in.quote(quote_request(contract_type=ContractType.PCH)).rate

        assert rate.vat_inclusive
        assert rate.total_rental_minor == 54000
        assert rate.initial_payment_minor == 162000
        assert rate.estimated_fields == ['total_rental_minor', 'initial_payment_minor']
        assert rate.extras['monthly_rental_ex_vat_minor'] == 45000

    def test_personal_quote_uses_inc_vat_figure(self, logged_in, http):
        route_quote(http, {'MonthlyRental': 450.0, 'MonthlyRentalIncVAT': 540.5})

        rate = logged_in.quote(quote_request(contract_type=ContractType.PCH)).rate

        assert rate.total_rental_minor == 54050
        assert 'total_rental_minor' not in rate.estimated_fields

    def test_broker_otr_price(self, logged_in, http):
        route_quote(http, {'MonthlyRental': 420.0})

        result = logged_in.quote_with_fleet_discount(quote_request(), 3000000)

        line = http.calls[1]['json']['calcrequest']['ActiveLine']
        assert line['BrokerOTRP'] == "30000"
        assert line['BonusExcluded'] is True
        assert result.used_fleet_discount

    def test_failed_calculation(self, logged_in, http):
        route_quote(http, {}, calc={'Success': False, 'Message': "Vehicle not available"})

        with pytest.raises(ProtocolStructureError, match="Vehicle not available"):
            logged_in.quote(quote_request())

    def test_missing_line_numbers(self, logged_in, http):
        route_quote(http, {}, calc={'Success': True, 'QuoteId': 1})

        with pytest.raises(ProtocolStructureError):
            logged_in.quote(quote_request())

    def test_line_in_error(self, logged_in, http):
        route_quote(http, {'CalcStatus': 2, 'CalcErrorMessage': "Term not allowed"})

        with pytest.raises(ProtocolStructureError, match="Term not allowed"):
            logged_in.quote(quote_request())

    def test_unauthorized_expires_session(self, logged_in, http, session_store):
        http.route('POST', 'GetVariant', FakeResponse(status_code=401))

        with pytest.raises(SessionExpired):
            logged_in.quote(quote_request())
        assert session_store.get_valid_session(ProviderCode.LEX) is None

    def test_missing_ids_rejected_before_any_call(self, logged_in, http):
        request = quote_request(vehicle=VehicleIdentity(manufacturer="BMW", model="3 Series"))

        with pytest.raises(ValidationError):
            logged_in.quote(request)
        assert http.calls == []

    def test_no_session(self, client, http):
        with pytest.raises(SessionExpired):
            client.quote(quote_request())


class TestBatchQuotes:

    def test_one_failure_does_not_stop_batch(self, logged_in, http):
        route_quote(http, {'MonthlyRental': 450.0})
        requests_ = [
            quote_request(),
            quote_request(vehicle=VehicleIdentity(manufacturer="Kia", model="Niro")),
            quote_request(term=48),
        ]

        result = logged_in.run_batch_quotes(requests_)

        assert result.success_count == 2
        assert result.error_count == 1
        assert "Kia Niro" in result.sample_errors[0]


class TestContractTypes:

    def test_lex_names(self):
        assert lex_contract_type("personal_contract_hire") == ContractType.PCH
        assert lex_contract_type("CHNM") == ContractType.CHNM
        assert lex_contract_type(None) == ContractType.CHNM

    def test_unknown(self):
        with pytest.raises(ValidationError):
            lex_contract_type("lease purchase")


class TestRatebookParser:

    def test_parse(self):
        text = (
            "CAP_CODE,Manufacturer,Model_Name,Variant,CO2_g_per_km,P11D,Term,Mileage,"
            "Rental,Payment_Plan,Fuel_Type,Contract_Type,INSURANCE_GROUP\n"
            "BM3S20MSP,BMW,3 Series,320d M Sport,130,\"32,000.00\",36,10000,299.99,"
            "Spread Rentals with 3 down,Diesel,Personal Contract Hire,30E\n"
            "KINI4EV,Kia,Niro,4 EV,0,35000,24,8000,N/A,Monthly in advance,Electric,,\n"
        )
        outcome = LexRatebookParser().parse(text)

        assert outcome.error_rows == 0
        bmw, kia = outcome.rates
        assert bmw.provider_code == ProviderCode.LEX
        assert bmw.cap_code == "BM3S20MSP"
        assert bmw.p11d_minor == 3200000
        assert bmw.payment_plan == PaymentPlan.SPREAD_3_DOWN
        assert bmw.fuel_type == FuelType.DIESEL
        assert bmw.contract_type == ContractType.PCH
        assert bmw.vat_inclusive
        assert bmw.extras == {'insurance_group': "30E"}
        assert kia.total_rental_minor is None
        assert kia.co2_gkm == 0
        assert kia.contract_type == ContractType.CHNM
        assert kia.payment_plan == PaymentPlan.MONTHLY_IN_ADVANCE
