"""
Lex Autolease broker portal client.

Quotes are produced by replaying the portal's own JSON services with a
stored session. The calculation step adds a line to a quote held in the
server-side session and returns its line number; that handle is the only
safe way to read the priced line back, so one session must never be
shared by concurrent quotes.
"""

import json
import logging
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from ratefeed.core.base_client import ProviderClient
from ratefeed.core.config import Credentials
from ratefeed.core.errors import AuthenticationFailed, ValidationError
from ratefeed.core.importer import RateParser
from ratefeed.core.parsing import clean_text, parse_int, parse_money_minor
from ratefeed.core.registry import register_provider
from ratefeed.core.schema import (
    CanonicalRate,
    ContractType,
    PaymentPlan,
    ProviderCode,
    QuoteRequest,
    QuoteResult,
    Session,
    contract_type_from_string,
    plan_multiplier,
)

logger = logging.getLogger(__name__)

VAT_RATE = Decimal('1.2')

# Portal ids, as sent by the quote screen
LEX_PAYMENT_PLAN_IDS: Dict[PaymentPlan, int] = {
    PaymentPlan.ANNUAL_IN_ADVANCE: 1,
    PaymentPlan.MONTHLY_IN_ADVANCE: 7,
    PaymentPlan.QUARTERLY_IN_ADVANCE: 8,
    PaymentPlan.THREE_DOWN_TERMINAL_PAUSE: 9,
    PaymentPlan.SIX_DOWN_TERMINAL_PAUSE: 12,
    PaymentPlan.NINE_DOWN_TERMINAL_PAUSE: 17,
    PaymentPlan.SPREAD_3_DOWN: 23,
    PaymentPlan.SPREAD_6_DOWN: 26,
    PaymentPlan.SPREAD_12_DOWN: 27,
    PaymentPlan.NO_DEPOSIT_BENEFIT_CAR: 39,
    PaymentPlan.SPREAD_9_DOWN: 43,
}

LEX_CONTRACT_TYPE_IDS: Dict[ContractType, int] = {
    ContractType.CH: 2,
    ContractType.CHNM: 5,
    ContractType.PCH: 87,
    ContractType.PCHNM: 88,
    ContractType.SS: 110,
}

# Contract names used in Lex request files
LEX_CONTRACT_TYPES: Dict[str, ContractType] = {
    "contract_hire_with_maintenance": ContractType.CH,
    "contract_hire_without_maintenance": ContractType.CHNM,
    "personal_contract_hire": ContractType.PCH,
    "personal_contract_hire_without_maint": ContractType.PCHNM,
    "salary_sacrifice": ContractType.SS,
}

DEFAULT_CONTRACT_TYPE = ContractType.CHNM
DEFAULT_PAYMENT_PLAN = PaymentPlan.SPREAD_3_DOWN

DEFAULT_PROFILE = {
    "SalesCode": "",
    "Discount": "-1",
    "RVCode": "00",
    "Role": "",
    "Username": "",
}

_CSRF_PATTERNS = [
    re.compile(r'window\.csrf_token\s*=\s*["\']([^"\']+)["\']'),
    re.compile(r'csrf_token\s*[=:]\s*["\']([^"\']+)["\']'),
]
_PROFILE_PATTERN = re.compile(r'profile\s*[=:]\s*(\{[^}]+\})')


def lex_contract_type(value: Optional[str]) -> ContractType:
    """Accept a Lex contract name, a short code or a product name."""
    if not value:
        return DEFAULT_CONTRACT_TYPE
    if value in LEX_CONTRACT_TYPES:
        return LEX_CONTRACT_TYPES[value]
    contract_type = contract_type_from_string(value)
    if contract_type is None:
        raise ValidationError(f"Unknown contract type: {value}", provider=ProviderCode.LEX.value)
    return contract_type


def apply_vat(amount_minor: int) -> int:
    return int((Decimal(amount_minor) * VAT_RATE).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _pounds(amount_minor: int) -> str:
    return str(Decimal(amount_minor) / 100)


class LexRatebookParser(RateParser):
    """Parser for Lex ratebook CSV downloads. Rows carry their own CAP codes."""

    PROVIDER = ProviderCode.LEX
    COLUMNS = {
        "CAP_CODE": "cap_code",
        "Manufacturer": "manufacturer",
        "Model_Name": "model",
        "Variant": "variant",
        "Commercial": "commercial",
        "CO2_g_per_km": "co2",
        "P11D": "p11d",
        "Basic_List_Price": "basic_list_price",
        "Term": "term",
        "Mileage": "annual_mileage",
        "Rental": "total_rental",
        "Payment_Plan": "payment_plan",
        "Contract_Type": "contract_type",
        "Fuel_Type": "fuel_type",
        "Model_Year": "model_year",
        "Lease_Rental": "lease_rental",
        "Service_Rental": "service_rental",
        "Non_Recoverable_VAT": "non_recoverable_vat",
        "Excess_Mileage": "excess_mileage_ppm",
        "Finance_Emc_Ppm": "finance_emc_ppm",
        "Service_Emc_Ppm": "service_emc_ppm",
        "Fuel_Eco_Combined": "mpg_combined",
        "Body_Style": "body_style",
        "Whole_Life_Cost": "whole_life_cost",
        "Estimated_Sale_Value": "estimated_sale_value",
        "TRANSMISSION": "transmission",
        "BIK_TAX_AT_LOWER_RATE": "bik_lower",
        "BIK_TAX_AT_HIGHER_RATE": "bik_higher",
        "INSURANCE_GROUP": "insurance_group",
    }
    PAYMENT_PLANS = {
        "Monthly in advance": PaymentPlan.MONTHLY_IN_ADVANCE,
        "Spread Rentals with 3 down": PaymentPlan.SPREAD_3_DOWN,
        "Spread Rentals with 6 down": PaymentPlan.SPREAD_6_DOWN,
        "Spread Rentals with 9 down": PaymentPlan.SPREAD_9_DOWN,
    }
    DEFAULT_PAYMENT_PLAN = PaymentPlan.SPREAD_6_DOWN


@register_provider(ProviderCode.LEX)
class LexClient(ProviderClient):
    """
    Lex Autolease associate portal client.

    All service calls are POSTs to ``/services/{service}.svc/{function}``
    carrying the session cookies and the ``x-csrf-check`` header.
    """

    PROVIDER = ProviderCode.LEX
    BASE_URL = "https://associate.lexautolease.co.uk"
    LOGIN_MARKERS = ['txtUsername', 'txtPassword']
    SESSION_TTL_HOURS = 8.0
    CSRF_HEADER = 'x-csrf-check'
    RATEBOOK_PARSER = LexRatebookParser

    def is_login_page(self, body: str, url: Optional[str] = None) -> bool:
        if not body:
            return False
        return all(marker in body for marker in self.LOGIN_MARKERS)

    def extract_session_tokens(self, html_body: str) -> Dict[str, Any]:
        """
        Read ``csrf_token`` and ``profile`` from the page's inline script.

        Returns:
            {'csrf_token': str or None, 'profile': dict or None}
        """
        token = None
        for pattern in _CSRF_PATTERNS:
            match = pattern.search(html_body)
            if match:
                token = match.group(1)
                break

        profile = None
        match = _PROFILE_PATTERN.search(html_body)
        if match:
            try:
                profile = json.loads(match.group(1).replace("'", '"'))
            except ValueError:
                logger.debug("Profile object on page is not JSON, using defaults")
        return {'csrf_token': token, 'profile': profile}

    def login(self, credentials: Credentials) -> Session:
        """
        Log in through the portal's form and save the session.

        Raises:
            AuthenticationFailed: error message shown or still on the login form
            ProtocolStructureError: no CSRF token on the authenticated page
        """
        logger.info(f"Logging in to Lex as {credentials.username}")
        page = self.request('GET', '/', authenticated=False)
        soup = BeautifulSoup(page.text, 'lxml')
        form = {}
        for field in soup.select('input[type="hidden"]'):
            name = field.get('name')
            if name:
                form[name] = field.get('value') or ''
        form.update(txtUsername=credentials.username, txtPassword=credentials.password)

        response = self.request(
            'POST', '/',
            authenticated=False,
            data=form,
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
        )

        soup = BeautifulSoup(response.text, 'lxml')
        error = soup.select_one('.error-message, .login-error, .alert-danger')
        message = error.get_text(' ', strip=True) if error else ''
        if message:
            raise AuthenticationFailed(f"Login failed: {message}", provider=self.provider_id)
        if self.is_login_page(response.text):
            raise AuthenticationFailed("Login failed - check your email and password", provider=self.provider_id)

        tokens = self.extract_session_tokens(response.text)
        if not tokens['csrf_token']:
            raise self.structure_error("Could not extract CSRF token from authenticated page", response.text)

        profile = dict(DEFAULT_PROFILE, Username=credentials.username)
        for key, value in (tokens['profile'] or {}).items():
            if key in profile and value:
                profile[key] = value

        session = self.save_session(self.cookie_header(), csrf_token=tokens['csrf_token'], profile=profile)
        logger.info(f"Lex login successful for {profile['Username']}")
        return session

    # === Services ===

    def call_service(self, service: str, function: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """POST to a portal service and unwrap the ASP.NET ``{"d": ...}`` envelope."""
        data = self.request_json(
            'POST',
            f"/services/{service}.svc/{function}",
            json=payload or {},
            headers={'Content-Type': 'application/json; charset=utf-8'},
        )
        if isinstance(data, dict) and set(data) == {'d'}:
            return data['d']
        return data

    def get_contract_types(self, payment_plan_id: str = "", special_offer_id: int = 0) -> List[Dict[str, Any]]:
        return self.call_service("Quote", "GetContractTypes", {
            "paymentPlanId": payment_plan_id,
            "specialOfferId": special_offer_id,
        })

    def list_manufacturers(self) -> List[Dict[str, Any]]:
        return self._options(self.call_service("Quote", "GetManufacturers"))

    def list_models(self, manufacturer_id: str) -> List[Dict[str, Any]]:
        return self._options(self.call_service("Quote", "GetModels", {"manufacturerId": manufacturer_id}))

    def list_variants(self, manufacturer_id: str, model_id: str) -> List[Dict[str, Any]]:
        variants = self.call_service("Quote", "GetVariants", {
            "manufacturerId": manufacturer_id,
            "modelId": model_id,
        })
        options = self._options(variants)
        for option, raw in zip(options, variants or []):
            option['cap_code'] = raw.get('CapCode') or raw.get('CAPCode')
        return options

    @staticmethod
    def _options(items: Any) -> List[Dict[str, Any]]:
        """Normalize Key/Value lookup lists into {'id', 'name'} dicts."""
        options = []
        for item in items or []:
            ident = item.get('Key') or item.get('Id')
            name = item.get('Value') or item.get('Name')
            options.append({'id': str(ident) if ident is not None else None, 'name': name})
        return options

    def get_variant(self, manufacturer_id: str, model_id: str, variant_id: str) -> Dict[str, Any]:
        return self.call_service("Quote", "GetVariant", {
            "manufacturerId": int(manufacturer_id),
            "modelId": int(model_id),
            "variantId": int(variant_id),
        })

    def build_quote_line(self, request: QuoteRequest, contract_type_id: int) -> Dict[str, Any]:
        """The ActiveLine payload of a calculation request."""
        vehicle = request.vehicle
        profile = self.current_session().profile
        total_mileage = round(request.term / 12 * request.annual_mileage)
        return {
            "LineNo": 0,
            "Term": str(request.term),
            "Mileage": str(request.annual_mileage),
            "TotalMileage": str(total_mileage),
            "BrokerOTRP": _pounds(request.broker_otr_price_minor) if request.custom_otrp else "0",
            "Commission": profile.get('SalesCode') or "000000000",
            "ContractTypeId": str(contract_type_id),
            # Lex ignores a broker OTRP unless bonus is excluded
            "BonusExcluded": request.custom_otrp,
            "OffInvSupport": 0,
            "DealerDiscount": -1,
            "ModelId": vehicle.model_id,
            "VariantId": vehicle.variant_id,
            "ManufacturerId": vehicle.manufacturer_id,
            "SpecialOfferDetail": {"OfferId": 0, "SpecialOfferTypeId": 0, "TrimColourId": 0},
            "OptionalExtras": [],
            "Deposit": "-1",
            "EstimatedSaleValue": "-2",
            "InitialPayment": "-1",
            "FRFExcluded": False,
            "RegulatedAgreementOnly": False,
            "VATInclusive": False,
            "IsZeroCommission": False,
        }

    def calculate_quote(self, quote_line: Dict[str, Any], payment_plan_id: int, wltp_co2: int) -> Dict[str, Any]:
        profile = self.current_session().profile
        return self.call_service("Quote", "CalculateQuote", {"calcrequest": {
            "RVCode": profile.get('RVCode') or "00",
            "PaymentPlanId": str(payment_plan_id),
            "CustomerRef": "",
            "IsRentalRollback": False,
            "TargetRental": 0,
            "RollbackField": "",
            "ActiveLine": quote_line,
            "IsSpecialOfferVehicle": False,
            "AnticipatedDeliveryDate": None,
            "WLTPCo2": str(wltp_co2),
            "SelectedLineNo": 0,
            "IsWLTPCo2": True,
            "PartnerId": "0",
            "GenerateQuoteNumber": False,
        }})

    def get_quote_line(self, line_no: int) -> Dict[str, Any]:
        return self.call_service("Quote", "GetQuoteLine", {"lineNo": line_no})

    # === Quoting ===

    def quote(self, request: QuoteRequest) -> QuoteResult:
        """
        Price one vehicle: GetVariant, CalculateQuote, GetQuoteLine.

        Raises:
            ValidationError: request lacks Lex manufacturer/model/variant ids
            ProtocolStructureError: calculation failed or the line is in error
            SessionExpired: session rejected mid-protocol
        """
        vehicle = request.vehicle
        if not (vehicle.manufacturer_id and vehicle.model_id and vehicle.variant_id):
            raise ValidationError(
                f"Lex quotes need manufacturer, model and variant ids ({request.label})",
                provider=self.provider_id,
            )
        contract_type_id = LEX_CONTRACT_TYPE_IDS[request.contract_type]
        payment_plan_id = LEX_PAYMENT_PLAN_IDS[request.payment_plan]

        variant = self.get_variant(vehicle.manufacturer_id, vehicle.model_id, vehicle.variant_id) or {}
        wltp_co2 = parse_int(variant.get('WLTPCO2')) or parse_int(variant.get('CO2')) or 0

        quote_line = self.build_quote_line(request, contract_type_id)
        calc = self.calculate_quote(quote_line, payment_plan_id, wltp_co2) or {}
        line_numbers = calc.get('LineNumbers') or []
        if not calc.get('Success') or not line_numbers:
            raise self.structure_error(calc.get('Message') or "Quote calculation failed", json.dumps(calc))

        line_no = int(line_numbers[0])
        line = self.get_quote_line(line_no) or {}
        if line.get('CalcStatus', 0) != 0 or line.get('CalcErrorMessage'):
            raise self.structure_error(
                line.get('CalcErrorMessage') or "Quote calculation returned error status",
                json.dumps(line),
            )

        rate = self.build_rate(request, variant, line, wltp_co2, calc.get('QuoteId'))
        logger.info(f"Lex quote {request.label}: {rate.total_rental_minor}p/month (line {line_no})")
        return QuoteResult(
            request=request,
            rate=rate,
            quote_id=str(calc['QuoteId']) if calc.get('QuoteId') is not None else None,
            line_number=line_no,
            used_fleet_discount=request.custom_otrp,
            raw=line,
        )

    def build_rate(
        self,
        request: QuoteRequest,
        variant: Dict[str, Any],
        line: Dict[str, Any],
        wltp_co2: int,
        quote_id: Any = None,
    ) -> CanonicalRate:
        """
        Normalize a priced quote line.

        Personal contracts surface the VAT-inclusive rental, computed from the
        exclusive figure when Lex returns none. A missing initial payment is
        derived from the payment plan. Derived values are flagged estimated.
        """
        vehicle = request.vehicle
        estimated = []

        monthly = parse_money_minor(line.get('MonthlyRental'))
        monthly_inc_vat = parse_money_minor(line.get('MonthlyRentalIncVAT'))
        is_personal = (
            request.contract_type.is_personal
            or 'personal' in str(line.get('ContractType') or '').lower()
        )

        total = monthly
        if is_personal:
            if monthly_inc_vat and monthly_inc_vat > 0:
                total = monthly_inc_vat
            elif monthly:
                total = apply_vat(monthly)
                monthly_inc_vat = total
                estimated.append('total_rental_minor')

        initial = parse_money_minor(line.get('InitialPayment'))
        if (initial is None or initial <= 0) and total and total > 0:
            initial = total * plan_multiplier(request.payment_plan)
            estimated.append('initial_payment_minor')
        elif is_personal and initial and initial > 0:
            initial = apply_vat(initial)
            estimated.append('initial_payment_minor')

        description = clean_text(line.get('Description')) or clean_text(variant.get('Description'))
        extras = {}
        if monthly is not None:
            extras['monthly_rental_ex_vat_minor'] = monthly
        if monthly_inc_vat is not None:
            extras['monthly_rental_inc_vat_minor'] = monthly_inc_vat
        if request.custom_otrp:
            extras['broker_otr_price_minor'] = request.broker_otr_price_minor

        return CanonicalRate(
            provider_code=self.PROVIDER,
            cap_code=vehicle.cap_code,
            manufacturer=vehicle.manufacturer or clean_text(line.get('Manufacturer')) or vehicle.manufacturer_id,
            model=vehicle.model or clean_text(line.get('Model')) or vehicle.model_id,
            variant=vehicle.variant or description or '',
            contract_type=request.contract_type,
            term=parse_int(line.get('Term')) or request.term,
            annual_mileage=parse_int(line.get('Mileage')) or request.annual_mileage,
            payment_plan=request.payment_plan,
            total_rental_minor=total,
            initial_payment_minor=initial,
            otr_price_minor=parse_money_minor(line.get('OTRP')),
            p11d_minor=parse_money_minor(line.get('TaxableListPrice')),
            co2_gkm=wltp_co2 or None,
            derivative_name=vehicle.derivative_name or description,
            unmatched=vehicle.cap_code is None,
            match_confidence=100 if vehicle.cap_code else None,
            vat_inclusive=is_personal,
            estimated_fields=estimated,
            quote_reference=str(quote_id) if quote_id is not None else None,
            extras=extras,
        )

    def quote_with_fleet_discount(self, request: QuoteRequest, otr_price_minor: int) -> QuoteResult:
        """Re-quote with a broker OTR price (fleet discount)."""
        if otr_price_minor <= 0:
            raise ValidationError("Fleet discount OTR price must be positive", provider=self.provider_id)
        discounted = request.model_copy(update={'broker_otr_price_minor': otr_price_minor})
        return self.quote(discounted)
