"""
Ogilvie Fleet broker quotes client.

Ogilvie has no per-vehicle quote service; rates come from a paginated
server-side export. The export is stateful: the search filter is saved to
the session, every result page is "prepared" in turn and only then does
the CSV download contain the full result set.
"""

import copy
import logging
import math
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from ratefeed.core.base_client import ProgressCallback, ProviderClient
from ratefeed.core.batch import StopSignal
from ratefeed.core.config import Credentials
from ratefeed.core.errors import AuthenticationFailed, SessionExpired
from ratefeed.core.importer import ContractMeta, RateParser
from ratefeed.core.parsing import clean_text, parse_int
from ratefeed.core.registry import register_provider
from ratefeed.core.schema import (
    ContractType,
    PaymentPlan,
    ProgressStage,
    ProviderCode,
    RunProgress,
    Session,
)

logger = logging.getLogger(__name__)

LOGIN_PATH = "/BrokerQuotes/Account/Login"
LOGIN_POST_PATH = "/BrokerQuotes/Account/Login?ReturnUrl=%2FBrokerQuotes%2F"
SEARCH_PATH = "/BrokerQuotes/DerivativeSearch?ShortListID=0"
SAVE_FILTERS_PATH = "/BrokerQuotes/DerivativeSearch/SaveFilters"
GET_DERIVATIVES_PATH = "/BrokerQuotes/api/DerivativeSearch/GetDerivatives"
GET_MANUFACTURERS_PATH = "/BrokerQuotes/api/DerivativeSearch/GetManufacturers"
PREPARE_EXPORT_PATH = "/BrokerQuotes/DerivativeSearch/PrepareExport"
EXPORT_PATH = "/BrokerQuotes/DerivativeSearch/Export?Format=CSV"

AJAX_HEADERS = {
    'Content-Type': 'application/json',
    'X-Requested-With': 'XMLHttpRequest',
}

# Used when GetDerivatives reports no count; over-preparing is harmless
FALLBACK_RECORD_ESTIMATE = 5000

DEFAULT_SEARCH_FILTER: Dict[str, Any] = {
    "SearchSequence": 0,
    "CurrentStartID": 0,
    "CurrentEndID": 0,
    "CurrentSortColumn": "DerivativeFullName",
    "CurrentSortDirection": "ASC",
    "CurrentPageSize": "50",
    "RowsDisplayed": 50,
    "RowsLeft": False,
    "NewSortColumn": "DerivativeFullName",
    "NewSortDirection": "ASC",
    "NewPageSize": "50",
    "NewPageAction": 0,
    "ContractTerm": 24,
    "ContractAnnualDistance": None,
    "ContractLifeDistance": 20000,
    "ProductID": "1",
    "PaymentPlanID": "263",
    "Deposit": 0,
    "QualifyingFlag": "1",
    "RFLFundingFlag": "1",
    "BrokerID": 699,
    "CustomerID": 14483,
    "CustomerStructureID": 0,
    "CustomerPayrollCycle": 3,
    "BrokerProspectID": 0,
    "DriverID": 0,
    "EstimatedDriverAge": 0,
    "DriverGradeID": 0,
    "VehicleAssetTypeID": 1,
    "ManufacturerIDList": [],
    "RangeIDList": [],
    "ModelIDList": [],
    "TextSearch": "",
    "FuelTypeList": [],
    "RDELevelList": [],
    "TransmissionTypesList": [],
    "BodyStyleList": [],
    "DoorsList": [],
    "DerivativeStatusList": [],
    "MinCo2": None,
    "MaxCo2": None,
    "MinEngineSize": None,
    "MaxEngineSize": None,
    "MinMPG": None,
    "MaxMPG": None,
    "MaxLtrPer100Km": None,
    "MinMaxEVRange": None,
    "NCAPRating": "0",
    "MaxInsuranceGroup": "0",
    "MinLuggageCapacity": None,
    "MinMaxLoadingWeight": None,
    "MaxMaxLoadingWeight": None,
    "MinEnginePowerKW": None,
    "MaxEnginePowerKW": None,
    "MinEnginePowerBHP": None,
    "MaxEnginePowerBHP": None,
    "MinNoOfSeats": None,
    "MaxNoOfSeats": None,
    "FourWheelDrive": "1",
    "RangeType": "1",
    "RangeFrom": 0,
    "RangeTo": None,
    "ListPriceTo": None,
    "ListPriceFrom": None,
    "P11DPriceFrom": None,
    "P11DPriceTo": None,
    "MaxBIKTaxablePercent": None,
    "MaxBIKMonthly": None,
    "BIKPercentage": 20,
    "MaxBIKMonthlyWithFuel": None,
    "BIKPercentageWithFuel": 20,
    "BIKRatesApplicable": [
        {"Id": 1, "Name": "UK Rates", "IsDefault": True},
        {"Id": 2, "Name": "Scottish Rates", "IsDefault": False},
    ],
    "UKTaxCountry": "1",
    "MinLifeCostsPPM": None,
    "MaxLifeCostsPPM": None,
    "DealerCode": 0,
    "DealerCode2": 0,
    "DiscountPercent": 0,
    "AllowZeroDiscountPercent": False,
    "DriverContribution": None,
    "DriverContributionMethodID": None,
    "DriverAnnualSalary": None,
    "SalarySacrificeFrom": None,
    "SalarySacrificeTo": None,
    "UseDriverSalarySacrifice": False,
    "ShowCashAllowanceCalculation": False,
    "UseCashAllowanceCalculation": False,
    "CashAllowanceCalculationID": 0,
    "NetCostToDriverFrom": None,
    "NetCostToDriverTo": None,
    "CashAllowanceNetCostFrom": None,
    "CashAllowanceNetCostTo": None,
    "CashAllowanceCalculations": [
        {"Id": 0, "Name": "No", "IsDefault": False},
        {"Id": 1, "Name": "Yes", "IsDefault": True},
    ],
    "ProductServices": [],
    "CashAllowanceCalculation": "",
    "ShowDriverSalarySacrifice": False,
}

PRODUCT_TO_CONTRACT_TYPE: Dict[str, ContractType] = {
    "Contract Hire": ContractType.CH,
    "Contract Hire (No Maintenance - No Tyres)": ContractType.CHNM,
    "Contract Hire (No Maintenance)": ContractType.CHNM,
    "Personal Contract Hire": ContractType.PCH,
    "Personal Contract Hire (No Maintenance)": ContractType.PCHNM,
    "Salary Sacrifice": ContractType.SS,
}

PAYMENT_PLAN_MAP: Dict[str, PaymentPlan] = {
    "Ogilvie Quotes 1 In Advance": PaymentPlan.MONTHLY_IN_ADVANCE,
    "1 in Advance": PaymentPlan.MONTHLY_IN_ADVANCE,
    "Spread with 3 up front": PaymentPlan.SPREAD_3_DOWN,
    "Spread with 6 up front": PaymentPlan.SPREAD_6_DOWN,
    "Spread with 9 up front": PaymentPlan.SPREAD_9_DOWN,
}


class ExportConfig(BaseModel):
    """
    Parameters of one Ogilvie export run.

    Ogilvie filters on total contract distance, so ``annual_mileage`` is
    converted with the term before it goes into the search filter.
    """
    contract_type: ContractType = ContractType.CHNM
    contract_term: int = Field(default=36, ge=12, le=84)
    annual_mileage: int = Field(default=10000, ge=1000, le=100000)
    manufacturer_ids: List[int] = Field(default_factory=list)
    product_id: str = "1"
    payment_plan_id: str = "263"
    page_size: int = Field(default=10, ge=1, le=100)
    qualifying_flag: str = "1"
    rfl_funding_flag: str = "1"

    @property
    def contract_distance(self) -> int:
        return round(self.annual_mileage * self.contract_term / 12)

    def search_filter(self) -> Dict[str, Any]:
        """The saved-search payload for this export."""
        search_filter = copy.deepcopy(DEFAULT_SEARCH_FILTER)
        search_filter.update({
            "ContractTerm": self.contract_term,
            "ContractLifeDistance": self.contract_distance,
            "ProductID": self.product_id,
            "PaymentPlanID": self.payment_plan_id,
            "QualifyingFlag": self.qualifying_flag,
            "RFLFundingFlag": self.rfl_funding_flag,
            "ManufacturerIDList": list(self.manufacturer_ids),
        })
        return search_filter


class OgilvieRatebookParser(RateParser):
    """Parser for the CSV produced by the Ogilvie export."""

    PROVIDER = ProviderCode.OGILVIE
    COLUMNS = {
        "Manufacturer Name": "manufacturer",
        "Range Name": "model",
        "Model Name": "model_name",
        "Derivative Name": "variant",
        "Year Introduced": "model_year",
        "Body Styles": "body_style",
        "Transmission": "transmission",
        "Fuel Type": "fuel_type",
        "EC Combined mpg": "mpg_combined",
        "Max EV Range": "ev_range",
        "List Price": "otr_price",
        "P11D Value": "p11d",
        "CO2 gkm": "co2",
        "InsuranceGroup50": "insurance_group",
        "Product": "product",
        "Payment Plan": "payment_plan",
        "Contract Term": "term",
        "Contract Mileage": "contract_mileage",
        "England BIK At 20%": "bik_20",
        "England BIK At 40%": "bik_40",
        "Finance Rental Exc. VAT": "lease_rental",
        "Non Finance Rental": "service_rental",
        "Regular Rental": "total_rental",
        "Monthly Effective Rental": "total_rental",
        "Period Whole Life Costs": "whole_life_cost",
    }
    PAYMENT_PLANS = PAYMENT_PLAN_MAP
    DEFAULT_PAYMENT_PLAN = PaymentPlan.MONTHLY_IN_ADVANCE

    def resolve_contract_type(self, fields: Dict[str, Any], meta: ContractMeta) -> ContractType:
        product = clean_text(fields.get('product'))
        if product and product in PRODUCT_TO_CONTRACT_TYPE:
            return PRODUCT_TO_CONTRACT_TYPE[product]
        return meta.contract_type

    def resolve_annual_mileage(self, fields: Dict[str, Any], meta: ContractMeta, term: int) -> int:
        contract_mileage = parse_int(fields.get('contract_mileage'))
        if not contract_mileage or not term:
            return meta.annual_mileage
        return round(contract_mileage / (term / 12))

    def resolve_payment_plan(self, text: Optional[str], meta: ContractMeta) -> PaymentPlan:
        if not text:
            return meta.payment_plan or self.DEFAULT_PAYMENT_PLAN
        if text in self.PAYMENT_PLANS:
            return self.PAYMENT_PLANS[text]
        lower = text.lower()
        if 'advance' in lower or '1 in' in lower:
            return PaymentPlan.MONTHLY_IN_ADVANCE
        if 'spread' in lower and '9' in lower:
            return PaymentPlan.SPREAD_9_DOWN
        if 'spread' in lower and '6' in lower:
            return PaymentPlan.SPREAD_6_DOWN
        if 'spread' in lower and '3' in lower:
            return PaymentPlan.SPREAD_3_DOWN
        return self.DEFAULT_PAYMENT_PLAN

    def derivative_name(self, fields: Dict[str, Any], manufacturer: str, model: str) -> Optional[str]:
        """Full derivative name, "MFR MODEL VARIANT (YEAR)"."""
        parts = [manufacturer, model, clean_text(fields.get('variant')) or '']
        name = ' '.join(p for p in parts if p)
        year = clean_text(fields.get('model_year'))
        return f"{name} ({year})" if year else name


@register_provider(ProviderCode.OGILVIE)
class OgilvieClient(ProviderClient):
    """
    Ogilvie Fleet broker portal client.

    Login is a plain ASP.NET form post; the session is the cookie jar plus
    the page's anti-forgery token. Sessions are short-lived (about an hour).
    """

    PROVIDER = ProviderCode.OGILVIE
    BASE_URL = "https://www.ogilviefleet.co.uk"
    LOGIN_MARKERS = ['name="__RequestVerificationToken"', 'id="Password"']
    SESSION_TTL_HOURS = 1.0
    RATEBOOK_PARSER = OgilvieRatebookParser

    def is_login_page(self, body: str, url: Optional[str] = None) -> bool:
        if url and LOGIN_PATH in url:
            return True
        if not body:
            return False
        # The search page also carries an anti-forgery token, so require the password field too
        return all(marker in body for marker in self.LOGIN_MARKERS)

    def extract_session_tokens(self, html_body: str) -> Dict[str, Any]:
        soup = BeautifulSoup(html_body, 'lxml')
        field = soup.select_one('input[name="__RequestVerificationToken"]')
        token = field.get('value') if field else None
        return {'csrf_token': token or None}

    def login(self, credentials: Credentials) -> Session:
        """
        Log in with email and password.

        Raises:
            ProtocolStructureError: login page has no verification token
            AuthenticationFailed: portal bounced back to the login page
        """
        logger.info(f"Logging in to Ogilvie as {credentials.username}")
        page = self.request('GET', LOGIN_PATH, authenticated=False)
        token = self.extract_session_tokens(page.text)['csrf_token']
        if not token:
            raise self.structure_error("Could not retrieve login page token", page.text)

        response = self.request(
            'POST',
            LOGIN_POST_PATH,
            authenticated=False,
            data={
                '__RequestVerificationToken': token,
                'Email': credentials.username,
                'Password': credentials.password,
            },
            headers={
                'Referer': self.url(LOGIN_PATH),
                'Origin': self.base_url,
            },
        )

        if 'Login' in response.url:
            soup = BeautifulSoup(response.text, 'lxml')
            error = soup.select_one('.validation-summary-errors, .alert-danger')
            message = error.get_text(' ', strip=True) if error else ''
            raise AuthenticationFailed(message or "Login failed - check your credentials", provider=self.provider_id)

        # Token issued after login is the one later form posts expect
        token = self.extract_session_tokens(response.text)['csrf_token'] or token
        session = self.save_session(self.cookie_header(), csrf_token=token)
        logger.info(f"Ogilvie login successful, session {session.session_id}")
        return session

    def validate_session(self) -> bool:
        """True when the stored session still reaches the search page."""
        try:
            self.request('GET', SEARCH_PATH)
        except SessionExpired:
            return False
        return True

    def fetch_manufacturers(self) -> List[Dict[str, Any]]:
        """
        Manufacturers available for filtering, sorted by name.

        Read from the search page's dropdown, falling back to the JSON API
        when the page does not render one.
        """
        page = self.request('GET', SEARCH_PATH)
        manufacturers = self.parse_manufacturer_options(page.text)
        if not manufacturers:
            logger.debug("No manufacturer dropdown on search page, using API")
            data = self.request_json('GET', GET_MANUFACTURERS_PATH, headers={'X-Requested-With': 'XMLHttpRequest'})
            manufacturers = self.parse_manufacturer_json(data)
        manufacturers.sort(key=lambda m: m['name'])
        logger.info(f"Found {len(manufacturers)} Ogilvie manufacturers")
        return manufacturers

    @staticmethod
    def parse_manufacturer_options(html: str) -> List[Dict[str, Any]]:
        soup = BeautifulSoup(html, 'lxml')
        manufacturers = []
        seen = set()
        for option in soup.select('select[name="ManufacturerID"] option, #ManufacturerID option'):
            ident = parse_int(option.get('value'))
            name = option.get_text(strip=True)
            if not ident or ident <= 0 or not name or ident in seen:
                continue
            seen.add(ident)
            manufacturers.append({'id': ident, 'name': name})
        return manufacturers

    @staticmethod
    def parse_manufacturer_json(data: Any) -> List[Dict[str, Any]]:
        manufacturers = []
        for item in data if isinstance(data, list) else []:
            ident = item.get('ID') or item.get('Id') or item.get('id') or item.get('ManufacturerID')
            name = item.get('Name') or item.get('name') or item.get('ManufacturerName')
            if ident and name:
                manufacturers.append({'id': int(ident), 'name': name})
        return manufacturers

    # === Export ===

    def count_records(self, search_filter: Dict[str, Any]) -> int:
        data = self.request_json(
            'POST',
            GET_DERIVATIVES_PATH,
            json={'PageNo': 1, 'PageSize': 1, 'SearchFilter': search_filter},
            headers=AJAX_HEADERS,
        )
        if not isinstance(data, dict):
            return 0
        return parse_int(data.get('TotalRecords') or data.get('totalRecords')) or 0

    def bulk_export(
        self,
        export_config: Optional[ExportConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        stop: Optional[StopSignal] = None,
    ) -> str:
        """
        Run the five-step export and return the CSV text.

        Sequence: load the search page, save the filter, count matching
        derivatives, prepare every page in order, download. A failure at any
        step leaves the server-side export incomplete, so the whole sequence
        has to be restarted. The stop signal is honoured only before page
        preparation starts.

        Raises:
            SessionExpired: session rejected at any step
            ProtocolStructureError: a step returned an unexpected shape or a
                page was not prepared
        """
        export_config = export_config or ExportConfig(page_size=self.config.settings.get('page_size', 10))
        search_filter = export_config.search_filter()
        progress = RunProgress()

        def emit(stage: ProgressStage, index: Optional[int] = None):
            progress.advance(progress.current_index if index is None else index, stage)
            if on_progress:
                on_progress(progress.model_copy())

        emit(ProgressStage.AUTHENTICATING)
        self.request('GET', SEARCH_PATH)

        emit(ProgressStage.SAVING_FILTERS)
        self.request('POST', SAVE_FILTERS_PATH, json={'searchFilter': search_filter}, headers=AJAX_HEADERS)

        emit(ProgressStage.COUNTING)
        total = self.count_records(search_filter)
        if total <= 0:
            logger.warning(f"Ogilvie returned no record count, preparing {FALLBACK_RECORD_ESTIMATE} records")
            total = FALLBACK_RECORD_ESTIMATE
        pages = math.ceil(total / export_config.page_size)
        progress.total = pages
        progress.vehicles_found = total
        logger.info(
            f"Ogilvie export: {total} derivatives, {pages} pages "
            f"({export_config.contract_term}m / {export_config.annual_mileage} miles)"
        )

        if stop is not None and stop.is_set():
            logger.info("Stop requested before export preparation")
            progress.status = "stopped"
            emit(ProgressStage.STOPPED)
            return ""

        emit(ProgressStage.PREPARING, 0)
        for page in range(1, pages + 1):
            data = self.request_json(
                'POST',
                PREPARE_EXPORT_PATH,
                json={'PageNo': page, 'PageSize': export_config.page_size, 'SearchFilter': search_filter},
                headers=AJAX_HEADERS,
            )
            if not isinstance(data, dict) or not data.get('result'):
                raise self.structure_error(f"PrepareExport failed on page {page} of {pages}", str(data))
            emit(ProgressStage.PREPARING, page)
            if page < pages:
                self.policy.wait_page()

        emit(ProgressStage.DOWNLOADING)
        response = self.request('GET', EXPORT_PATH, headers={'Accept': 'text/csv'})
        csv_text = response.text
        if not csv_text.strip():
            raise self.structure_error("Export returned an empty file")

        progress.status = "completed"
        emit(ProgressStage.COMPLETED, pages)
        logger.info(f"Ogilvie export downloaded ({len(csv_text)} bytes)")
        return csv_text
