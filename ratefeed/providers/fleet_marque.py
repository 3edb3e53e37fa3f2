"""
Fleet Marque fleet-discount portal client.

The portal publishes manufacturer discounts per derivative. There is no
export: the listing is walked make by make, model by model, with paced
requests so the portal's anti-automation checks are not triggered.
"""

import logging
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from ratefeed.core.base_client import ProgressCallback, ProviderClient
from ratefeed.core.batch import StopSignal, run_with_retry
from ratefeed.core.config import Credentials
from ratefeed.core.errors import AuthenticationFailed, RatefeedError, SessionExpired
from ratefeed.core.parsing import clean_text, parse_int, parse_money_minor, parse_percent
from ratefeed.core.registry import register_provider
from ratefeed.core.schema import (
    FleetDiscountTerm,
    ProgressStage,
    ProviderCode,
    RunProgress,
    Session,
)

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login.php"
MODELS_PATH = "/ems/findmakemodel.php"
DERIVATIVES_PATH = "/ems/findderivative_inc.php"

FLEET_MARQUE_MAKES: Dict[str, str] = {
    'audi': 'AUDI',
    'bmw': 'BMW',
    'byd': 'BYD',
    'chery': 'CHERY',
    'citroen': 'CITROEN',
    'cupra': 'CUPRA',
    'dacia': 'DACIA',
    'ds': 'DS',
    'geely': 'GEELY',
    'genesis': 'GENESIS',
    'honda': 'HONDA',
    'hyundai': 'HYUNDAI',
    'jaecoo': 'JAECOO',
    'kia': 'KIA',
    'land-rover': 'LAND ROVER',
    'leapmotor': 'LEAPMOTOR',
    'lexus': 'LEXUS',
    'maxus': 'MAXUS',
    'mazda': 'MAZDA',
    'mg-motor-uk': 'MG MOTOR UK',
    'nissan': 'NISSAN',
    'omoda': 'OMODA',
    'peugeot': 'PEUGEOT',
    'porsche': 'PORSCHE',
    'renault': 'RENAULT',
    'seat': 'SEAT',
    'skoda': 'SKODA',
    'toyota': 'TOYOTA',
    'vauxhall': 'VAUXHALL',
    'volkswagen': 'VOLKSWAGEN',
    'volvo': 'VOLVO',
}

_SID_PATTERN = re.compile(r'sid=([a-z0-9]+)', re.IGNORECASE)


class ScrapeConfig(BaseModel):
    """Which makes to walk. Empty means every known make."""
    makes: List[str] = Field(default_factory=list)

    def selected_makes(self) -> List[str]:
        if not self.makes:
            return list(FLEET_MARQUE_MAKES)
        unknown = [m for m in self.makes if m not in FLEET_MARQUE_MAKES]
        if unknown:
            logger.warning(f"Ignoring unknown Fleet Marque makes: {', '.join(unknown)}")
        return [m for m in self.makes if m in FLEET_MARQUE_MAKES]


def parse_models(html: str) -> List[Dict[str, str]]:
    """Model options from the make page, skipping the placeholder."""
    soup = BeautifulSoup(html, 'lxml')
    models = []
    for option in soup.select('select[name="model"] option'):
        value = (option.get('value') or '').strip()
        if not value or value == '0':
            continue
        models.append({'name': option.get_text(strip=True), 'slug': value})
    return models


def parse_derivatives(
    html: str,
    make: str,
    model: str,
    base_url: str = "https://www.fleetportal.co.uk",
) -> List[FleetDiscountTerm]:
    """
    Parse a derivative listing.

    Each ``.tablealternate`` row has direct div columns: CAP id, model,
    derivative, CAP price, CO2, discount %. Rows without a numeric CAP id
    (headers, separators) are skipped.

    Args:
        html: Listing page body
        make: Make display name
        model: Model name used when a row leaves it blank
        base_url: Prefix for relative deal links
    """
    soup = BeautifulSoup(html, 'lxml')
    terms = []
    for row in soup.select('.tablealternate'):
        cols = row.find_all('div', recursive=False)
        if len(cols) < 7:
            continue
        capid = cols[0].get_text(strip=True)
        if not capid.isdigit():
            continue

        price = parse_money_minor(cols[3].get_text(strip=True))
        co2 = parse_int(re.sub(r'[^\d]', '', cols[4].get_text(strip=True)))
        discount = parse_percent(cols[5].get_text(strip=True)) or Decimal(0)
        discounted = None
        if price is not None:
            discounted = int((Decimal(price) * (1 - discount / 100)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))

        link = row.select_one('a[href*="emsdealpage"]')
        deal_url = None
        if link and link.get('href'):
            href = link['href']
            deal_url = href if href.startswith('http') else f"{base_url.rstrip('/')}/{href.lstrip('/')}"

        terms.append(FleetDiscountTerm(
            cap_code=capid,
            manufacturer=make,
            model=clean_text(cols[1].get_text()) or model,
            derivative=cols[2].get_text(strip=True),
            list_price_minor=price,
            discount_percent=float(discount),
            discounted_price_minor=discounted,
            co2_gkm=co2,
            deal_url=deal_url,
        ))
    return terms


@register_provider(ProviderCode.FLEET_MARQUE)
class FleetMarqueClient(ProviderClient):
    """
    Fleet Marque portal client.

    The session is the PHPSESSID cookie plus a ``sid`` query parameter the
    portal issues at login; the sid is kept in the session profile.
    """

    PROVIDER = ProviderCode.FLEET_MARQUE
    BASE_URL = "https://www.fleetportal.co.uk"
    LOGIN_MARKERS = ["name='duser'", "Login</b>"]
    SESSION_TTL_HOURS = 8.0

    def extract_session_tokens(self, html_body: str) -> Dict[str, Any]:
        match = _SID_PATTERN.search(html_body or '')
        return {'sid': match.group(1) if match else None}

    def login(self, credentials: Credentials) -> Session:
        """
        Post the login form and keep the issued sid and PHPSESSID.

        Raises:
            AuthenticationFailed: portal showed the login form again
            ProtocolStructureError: no sid in the redirect or body
        """
        logger.info(f"Logging in to Fleet Marque as {credentials.username}")
        response = self.request(
            'POST', LOGIN_PATH,
            authenticated=False,
            data={
                'submitted': '1',
                'duser': credentials.username,
                'pword': credentials.password,
                'remember': '1',
            },
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
        )

        sid = self.extract_session_tokens(response.url)['sid'] or self.extract_session_tokens(response.text)['sid']
        if not sid:
            if self.is_login_page(response.text):
                raise AuthenticationFailed("Login failed - check your email and password", provider=self.provider_id)
            raise self.structure_error("Could not extract session ID from login response", response.text)

        phpsessid = self.http.cookies.get('PHPSESSID', '')
        session = self.save_session(f"PHPSESSID={phpsessid}" if phpsessid else self.cookie_header(), profile={'sid': sid})
        logger.info(f"Fleet Marque login successful, sid {sid[:8]}...")
        return session

    def _sid(self) -> str:
        sid = self.current_session().profile.get('sid')
        if not sid:
            raise self.expire_session("Stored session has no sid")
        return sid

    def fetch_models(self, make: str) -> List[Dict[str, str]]:
        response = self.request('GET', MODELS_PATH, params={
            'sid': self._sid(),
            'vehicletype': '',
            'make': make,
        }, headers={'X-Requested-With': 'XMLHttpRequest'})
        return parse_models(response.text)

    def fetch_derivatives(self, make: str, model: Dict[str, str]) -> List[FleetDiscountTerm]:
        response = self.request('GET', DERIVATIVES_PATH, params={
            'sid': self._sid(),
            'ajaxcall': '1',
            'vehicletype': '0',
            'make': make,
            'model': model['slug'],
        }, headers={'X-Requested-With': 'XMLHttpRequest'})
        return parse_derivatives(response.text, FLEET_MARQUE_MAKES.get(make, make.upper()), model['name'], self.base_url)

    def scrape(
        self,
        scrape_config: Optional[ScrapeConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        stop: Optional[StopSignal] = None,
    ) -> List[FleetDiscountTerm]:
        """
        Walk make -> model -> derivative listings.

        A randomized pause follows every model and a longer fixed pause
        separates makes. Session expiry aborts the walk; any other failure
        for one make or model is logged and skipped.

        Returns:
            Every discount term found, in listing order
        """
        makes = (scrape_config or ScrapeConfig()).selected_makes()
        progress = RunProgress(current_stage=ProgressStage.SCRAPING, total=len(makes))
        terms: List[FleetDiscountTerm] = []

        def emit():
            if on_progress:
                on_progress(progress.model_copy())

        for i, make in enumerate(makes):
            progress.advance(i)
            progress.current_make = FLEET_MARQUE_MAKES[make]
            progress.current_model = None
            emit()
            logger.info(f"[{i + 1}/{len(makes)}] Processing {progress.current_make}...")

            try:
                models = self.fetch_models(make)
            except SessionExpired:
                raise
            except RatefeedError as e:
                logger.error(f"Error processing make {progress.current_make}: {e}")
                models = []
            logger.info(f"  Found {len(models)} models for {progress.current_make}")

            for model in models:
                if stop is not None and stop.is_set():
                    logger.info(f"Scrape stopped: {stop.reason}")
                    progress.status = "stopped"
                    progress.current_stage = ProgressStage.STOPPED
                    emit()
                    return terms

                progress.current_model = model['name']
                emit()
                try:
                    found, _ = run_with_retry((make, model), lambda m: self.fetch_derivatives(*m), self.policy)
                except SessionExpired:
                    raise
                except RatefeedError as e:
                    logger.error(f"Error fetching {progress.current_make} {model['name']}: {e}")
                    found = []
                logger.debug(f"    {model['name']}: {len(found)} derivatives")
                terms.extend(found)
                progress.vehicles_found = len(terms)
                self.policy.wait()

            if i < len(makes) - 1:
                self.policy.wait_group()

        progress.advance(len(makes), ProgressStage.COMPLETED)
        progress.status = "completed"
        emit()
        logger.info(f"Fleet Marque scrape complete: {len(terms)} derivatives from {len(makes)} makes")
        return terms
