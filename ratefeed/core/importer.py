"""
Rate parsing and bulk import.

RateParser turns provider rows (CSV text, row dicts or JSON quote payloads)
into CanonicalRate records through an explicit column mapping. RateImporter
wraps a parse in an ImportBatch: it matches every rate to a CAP code,
writes the batch to the rate store and finalizes the batch record.
"""

import contextlib
import hashlib
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field

from .errors import MatchNotFound, ValidationError
from .matcher import VehicleMatcher
from .parsing import (
    ColumnMapping,
    clean_text,
    parse_int,
    parse_money_minor,
    read_csv_rows,
)
from .schema import (
    CanonicalRate,
    ContractType,
    ImportBatch,
    ImportStatus,
    PaymentPlan,
    ProviderCode,
    RawProviderResponse,
    contract_type_from_string,
    fuel_type_from_string,
    transmission_from_string,
)
from .storage import RateStore

logger = logging.getLogger(__name__)

# Canonical fields parsed as money (major units in, pence out)
MONEY_FIELDS = {
    'lease_rental': 'lease_rental_minor',
    'service_rental': 'service_rental_minor',
    'total_rental': 'total_rental_minor',
    'initial_payment': 'initial_payment_minor',
    'otr_price': 'otr_price_minor',
    'p11d': 'p11d_minor',
}

# Mapped fields that are not CanonicalRate attributes land in ``extras``
CORE_FIELDS = set(MONEY_FIELDS) | {
    'manufacturer', 'model', 'variant', 'cap_code', 'co2', 'term',
    'annual_mileage', 'contract_mileage', 'payment_plan', 'contract_type',
    'product', 'fuel_type', 'transmission', 'body_style', 'model_year',
    'derivative_name',
}


class ContractMeta(BaseModel):
    """Import-level context applied to every row that does not say otherwise."""
    contract_type: ContractType = ContractType.CHNM
    term: int = 36
    annual_mileage: int = 10000
    payment_plan: Optional[PaymentPlan] = None
    import_batch_id: Optional[str] = None


class ParseOutcome(BaseModel):
    """Rates parsed from one raw response, plus the rows that were dropped."""
    rates: List[CanonicalRate] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    total_rows: int = 0

    @property
    def success_rows(self) -> int:
        return len(self.rates)

    @property
    def error_rows(self) -> int:
        return len(self.errors)


class RateParser:
    """
    Generic mapping-driven parser.

    Subclasses set PROVIDER and COLUMNS and override the ``resolve_*`` hooks
    for provider quirks (payment plan vocabulary, contract mileage, product
    names).

    Args:
        mapping: Column name/index -> canonical field. Defaults to COLUMNS.
        provider: Provider code stamped on every rate. Defaults to PROVIDER.
    """

    PROVIDER: Optional[ProviderCode] = None
    COLUMNS: Dict[Union[str, int], str] = {}
    PAYMENT_PLANS: Dict[str, PaymentPlan] = {}
    DEFAULT_PAYMENT_PLAN: PaymentPlan = PaymentPlan.MONTHLY_IN_ADVANCE

    def __init__(
        self,
        mapping: Optional[Mapping[Union[str, int], str]] = None,
        provider: Optional[ProviderCode] = None,
    ):
        self.mapping = ColumnMapping(mapping or self.COLUMNS)
        self.provider = provider or self.PROVIDER

    # === Input handling ===

    @property
    def headerless(self) -> bool:
        return all(isinstance(k, int) for k in self.mapping.mapping)

    def rows_from(self, raw: Union[RawProviderResponse, str, bytes, List[Any]]) -> List[Any]:
        if isinstance(raw, RawProviderResponse):
            return raw.rows
        if isinstance(raw, (str, bytes)):
            return read_csv_rows(raw, header=not self.headerless)
        return list(raw)

    # === Main entry point ===

    def parse(
        self,
        raw: Union[RawProviderResponse, str, bytes, List[Any]],
        provider: Optional[ProviderCode] = None,
        contract_meta: Optional[ContractMeta] = None,
    ) -> ParseOutcome:
        """
        Parse raw provider data into canonical rates.

        Rows without a manufacturer or model are dropped and counted as
        errors. Placeholder values become None, never zero.

        Args:
            raw: CSV text, a list of rows or a RawProviderResponse
            provider: Overrides the parser's provider code
            contract_meta: Import-level defaults

        Returns:
            ParseOutcome with the rates, error messages and row count
        """
        provider = provider or self.provider
        if isinstance(raw, RawProviderResponse):
            provider = provider or raw.provider
        if provider is None:
            raise ValueError("No provider code given for parse")
        meta = contract_meta or ContractMeta()

        rows = self.rows_from(raw)
        outcome = ParseOutcome(total_rows=len(rows))
        for index, row in enumerate(rows):
            # +2: 1-based, after the header line
            row_number = index + (1 if self.headerless else 2)
            try:
                fields = self.mapping.apply(row)
                outcome.rates.append(self.build_rate(fields, provider, meta, row_number))
            except ValidationError as e:
                outcome.errors.append(e.message)
            except ValueError as e:
                outcome.errors.append(f"Row {row_number}: {e}")
        if outcome.errors:
            logger.warning(f"{provider.value}: dropped {outcome.error_rows} of {outcome.total_rows} rows")
        return outcome

    def build_rate(
        self,
        fields: Dict[str, Any],
        provider: ProviderCode,
        meta: ContractMeta,
        row_number: int,
    ) -> CanonicalRate:
        manufacturer = clean_text(fields.get('manufacturer'))
        model = clean_text(fields.get('model'))
        if not manufacturer or not model:
            raise ValidationError(f"Row {row_number}: Missing manufacturer or model", provider=provider.value)

        values: Dict[str, Any] = {
            'provider_code': provider,
            'manufacturer': manufacturer,
            'model': model,
            'variant': clean_text(fields.get('variant')) or '',
            'cap_code': clean_text(fields.get('cap_code')),
            'co2_gkm': parse_int(fields.get('co2')),
            'fuel_type': fuel_type_from_string(clean_text(fields.get('fuel_type'))),
            'transmission': transmission_from_string(clean_text(fields.get('transmission'))),
            'body_style': clean_text(fields.get('body_style')),
            'model_year': clean_text(fields.get('model_year')),
            'import_batch_id': meta.import_batch_id,
        }
        for source, target in MONEY_FIELDS.items():
            values[target] = parse_money_minor(fields.get(source))

        contract_type = self.resolve_contract_type(fields, meta)
        term = self.resolve_term(fields, meta)
        values.update(
            contract_type=contract_type,
            term=term,
            annual_mileage=self.resolve_annual_mileage(fields, meta, term),
            payment_plan=self.resolve_payment_plan(clean_text(fields.get('payment_plan')), meta),
            vat_inclusive=contract_type.is_personal,
            derivative_name=self.derivative_name(fields, manufacturer, model),
            extras=self.extras(fields),
        )
        values.update(self.resolve_rentals(fields, contract_type))
        return CanonicalRate(**values)

    # === Hooks ===

    def resolve_contract_type(self, fields: Dict[str, Any], meta: ContractMeta) -> ContractType:
        return contract_type_from_string(clean_text(fields.get('contract_type')), meta.contract_type)

    def resolve_term(self, fields: Dict[str, Any], meta: ContractMeta) -> int:
        return parse_int(fields.get('term')) or meta.term

    def resolve_annual_mileage(self, fields: Dict[str, Any], meta: ContractMeta, term: int) -> int:
        mileage = parse_int(fields.get('annual_mileage'))
        return mileage if mileage is not None else meta.annual_mileage

    def resolve_rentals(self, fields: Dict[str, Any], contract_type: ContractType) -> Dict[str, Optional[int]]:
        """Rental overrides in pence, for providers whose columns depend on the contract type."""
        return {}

    def resolve_payment_plan(self, text: Optional[str], meta: ContractMeta) -> PaymentPlan:
        if text:
            if text in self.PAYMENT_PLANS:
                return self.PAYMENT_PLANS[text]
            try:
                return PaymentPlan(text.lower())
            except ValueError:
                pass
        return meta.payment_plan or self.DEFAULT_PAYMENT_PLAN

    def derivative_name(self, fields: Dict[str, Any], manufacturer: str, model: str) -> Optional[str]:
        return clean_text(fields.get('derivative_name'))

    def extras(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        extra = {}
        for name, value in fields.items():
            if name in CORE_FIELDS:
                continue
            text = clean_text(value)
            if text is not None:
                extra[name] = text
        return extra


# === Import pipeline ===

def content_hash(content: Union[str, bytes]) -> str:
    if isinstance(content, str):
        content = content.encode('utf-8')
    return hashlib.sha256(content).hexdigest()


def make_batch_id(provider: ProviderCode, contract_type: ContractType, content: Union[str, bytes]) -> str:
    """Deterministic batch id: the same content always maps to the same batch."""
    return f"{provider.value}_{contract_type.value.lower()}_{content_hash(content)[:12]}"


class RateImporter:
    """
    Bulk import of provider rates.

    Args:
        store: Canonical rate sink
        matcher: CAP code resolver; None leaves every rate unmatched
    """

    def __init__(self, store: RateStore, matcher: Optional[VehicleMatcher] = None):
        self.store = store
        self.matcher = matcher

    def import_content(
        self,
        parser: RateParser,
        content: Union[str, bytes],
        contract_type: ContractType,
        file_name: Optional[str] = None,
        meta: Optional[ContractMeta] = None,
        force: bool = False,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> ImportBatch:
        """
        Parse, match and store one provider export.

        Re-importing identical content returns the existing batch unless
        ``force`` is set, in which case the batch is rebuilt in place under
        the same id.
        """
        provider = parser.provider
        file_hash = content_hash(content)
        batch_id = make_batch_id(provider, contract_type, content)

        existing = self.store.get_batch(batch_id)
        if existing is not None and existing.is_finalized and not force:
            logger.info(f"Duplicate file detected, already imported as {batch_id} on {existing.started_at:%Y-%m-%d %H:%M}")
            return existing

        meta = (meta or ContractMeta()).model_copy(update={
            'contract_type': contract_type,
            'import_batch_id': batch_id,
        })
        outcome = parser.parse(content, provider, meta)
        return self.import_rows(
            outcome,
            provider=provider,
            contract_type=contract_type,
            batch_id=batch_id,
            file_name=file_name,
            file_hash=file_hash,
            on_progress=on_progress,
        )

    def import_rows(
        self,
        outcome: ParseOutcome,
        provider: ProviderCode,
        contract_type: ContractType,
        batch_id: str,
        file_name: Optional[str] = None,
        file_hash: Optional[str] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> ImportBatch:
        """
        Match parsed rates, write them as one batch and finalize it.

        Low-confidence matches leave the rate unmatched; the rate is still
        stored. Rates whose own contract type differs from the batch's are
        counted as errors, never filed under the batch.

        If storing fails part way, the batch is finalized as failed before
        the error propagates.
        """
        batch = ImportBatch(
            id=batch_id,
            provider_code=provider,
            contract_type=contract_type,
            file_name=file_name,
            file_hash=file_hash,
            total_rows=outcome.total_rows,
        )
        self.store.save_batch(batch)
        logger.info(f"Importing {outcome.total_rows} {provider.value} rows as {batch_id}")

        try:
            self._fill_batch(batch, outcome, on_progress)
            batch.finalize()
            if batch.status == ImportStatus.FAILED:
                # The previous good batch stays latest
                batch.is_latest = False
            self.store.save_batch(batch)
        except Exception as e:
            logger.error(f"Import {batch_id} aborted: {e}")
            if not batch.is_finalized:
                batch.record_error(f"Import aborted: {e}")
                batch.finalize(failed=True)
            batch.is_latest = False
            self.store.save_batch(batch)
            raise

        if batch.status == ImportStatus.COMPLETED:
            self.store.supersede(provider, contract_type, keep_id=batch_id)

        logger.info(
            f"Import {batch_id} {batch.status.value}: {batch.success_rows} stored, "
            f"{batch.error_rows} errors, {batch.unmatched_rows} unmatched, "
            f"{batch.unique_cap_codes} CAP codes"
        )
        return batch

    def _fill_batch(
        self,
        batch: ImportBatch,
        outcome: ParseOutcome,
        on_progress: Optional[Callable[[int, int], None]],
    ) -> None:
        for message in outcome.errors:
            batch.record_error(message)

        rates: List[CanonicalRate] = []
        provider_coded: List[CanonicalRate] = []
        cap_codes = set()
        matching = self.matcher.bulk() if self.matcher is not None else contextlib.nullcontext()
        with matching:
            for i, rate in enumerate(outcome.rates, 1):
                if rate.contract_type != batch.contract_type:
                    batch.record_error(
                        f"{rate.display_name}: contract type {rate.contract_type.value} "
                        f"does not match batch {batch.contract_type.value}"
                    )
                    continue
                rate = rate.model_copy(update={'import_batch_id': batch.id})
                if rate.cap_code:
                    provider_coded.append(rate)
                try:
                    rate = self.apply_match(rate)
                except Exception as e:
                    logger.error(f"Error matching {rate.display_name}: {e}")
                    batch.record_error(f"{rate.display_name}: {e}")
                    continue
                if rate.cap_code:
                    cap_codes.add(rate.cap_code)
                else:
                    batch.unmatched_rows += 1
                rates.append(rate)
                if on_progress:
                    on_progress(i, len(outcome.rates))

            batch.success_rows = self.store.replace_batch_rates(batch.id, rates)
            if self.matcher is not None and provider_coded:
                # Rates with provider CAP codes become fuzzy-match candidates for other funders
                self.matcher.reference_store.refresh_from_rates(provider_coded)
        batch.unique_cap_codes = len(cap_codes)

    def apply_match(self, rate: CanonicalRate) -> CanonicalRate:
        """Resolve a rate's CAP code; unusable matches leave it flagged unmatched."""
        if rate.cap_code:
            # Provider-supplied CAP codes are authoritative
            return rate.model_copy(update={'unmatched': False, 'match_confidence': 100})
        if self.matcher is None:
            return rate.model_copy(update={'unmatched': True})

        try:
            match = self.matcher.resolve(
                rate.manufacturer,
                rate.model,
                rate.variant,
                rate.p11d_minor,
                derivative_name=rate.derivative_name,
                provider=rate.provider_code.value,
            )
        except MatchNotFound as e:
            logger.debug(f"Unmatched: {e}")
            return rate.model_copy(update={
                'unmatched': True,
                'match_confidence': e.confidence or None,
            })
        return rate.model_copy(update={
            'cap_code': match.cap_code,
            'unmatched': False,
            'match_confidence': match.confidence,
        })
