"""
Vehicle identity resolution.

Resolves a provider's (manufacturer, model, variant, P11D) description to a
CAP code in three tiers, first hit wins:

1. Exact lookup in the provider-curated mapping table by full derivative name.
2. Previously confirmed (or manually set) matches cached by source key.
3. Fuzzy scoring against the vehicle reference set.

Fuzzy results at or above the auto-confirm threshold are written back to the
cache so the next identical lookup is a tier-2 hit. Lower results are stored
as pending and returned without a usable CAP code. Every attempt goes to the
audit log.
"""

import hashlib
import logging
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .errors import MatchNotFound
from .schema import MatchMethod, MatchStatus, VehicleMatch
from .storage import (
    CapMappingStore,
    MatchAuditLog,
    MatchStore,
    ReferenceVehicle,
    ReferenceVehicleStore,
)

logger = logging.getLogger(__name__)

MANUFACTURER_ALIASES: Dict[str, str] = {
    "MERCEDES-BENZ": "MERCEDES",
    "MERCEDES BENZ": "MERCEDES",
    "VW": "VOLKSWAGEN",
    "LAND ROVER": "LANDROVER",
    "ALFA ROMEO": "ALFAROMEO",
    "ROLLS-ROYCE": "ROLLSROYCE",
    "ROLLS ROYCE": "ROLLSROYCE",
    "ASTON MARTIN": "ASTONMARTIN",
    "BMW ALPINA": "ALPINA",
}

# P11D bands in pence
P11D_TOLERANCE = 50000          # £500
P11D_HARD_REJECTION = 100000    # £1000

HIGH_CONFIDENCE_THRESHOLD = 90
MEDIUM_CONFIDENCE_THRESHOLD = 70
TOLERANCE_REQUIRED_ABOVE = 50

BODY_TYPE_KEYWORDS = [
    "HATCHBACK", "HATCH", "SALOON", "SEDAN", "ESTATE", "TOURING", "WAGON",
    "SUV", "CROSSOVER", "COUPE", "CONVERTIBLE", "CABRIO", "CABRIOLET", "ROADSTER",
    "MPV", "VAN", "PICKUP", "TRUCK",
]

BODY_TYPE_NORMALIZATION = {
    "CABRIO": "CONVERTIBLE",
    "CABRIOLET": "CONVERTIBLE",
    "HATCH": "HATCHBACK",
    "SEDAN": "SALOON",
    "WAGON": "ESTATE",
    "TOURING": "ESTATE",
}


# === Normalization ===

def normalize_manufacturer(name: str) -> str:
    """'Mercedes-Benz' -> 'MERCEDES', 'Land Rover' -> 'LANDROVER'."""
    upper = (name or "").upper().strip()
    return MANUFACTURER_ALIASES.get(upper) or re.sub(r'[^A-Z0-9]', '', upper)


def normalize_model_name(name: str) -> str:
    """Uppercase, drop punctuation, collapse whitespace."""
    upper = (name or "").upper()
    upper = re.sub(r'[^A-Z0-9\s]', '', upper)
    return re.sub(r'\s+', ' ', upper).strip()


def source_key(manufacturer: str, model: str, variant: Optional[str]) -> str:
    """Cache key for a provider's description of a vehicle."""
    normalized = (
        f"{normalize_manufacturer(manufacturer)}_"
        f"{normalize_model_name(model)}_"
        f"{normalize_model_name(variant or '')}"
    )
    return hashlib.md5(normalized.encode()).hexdigest()


# === Similarity scoring ===

def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> int:
    """Levenshtein similarity as a 0-100 percentage."""
    if not a or not b:
        return 0
    if a == b:
        return 100
    norm_a = normalize_model_name(a)
    norm_b = normalize_model_name(b)
    if norm_a == norm_b:
        return 100
    max_len = max(len(norm_a), len(norm_b))
    if max_len == 0:
        return 100
    return round((1 - levenshtein_distance(norm_a, norm_b) / max_len) * 100)


def token_overlap(a: str, b: str) -> int:
    """Share of variant tokens in common, 0-100 (Dice coefficient)."""
    tokens_a = set(normalize_model_name(a).split())
    tokens_b = set(normalize_model_name(b).split())
    if not tokens_a or not tokens_b:
        return 0
    return round(200 * len(tokens_a & tokens_b) / (len(tokens_a) + len(tokens_b)))


def extract_body_type(text: str) -> Optional[str]:
    if not text:
        return None
    upper = text.upper()
    for body in BODY_TYPE_KEYWORDS:
        if body in upper:
            return BODY_TYPE_NORMALIZATION.get(body, body)
    return None


def extract_base_model(model_name: str) -> str:
    """'DUSTER ESTATE' -> 'DUSTER'."""
    if not model_name:
        return ""
    upper = model_name.upper().strip()
    for body in BODY_TYPE_KEYWORDS:
        upper = re.sub(rf'\s*{body}\s*$', '', upper).strip()
    return upper


def base_models_compatible(model_a: str, model_b: str) -> bool:
    base_a = extract_base_model(model_a)
    base_b = extract_base_model(model_b)
    if not base_a or not base_b:
        return True
    norm_a = normalize_model_name(base_a)
    norm_b = normalize_model_name(base_b)
    if norm_a == norm_b or norm_a in norm_b or norm_b in norm_a:
        return True
    return string_similarity(base_a, base_b) >= 60


def body_types_compatible(text_a: Optional[str], text_b: Optional[str]) -> bool:
    body_a = extract_body_type(text_a or "")
    body_b = extract_body_type(text_b or "")
    if not body_a or not body_b:
        return True
    return body_a == body_b


def p11d_within_tolerance(a: Optional[int], b: Optional[int]) -> bool:
    if a is None or b is None:
        return True
    return abs(a - b) <= P11D_TOLERANCE


def p11d_hard_reject(a: Optional[int], b: Optional[int]) -> bool:
    if a is None or b is None:
        return False
    return abs(a - b) > P11D_HARD_REJECTION


def p11d_similarity_bonus(a: Optional[int], b: Optional[int]) -> int:
    """0-15 points for P11D proximity."""
    if a is None or b is None:
        return 0
    diff = abs(a - b)
    if diff == 0:
        return 15
    if diff <= 5000:
        return 12
    if diff <= 10000:
        return 8
    if diff <= 20000:
        return 4
    return 0


def calculate_confidence(manufacturer_match: bool, combined_similarity: float, p11d_bonus: int) -> int:
    """
    Overall confidence, 0-100.

    Up to 70 from model+variant similarity, up to 15 from P11D proximity
    and 15 for the manufacturer match.
    """
    if not manufacturer_match:
        return 0
    combined = (combined_similarity / 100) * 70
    return min(100, round(combined + p11d_bonus + 15))


def status_for_confidence(confidence: float) -> MatchStatus:
    return MatchStatus.CONFIRMED if confidence >= HIGH_CONFIDENCE_THRESHOLD else MatchStatus.PENDING


# === Matcher ===

class VehicleMatcher:
    """
    Tiered CAP code resolver.

    Args:
        match_store: Cache of confirmed/pending matches
        reference_store: Canonical vehicles for fuzzy matching
        mapping_store: Provider-curated exact mapping table
        audit_log: Sink for every attempt
    """

    def __init__(
        self,
        match_store: MatchStore,
        reference_store: ReferenceVehicleStore,
        mapping_store: Optional[CapMappingStore] = None,
        audit_log: Optional[MatchAuditLog] = None,
    ):
        self.match_store = match_store
        self.reference_store = reference_store
        self.mapping_store = mapping_store
        self.audit_log = audit_log
        self.fuzzy_runs = 0

    @contextmanager
    def bulk(self):
        """
        Group many lookups: the reference set is read once and the match
        cache is written once, when the block exits.
        """
        with self.reference_store.snapshot(), self.match_store.deferred():
            yield self

    def match(
        self,
        manufacturer: str,
        model: str,
        variant: Optional[str] = None,
        p11d_minor: Optional[int] = None,
        derivative_name: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> VehicleMatch:
        """
        Resolve a vehicle to a CAP code.

        Returns a VehicleMatch in every case. ``is_usable`` tells the caller
        whether the CAP code may be written onto a rate.
        """
        key = source_key(manufacturer, model, variant)
        base = dict(
            source_key=key,
            source_provider=provider,
            manufacturer=manufacturer,
            model=model,
            variant=variant or "",
            p11d_minor=p11d_minor,
        )

        # Tier 1: exact mapping
        if self.mapping_store is not None and derivative_name:
            mapping = self.mapping_store.lookup(derivative_name)
            if mapping is not None:
                result = VehicleMatch(
                    **base,
                    cap_code=mapping.cap_id,
                    confidence=100,
                    method=MatchMethod.EXACT_MAPPING,
                    status=MatchStatus.CONFIRMED,
                    matched_manufacturer=manufacturer,
                    matched_model=model,
                    matched_variant=variant,
                    matched_p11d_minor=p11d_minor,
                    matched_at=datetime.now(timezone.utc),
                )
                self.match_store.upsert(result)
                return self._audit(derivative_name, result)

        # Tier 2: confirmed cache
        cached = self.match_store.get(key)
        if cached is not None and cached.is_usable:
            result = cached.model_copy(update={'method': MatchMethod.CONFIRMED_CACHE})
            return self._audit(self._source_text(manufacturer, model, variant), result)

        if cached is not None and cached.status == MatchStatus.REJECTED:
            # Rejected by a reviewer; only confirm_manual changes it
            return self._audit(self._source_text(manufacturer, model, variant), cached)

        # Tier 3: fuzzy
        result = self.find_fuzzy_match(manufacturer, model, variant, p11d_minor, provider)
        self.match_store.upsert(result)
        return self._audit(self._source_text(manufacturer, model, variant), result)

    def resolve(
        self,
        manufacturer: str,
        model: str,
        variant: Optional[str] = None,
        p11d_minor: Optional[int] = None,
        derivative_name: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> VehicleMatch:
        """
        Like ``match``, but only returns matches whose CAP code may be used.

        Raises:
            MatchNotFound: no candidate, or one still pending review or rejected
        """
        result = self.match(manufacturer, model, variant, p11d_minor, derivative_name, provider)
        if not result.is_usable:
            raise MatchNotFound(
                f"No usable match for {self._source_text(manufacturer, model, variant)} "
                f"({result.status.value}, confidence {result.confidence})",
                provider=provider,
                source_key=result.source_key,
                confidence=result.confidence,
            )
        return result

    def find_fuzzy_match(
        self,
        manufacturer: str,
        model: str,
        variant: Optional[str],
        p11d_minor: Optional[int],
        provider: Optional[str] = None,
    ) -> VehicleMatch:
        """Score reference candidates and return the best, whatever its confidence."""
        self.fuzzy_runs += 1
        key = source_key(manufacturer, model, variant)
        normalized_mfr = normalize_manufacturer(manufacturer)

        best = VehicleMatch(
            source_key=key,
            source_provider=provider,
            manufacturer=manufacturer,
            model=model,
            variant=variant or "",
            p11d_minor=p11d_minor,
        )

        source_full = f"{model} {variant or ''}".strip()
        for candidate in self.reference_store.candidates(normalized_mfr, key=normalize_manufacturer):
            if p11d_hard_reject(p11d_minor, candidate.p11d_minor):
                continue
            candidate_full = f"{candidate.model} {candidate.variant or ''}".strip()
            if not body_types_compatible(source_full, candidate_full):
                continue
            if not base_models_compatible(model, candidate.model):
                continue

            confidence = self.score(source_full, variant, p11d_minor, candidate)
            if confidence >= TOLERANCE_REQUIRED_ABOVE and not p11d_within_tolerance(p11d_minor, candidate.p11d_minor):
                continue

            if confidence > best.confidence:
                best = best.model_copy(update=dict(
                    cap_code=candidate.cap_code,
                    confidence=confidence,
                    method=MatchMethod.FUZZY_AUTO,
                    status=status_for_confidence(confidence),
                    matched_manufacturer=candidate.manufacturer,
                    matched_model=candidate.model,
                    matched_variant=candidate.variant,
                    matched_p11d_minor=candidate.p11d_minor,
                    matched_at=datetime.now(timezone.utc),
                ))
                if confidence == 100:
                    break

        if best.cap_code:
            logger.debug(f"Fuzzy match {source_full} -> {best.cap_code} ({best.confidence})")
        return best

    @staticmethod
    def score(
        source_full: str,
        variant: Optional[str],
        p11d_minor: Optional[int],
        candidate: ReferenceVehicle,
    ) -> int:
        candidate_full = f"{candidate.model} {candidate.variant or ''}".strip()
        similarity = string_similarity(source_full, candidate_full)
        if variant and candidate.variant:
            similarity = max(similarity, token_overlap(variant, candidate.variant))
        bonus = p11d_similarity_bonus(p11d_minor, candidate.p11d_minor)
        return calculate_confidence(True, similarity, bonus)

    def confirm_manual(self, key: str, cap_code: str) -> VehicleMatch:
        """Record a reviewer's manual match for a source key."""
        existing = self.match_store.get(key)
        if existing is None:
            existing = VehicleMatch(source_key=key)
        result = existing.model_copy(update=dict(
            cap_code=cap_code,
            confidence=100,
            method=MatchMethod.MANUAL,
            status=MatchStatus.MANUAL,
            matched_at=datetime.now(timezone.utc),
        ))
        self.match_store.upsert(result)
        logger.info(f"Manual match {key} -> {cap_code}")
        return self._audit(f"manual:{key}", result)

    def reject(self, key: str) -> Optional[VehicleMatch]:
        existing = self.match_store.get(key)
        if existing is None:
            return None
        result = existing.model_copy(update={'status': MatchStatus.REJECTED})
        self.match_store.upsert(result)
        return result

    def batch_match(
        self,
        vehicles: Iterable[Dict[str, object]],
        provider: Optional[str] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[str, int]:
        """
        Match many vehicles and return confidence-band statistics.

        Args:
            vehicles: Dicts with manufacturer, model, variant, p11d_minor
            provider: Source provider for the cache records
            on_progress: Called with (processed, total)
        """
        items = list(vehicles)
        stats = {
            'total': len(items),
            'matched': 0,
            'high_confidence': 0,
            'medium_confidence': 0,
            'low_confidence': 0,
            'unmatched': 0,
        }
        for i, vehicle in enumerate(items, 1):
            result = self.match(
                str(vehicle.get('manufacturer', '')),
                str(vehicle.get('model', '')),
                vehicle.get('variant'),
                vehicle.get('p11d_minor'),
                derivative_name=vehicle.get('derivative_name'),
                provider=provider,
            )
            if result.cap_code:
                stats['matched'] += 1
                if result.confidence >= HIGH_CONFIDENCE_THRESHOLD:
                    stats['high_confidence'] += 1
                elif result.confidence >= MEDIUM_CONFIDENCE_THRESHOLD:
                    stats['medium_confidence'] += 1
                else:
                    stats['low_confidence'] += 1
            else:
                stats['unmatched'] += 1
            if on_progress:
                on_progress(i, len(items))
        return stats

    def match_stats(self, provider: Optional[str] = None) -> Dict[str, int]:
        return self.match_store.stats(provider)

    @staticmethod
    def _source_text(manufacturer: str, model: str, variant: Optional[str]) -> str:
        return ' '.join(p for p in (manufacturer, model, variant or '') if p)

    def _audit(self, source_text: str, result: VehicleMatch) -> VehicleMatch:
        if self.audit_log is not None:
            self.audit_log.record(source_text, result)
        logger.debug(
            f"Match {source_text!r}: {result.method.value} "
            f"cap={result.cap_code} confidence={result.confidence}"
        )
        return result
