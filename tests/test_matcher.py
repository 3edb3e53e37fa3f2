"""Tests for tiered CAP code resolution."""

import pytest

from ratefeed.core.errors import MatchNotFound
from ratefeed.core.matcher import (
    VehicleMatcher,
    body_types_compatible,
    calculate_confidence,
    normalize_manufacturer,
    source_key,
    string_similarity,
    token_overlap,
)
from ratefeed.core.schema import MatchMethod, MatchStatus
from ratefeed.core.storage import CapMapping, ReferenceVehicle


@pytest.fixture
def matcher(match_store, reference_store, mapping_store, audit_log):
    reference_store.add_many([
        ReferenceVehicle(
            cap_code="BM3S20MSP", manufacturer="BMW", model="3 Series",
            variant="320d M Sport", p11d_minor=3200000,
        ),
        ReferenceVehicle(
            cap_code="ME0C22AMG", manufacturer="Mercedes-Benz", model="C Class",
            variant="C220d AMG Line", p11d_minor=4150000,
        ),
        ReferenceVehicle(
            cap_code="VWGO15LHA", manufacturer="Volkswagen", model="Golf Hatchback",
            variant="1.5 TSI Life", p11d_minor=2700000,
        ),
    ])
    return VehicleMatcher(match_store, reference_store, mapping_store, audit_log)


class TestNormalization:

    def test_manufacturer_aliases(self):
        assert normalize_manufacturer("Mercedes-Benz") == "MERCEDES"
        assert normalize_manufacturer("Land Rover") == "LANDROVER"
        assert normalize_manufacturer("vw") == "VOLKSWAGEN"

    def test_source_key_ignores_case_and_punctuation(self):
        assert source_key("BMW", "3 Series", "320d M-Sport") == source_key("bmw", "3 series", "320D MSport")

    def test_similarity(self):
        assert string_similarity("320d M Sport", "320D M SPORT") == 100
        assert string_similarity("", "anything") == 0
        assert token_overlap("1.5 TSI Life", "Life 1.5 TSI") == 100

    def test_body_types(self):
        assert body_types_compatible("Golf Estate", "Golf Touring")
        assert not body_types_compatible("Golf Estate", "Golf Hatchback")
        assert body_types_compatible("Golf", "Golf Hatchback")

    def test_confidence_capped(self):
        assert calculate_confidence(True, 100, 15) == 100
        assert calculate_confidence(False, 100, 15) == 0
        assert calculate_confidence(True, 100, 0) == 85


class TestTiers:
    """Exact mapping, then confirmed cache, then fuzzy."""

    def test_exact_mapping_wins(self, matcher, mapping_store):
        mapping_store.add(CapMapping(derivative_name="BMW 3 Series 320d M Sport", cap_id="MAPPED01"))

        result = matcher.match(
            "BMW", "3 Series", "320d M Sport", 3200000,
            derivative_name="bmw  3 series 320d m sport",
        )

        assert result.method == MatchMethod.EXACT_MAPPING
        assert result.cap_code == "MAPPED01"
        assert result.confidence == 100
        assert matcher.fuzzy_runs == 0

    def test_fuzzy_then_cache(self, matcher):
        first = matcher.match("BMW", "3 Series", "320d M Sport", 3200000, provider="lex")

        assert first.method == MatchMethod.FUZZY_AUTO
        assert first.status == MatchStatus.CONFIRMED
        assert first.cap_code == "BM3S20MSP"
        assert first.is_usable
        assert matcher.fuzzy_runs == 1

        second = matcher.match("BMW", "3 Series", "320d M Sport", 3200000, provider="lex")

        assert second.method == MatchMethod.CONFIRMED_CACHE
        assert second.cap_code == "BM3S20MSP"
        assert matcher.fuzzy_runs == 1

    def test_manufacturer_alias_matches(self, matcher):
        result = matcher.match("Mercedes Benz", "C Class", "C220d AMG Line", 4150000)
        assert result.cap_code == "ME0C22AMG"
        assert result.is_usable

    def test_reference_stored_under_alias(self, matcher, reference_store):
        reference_store.add_many([
            ReferenceVehicle(
                cap_code="VWPO10LIF", manufacturer="VW", model="Polo",
                variant="1.0 TSI Life", p11d_minor=2100000,
            ),
        ])

        result = matcher.match("Volkswagen", "Polo", "1.0 TSI Life", 2100000)

        assert result.cap_code == "VWPO10LIF"
        assert result.is_usable


class TestConfidence:
    """Only high-confidence fuzzy matches are usable."""

    def test_without_p11d_stays_pending(self, matcher):
        # Without a P11D bonus the score cannot reach the auto-confirm band
        result = matcher.match("BMW", "3 Series", "320d M Sport")

        assert result.cap_code == "BM3S20MSP"
        assert result.status == MatchStatus.PENDING
        assert not result.is_usable

    def test_pending_is_not_served_from_cache(self, matcher):
        matcher.match("BMW", "3 Series", "320d M Sport")
        matcher.match("BMW", "3 Series", "320d M Sport")
        assert matcher.fuzzy_runs == 2

    def test_p11d_hard_rejection(self, matcher):
        result = matcher.match("BMW", "3 Series", "320d M Sport", 3400000)

        assert result.cap_code is None
        assert result.method == MatchMethod.NONE
        assert not result.is_usable

    def test_body_type_mismatch_skipped(self, matcher):
        result = matcher.match("Volkswagen", "Golf Estate", "1.5 TSI Life", 2700000)
        assert result.cap_code is None

    def test_unknown_manufacturer(self, matcher):
        result = matcher.match("Skoda", "Octavia", "SE L", 2800000)
        assert result.cap_code is None
        assert result.confidence == 0


class TestReview:

    def test_manual_match_is_served_from_cache(self, matcher):
        key = source_key("Kia", "Niro", "4 EV")
        matcher.confirm_manual(key, "KINI4EV")

        result = matcher.match("Kia", "Niro", "4 EV")

        assert result.cap_code == "KINI4EV"
        assert result.method == MatchMethod.CONFIRMED_CACHE
        assert matcher.fuzzy_runs == 0

    def test_rejected_pairing_stays_rejected(self, matcher):
        first = matcher.match("BMW", "3 Series", "320d M Sport", 3200000)
        rejected = matcher.reject(first.source_key)
        assert rejected.status == MatchStatus.REJECTED

        again = matcher.match("BMW", "3 Series", "320d M Sport", 3200000)

        assert again.cap_code == "BM3S20MSP"
        assert again.status == MatchStatus.REJECTED
        assert not again.is_usable

    def test_rejected_pairing_is_not_rescored(self, matcher, audit_log):
        first = matcher.match("BMW", "3 Series", "320d M Sport", 3200000)
        matcher.reject(first.source_key)

        for _ in range(3):
            matcher.match("BMW", "3 Series", "320d M Sport", 3200000)

        assert matcher.fuzzy_runs == 1
        assert [e['status'] for e in audit_log.entries()][-3:] == ['rejected'] * 3

    def test_reject_unknown_key(self, matcher):
        assert matcher.reject("nope") is None

    def test_resolve_pending_raises(self, matcher):
        with pytest.raises(MatchNotFound) as excinfo:
            matcher.resolve("BMW", "3 Series", "320d M Sport", provider="lex")

        assert 0 < excinfo.value.confidence < 90
        assert excinfo.value.source_key == source_key("BMW", "3 Series", "320d M Sport")

    def test_resolve_confirmed(self, matcher):
        assert matcher.resolve("BMW", "3 Series", "320d M Sport", 3200000).cap_code == "BM3S20MSP"


class TestBatchAndAudit:

    def test_batch_match_stats(self, matcher):
        progress = []
        stats = matcher.batch_match(
            [
                {'manufacturer': "BMW", 'model': "3 Series", 'variant': "320d M Sport", 'p11d_minor': 3200000},
                {'manufacturer': "Mercedes-Benz", 'model': "C Class", 'variant': "C220d AMG Line"},
                {'manufacturer': "Skoda", 'model': "Octavia", 'variant': "SE L"},
            ],
            provider="ogilvie",
            on_progress=lambda done, total: progress.append((done, total)),
        )

        assert stats['total'] == 3
        assert stats['matched'] == 2
        assert stats['high_confidence'] == 1
        assert stats['medium_confidence'] == 1
        assert stats['unmatched'] == 1
        assert progress[-1] == (3, 3)

    def test_every_attempt_is_audited(self, matcher, audit_log):
        matcher.match("BMW", "3 Series", "320d M Sport", 3200000, provider="lex")
        matcher.match("BMW", "3 Series", "320d M Sport", 3200000, provider="lex")
        matcher.match("Skoda", "Octavia", "SE L")

        entries = audit_log.entries()
        assert [e['method'] for e in entries] == ['fuzzy_auto', 'confirmed_cache', 'none']
        assert entries[0]['provider'] == "lex"

    def test_match_stats(self, matcher):
        matcher.match("BMW", "3 Series", "320d M Sport", 3200000, provider="lex")
        matcher.match("BMW", "3 Series", "320d M Sport", provider="lex")
        stats = matcher.match_stats("lex")
        assert stats['confirmed'] == 1
