"""
Unit tests for the name and wallet matching engine
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import MatchingConfig
from matcher import NameMatcher, name_variants, normalize_name, similarity
from models import CryptoAddress, EntityKind, MatchType, ReferenceRecord


def make_record(record_id, name, aliases=(), remarks='', addresses=()):
    return ReferenceRecord(
        id=record_id,
        primary_name=name,
        aliases=tuple(aliases),
        entity_kind=EntityKind.INDIVIDUAL,
        remarks=remarks,
        addresses=tuple(addresses),
    )


@pytest.fixture
def matcher():
    return NameMatcher(MatchingConfig())


class TestNormalization:
    """Name normalization and variants"""

    def test_accents_and_case(self):
        assert normalize_name("Müller") == "muller"
        assert normalize_name("José GARCÍA") == "jose garcia"

    def test_punctuation_and_whitespace(self):
        assert normalize_name("  Óleg   DERIPASKA! ") == "oleg deripaska"
        assert normalize_name("O'Brien-Smith") == "o brien smith"

    def test_comma_kept(self):
        assert normalize_name("DERIPASKA ,Oleg") == "deripaska, oleg"

    def test_empty(self):
        assert normalize_name("") == ""
        assert name_variants("") == ()

    def test_comma_variant(self):
        assert name_variants("deripaska, oleg") == ("deripaska, oleg", "oleg deripaska")

    def test_two_token_variant(self):
        assert name_variants("oleg deripaska") == ("oleg deripaska", "deripaska, oleg")

    def test_three_tokens_no_variant(self):
        assert name_variants("oleg v deripaska") == ("oleg v deripaska",)

    def test_similarity_bounds(self):
        assert similarity("abc", "abc") == 1.0
        assert similarity("", "abc") == 0.0
        assert 0.0 < similarity("deripaska", "deripasca") < 1.0


class TestNameMatching:
    """Tiered confidence for name matches"""

    def test_exact_match(self, matcher):
        record = make_record("1", "DERIPASKA, Oleg")
        candidate = matcher.match("Deripaska, Oleg", record)

        assert candidate.match_type == MatchType.EXACT
        assert candidate.confidence == 1.0
        assert candidate.record_id == "1"

    def test_name_order_variant_is_exact(self, matcher):
        """'First Last' against a 'LAST, First' record"""
        candidate = matcher.match("Oleg Deripaska", make_record("1", "DERIPASKA, Oleg"))
        assert candidate.match_type == MatchType.EXACT
        assert candidate.confidence == 1.0

    def test_alias_exact(self, matcher):
        record = make_record("2", "BANK MELLI IRAN", aliases=["MELLI BANK"])
        candidate = matcher.match("Melli Bank", record)

        assert candidate.match_type == MatchType.ALIAS
        assert candidate.confidence == 0.95
        assert candidate.matched_name == "MELLI BANK"

    def test_substring_on_word_boundary(self, matcher):
        candidate = matcher.match("Rosneft", make_record("3", "ROSNEFT OIL COMPANY"))
        assert candidate.match_type == MatchType.SUBSTRING
        assert candidate.confidence == 0.9

    def test_partial_name_is_substring(self, matcher):
        record = make_record("4", "DERIPASKA, Oleg Vladimirovich")
        candidate = matcher.match("Oleg Deripaska", record)

        assert candidate.match_type == MatchType.SUBSTRING
        assert candidate.confidence == 0.9

    def test_partial_word_containment(self, matcher):
        """Containment is plain, not restricted to whole words"""
        truncated = matcher.match("Deripask", make_record("1", "OLEG DERIPASKA"))
        prefix = matcher.match("Rosneft", make_record("2", "ROSNEFTEGAZ"))

        assert truncated.match_type == MatchType.SUBSTRING
        assert truncated.confidence == 0.9
        assert prefix.match_type == MatchType.SUBSTRING
        assert prefix.confidence == 0.9

    def test_record_inside_subject(self, matcher):
        candidate = matcher.match("Rosneftegaz Holdings", make_record("2", "ROSNEFTEGAZ"))
        assert candidate.match_type == MatchType.SUBSTRING

    def test_alias_partial_containment(self, matcher):
        record = make_record("3", "BANK MELLI IRAN", aliases=["MELLIBANK PLC"])
        candidate = matcher.match("Mellibank", record)

        assert candidate.match_type == MatchType.SUBSTRING
        assert candidate.confidence == 0.85
        assert candidate.matched_name == "MELLIBANK PLC"

    def test_substring_length_guard_is_optional(self):
        guarded = NameMatcher(MatchingConfig(min_substring_length=4))
        record = make_record("4", "NATALIA IVANOVA")

        assert NameMatcher().match("li", record).match_type == MatchType.SUBSTRING
        assert guarded.match("li", record) is None

    def test_fuzzy_spelling_difference(self, matcher):
        candidate = matcher.match("Oleg Deripasca", make_record("1", "DERIPASKA, Oleg"))

        assert candidate.match_type == MatchType.FUZZY
        assert 0.9 < candidate.confidence < 1.0

    def test_below_floor_is_none(self, matcher):
        assert matcher.match("John Smith", make_record("1", "DERIPASKA, Oleg")) is None

    def test_empty_subject_is_none(self, matcher):
        assert matcher.match("   ", make_record("1", "DERIPASKA, Oleg")) is None

    def test_floor_is_configurable(self):
        strict = NameMatcher(MatchingConfig(name_floor=0.99))
        assert strict.match("Oleg Deripasca", make_record("1", "DERIPASKA, Oleg")) is None

    def test_accented_subject_matches(self, matcher):
        candidate = matcher.match("José García", make_record("5", "GARCIA, Jose"))
        assert candidate.match_type == MatchType.EXACT


class TestSearch:
    """Searching a whole list"""

    def test_sorted_by_confidence_then_id(self, matcher):
        records = [
            make_record("20", "ROSNEFT OIL COMPANY"),
            make_record("10", "ROSNEFT"),
            make_record("15", "ROSNEFT TRADING"),
            make_record("30", "GAZPROM"),
        ]
        hits = matcher.search("Rosneft", records)

        assert [c.record_id for c, _ in hits] == ["10", "15", "20"]
        assert hits[0][0].match_type == MatchType.EXACT
        assert hits[1][0].confidence == hits[2][0].confidence

    def test_limit(self, matcher):
        records = [make_record(str(i), f"ROSNEFT BRANCH {i}") for i in range(40)]
        assert len(matcher.search("Rosneft", records)) == 25
        assert len(matcher.search("Rosneft", records, limit=5)) == 5

    def test_no_hits(self, matcher):
        assert matcher.search("John Smith", [make_record("1", "DERIPASKA, Oleg")]) == []

    def test_blank_subject(self, matcher):
        assert matcher.search("", [make_record("1", "DERIPASKA, Oleg")]) == []


class TestWalletMatching:
    """Wallet matching is exact or remarks mention, never fuzzy"""

    ADDRESS = "0x7F367cC41522cE07553e823bf3be79A889DEbe1B"

    def test_address_exact_case_insensitive(self, matcher):
        record = make_record("9", "LAZARUS GROUP",
                             addresses=[CryptoAddress("ETH", self.ADDRESS)])
        candidate = matcher.match_wallet(self.ADDRESS.lower(), record)

        assert candidate.match_type == MatchType.ADDRESS_EXACT
        assert candidate.confidence == 1.0
        assert candidate.matched_name == "LAZARUS GROUP"

    def test_remarks_mention(self, matcher):
        record = make_record("9", "LAZARUS GROUP", remarks=f"Linked to {self.ADDRESS}.")
        candidate = matcher.match_wallet(self.ADDRESS, record)

        assert candidate.match_type == MatchType.REMARKS_MENTION
        assert candidate.confidence == 0.95

    def test_near_miss_is_not_a_match(self, matcher):
        record = make_record("9", "LAZARUS GROUP",
                             addresses=[CryptoAddress("ETH", self.ADDRESS)])
        assert matcher.match_wallet(self.ADDRESS[:-1] + "C", record) is None

    def test_search_wallet_exact_first(self, matcher):
        records = [
            make_record("2", "MENTIONED", remarks=self.ADDRESS),
            make_record("1", "LISTED", addresses=[CryptoAddress("ETH", self.ADDRESS)]),
        ]
        hits = matcher.search_wallet(self.ADDRESS, records)

        assert [c.match_type for c, _ in hits] == [MatchType.ADDRESS_EXACT, MatchType.REMARKS_MENTION]

    def test_blank_address(self, matcher):
        record = make_record("1", "X", remarks="anything")
        assert matcher.match_wallet("  ", record) is None
