"""
End-to-end screening tests through EntityScreener

Reference lists come from in-memory fixtures; HTTP-backed sources are
replaced by stub adapters so the tests run offline.
"""

import pytest
from pathlib import Path
from unittest.mock import MagicMock

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager, SourceConfig
from list_cache import ReferenceListCache
from matcher import NameMatcher
from models import FlagCategory, MatchType, RiskLevel, SourceResult, SubjectKind
from reference_lists import merge_wallet_records, parse_address_list, parse_sdn_csv
from screener import EntityScreener, InputValidationError, ScreeningOptions, validate_screening_input
from sources.ofac import OfacSdnAdapter
from sources.wallet import OfacWalletAdapter, SanctionedWalletAdapter

LISTED_WALLET = "0x7F367cC41522cE07553e823bf3be79A889DEbe1B"
CLEAN_WALLET = "0x1111111111111111111111111111111111111111"

SDN_CSV = "\n".join([
    '36,"AEROCARIBBEAN AIRLINES",-0- ,"CUBA",-0- ,-0- ,-0- ,-0- ,-0- ,-0- ,-0- ,-0- ',
    '12345,"DERIPASKA, Oleg Vladimirovich","individual","UKRAINE-EO13661; RUSSIA-EO14024",-0-,-0-,-0-,-0-,-0-,-0-,-0-,'
    '"DOB 02 Jan 1968; nationality Russia."',
    '99,"KHOROSHEV, Dmitry","individual","CYBER2",-0-,-0-,-0-,-0-,-0-,-0-,-0-,'
    f'"Digital Currency Address - ETH {LISTED_WALLET}."',
])


class StubAdapter:
    """Entity source stand-in returning a fixed result"""

    def __init__(self, source_id, error=None):
        self.source_id = source_id
        self.error = error
        self.calls = 0

    async def screen(self, query):
        self.calls += 1
        if self.error:
            return SourceResult.failed(self.source_id, self.error)
        return SourceResult(self.source_id, payload={'matches': [], 'totalResults': 0, 'isPEP': False})


def list_cache(name, records):
    async def loader():
        return records, "fixture"
    return ReferenceListCache(name, loader, ttl_hours=6)


@pytest.fixture
def config(tmp_path):
    return ConfigManager(str(tmp_path / "missing.yaml"))


@pytest.fixture
def audit():
    return MagicMock()


@pytest.fixture
def pep_stub():
    return StubAdapter('pep')


@pytest.fixture
def screener(config, audit, pep_stub):
    sdn_cache = list_cache('ofac_sdn', parse_sdn_csv(SDN_CSV))
    wallet_cache = list_cache(
        'sanctioned_wallets', merge_wallet_records([parse_address_list(LISTED_WALLET, 'ETH')])
    )
    matcher = NameMatcher(config.matching)
    registry = {
        'entity': {
            'ofac': OfacSdnAdapter(config.sources['ofac'], sdn_cache, matcher),
            'pep': pep_stub,
        },
        'wallet': {
            'wallet': SanctionedWalletAdapter(SourceConfig(), wallet_cache, matcher),
            'ofac_wallet': OfacWalletAdapter(config.sources['ofac'], sdn_cache, matcher),
        },
    }
    return EntityScreener(config, sdn_cache=sdn_cache, wallet_cache=wallet_cache,
                          registry=registry, audit=audit)


class TestNameScreening:

    async def test_sanctioned_individual(self, screener):
        assessment = await screener.screen("Oleg Deripaska")

        assert assessment.score >= 80
        assert assessment.level == RiskLevel.CRITICAL
        assert assessment.flags[0].category == FlagCategory.OFAC_SDN_MATCH
        assert assessment.diagnostics == {'ofac': None, 'pep': None}

    async def test_exact_listed_name(self, screener):
        report = await screener.screen_report("DERIPASKA, Oleg Vladimirovich", "individual")

        assert report.candidates[0].match_type == MatchType.EXACT
        assert report.candidates[0].confidence == 1.0
        assert report.assessment.level == RiskLevel.CRITICAL

    async def test_clean_name(self, screener):
        assessment = await screener.screen("John Smith")

        assert assessment.score == 0
        assert assessment.flags == ()
        assert assessment.level == RiskLevel.LOW

    async def test_repeat_screening_is_identical(self, screener):
        first = await screener.screen("Oleg Deripaska")
        second = await screener.screen("Oleg Deripaska")

        assert first.score == second.score
        assert first.level == second.level
        assert first.flags == second.flags

    async def test_options_reach_sources(self, screener, pep_stub):
        report = await screener.screen_report(
            "Acme Holdings", SubjectKind.ORGANIZATION, {'country': 'ru', 'jurisdiction': 'gb'}
        )

        assert report.query.country == 'ru'
        assert report.query.jurisdiction == 'gb'
        assert pep_stub.calls == 1

    async def test_failed_source_reported_not_raised(self, config, audit):
        sdn_cache = list_cache('ofac_sdn', parse_sdn_csv(SDN_CSV))
        registry = {
            'entity': {
                'ofac': OfacSdnAdapter(config.sources['ofac'], sdn_cache),
                'pep': StubAdapter('pep', error="HTTP 500"),
            },
            'wallet': {},
        }
        screener = EntityScreener(config, sdn_cache=sdn_cache,
                                  wallet_cache=list_cache('sanctioned_wallets', []),
                                  registry=registry, audit=audit)

        assessment = await screener.screen("Oleg Deripaska")

        assert assessment.diagnostics['pep'] == "HTTP 500"
        assert assessment.level == RiskLevel.CRITICAL

    async def test_audit_entry_written(self, screener, audit):
        await screener.screen("Oleg Deripaska")

        audit.log_screening.assert_called_once()
        args = audit.log_screening.call_args[0]
        assert args[0] == "Oleg Deripaska"
        assert args[3] == "CRITICAL"


class TestWalletScreening:

    async def test_listed_wallet_scores_100(self, screener):
        report = await screener.screen_report(LISTED_WALLET)

        assert report.query.subject_kind == SubjectKind.WALLET
        assert report.assessment.score == 100
        assert report.assessment.level == RiskLevel.CRITICAL
        assert report.candidates[0].match_type == MatchType.ADDRESS_EXACT
        assert report.candidates[0].confidence == 1.0
        categories = {f.category for f in report.assessment.flags}
        assert {FlagCategory.SANCTIONED_WALLET, FlagCategory.OFAC_SDN_WALLET} <= categories

    async def test_lowercase_address_matches(self, screener):
        assessment = await screener.screen_wallet(LISTED_WALLET.lower())
        assert assessment.score == 100

    async def test_clean_wallet(self, screener):
        assessment = await screener.screen_wallet(CLEAN_WALLET)

        assert assessment.score == 0
        assert assessment.level == RiskLevel.LOW

    async def test_known_service(self, screener):
        assessment = await screener.screen_wallet("0xd90e2f925da726b50c4ed8d0fb90ad053324f31b")

        assert assessment.score == 100
        assert "Tornado Cash" in assessment.flags[0].message

    async def test_entity_sources_not_called_for_wallets(self, screener, pep_stub):
        await screener.screen_wallet(CLEAN_WALLET)
        assert pep_stub.calls == 0


class TestValidation:

    @pytest.mark.parametrize("subject,kind,code", [
        ("", "any", "SUBJECT_REQUIRED"),
        ("   ", "any", "SUBJECT_REQUIRED"),
        ("A", "any", "NAME_TOO_SHORT"),
        ("x" * 201, "any", "NAME_TOO_LONG"),
        ("Robert<script>", "any", "BLOCKED_CHARACTERS"),
        ("John\x00Smith", "any", "CONTROL_CHARACTER"),
        ("John Smith", "vessel", "INVALID_SUBJECT_KIND"),
        ("hello", "wallet", "INVALID_WALLET_ADDRESS"),
        ("0x" + "a" * 200, "wallet", "ADDRESS_TOO_LONG"),
    ])
    def test_rejected_input(self, config, subject, kind, code):
        with pytest.raises(InputValidationError) as exc_info:
            validate_screening_input(subject, kind, config)

        assert exc_info.value.code == code
        assert exc_info.value.to_dict()['code'] == code

    def test_international_names_accepted(self, config):
        text, kind = validate_screening_input("  Владимир Путин ", None, config)

        assert text == "Владимир Путин"
        assert kind == SubjectKind.ANY

    def test_two_character_name_accepted(self, config):
        assert validate_screening_input("Li", "individual", config) == ("Li", SubjectKind.INDIVIDUAL)

    async def test_screen_raises_and_audits(self, screener, audit):
        with pytest.raises(InputValidationError):
            await screener.screen("A")

        audit.log_validation_failure.assert_called_once()
        assert audit.log_validation_failure.call_args[0][1] == "NAME_TOO_SHORT"


class TestLifecycle:

    async def test_warm_up_loads_lists(self, screener):
        status = await screener.warm_up()

        assert status['ofac_sdn']['loaded'] is True
        assert status['ofac_sdn']['record_count'] == 3
        assert status['sanctioned_wallets']['loaded'] is True

    async def test_report_serializes(self, screener):
        report = await screener.screen_report("Oleg Deripaska")
        data = report.to_dict()

        assert data['query']['subject'] == "Oleg Deripaska"
        assert data['risk']['level'] == "CRITICAL"
        assert data['matches'][0]['record_id'] == "12345"
        assert set(data['sources']) == {'ofac', 'pep'}

    def test_options_from_dict(self):
        opts = ScreeningOptions.from_value({'country': 'ru'})
        assert opts.country == 'ru'
        assert opts.jurisdiction is None
        assert ScreeningOptions.from_value(None) == ScreeningOptions()
