"""
Tests for the source adapters

HTTP sources are exercised against httpx.MockTransport so no network
access is needed.
"""

import asyncio
import json
import pytest
from datetime import date
from pathlib import Path
from typing import Any, Dict

import httpx

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager, SourceConfig
from list_cache import ListLoadError, ReferenceListCache
from models import CryptoAddress, EntityKind, ReferenceRecord, ScreeningQuery, SubjectKind
from sources import build_registry, detect_chain, is_wallet_address
from sources.aleph import OccrpAlephAdapter
from sources.announcements import SanctionsAnnouncementAdapter, name_variants
from sources.base import BoundedCache, SourceAdapter, SourceUnavailable
from sources.court_records import CourtListenerAdapter, case_type, party_role
from sources.ofac import OfacSdnAdapter
from sources.opencorporates import OpenCorporatesAdapter
from sources.opensanctions import OpenSanctionsPepAdapter
from sources.wallet import OfacWalletAdapter, SanctionedWalletAdapter


ETH_ADDRESS = "0x7F367cC41522cE07553e823bf3be79A889DEbe1B"
TORNADO = "0xd90e2f925da726b50c4ed8d0fb90ad053324f31b"


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def static_cache(name, records):
    async def loader():
        return list(records), "fixture"
    return ReferenceListCache(name, loader, ttl_hours=1)


def failing_cache(name):
    async def loader():
        raise ListLoadError("unreachable")
    return ReferenceListCache(name, loader, ttl_hours=1)


def query(text, kind=SubjectKind.ANY, **kwargs):
    return ScreeningQuery(subject_text=text, subject_kind=kind, **kwargs)


# ============================================
# ISOLATION BOUNDARY
# ============================================

class ScriptedAdapter(SourceAdapter):
    source_id = 'scripted'

    def __init__(self, behaviour, timeout=1.0):
        super().__init__(SourceConfig(timeout=timeout))
        self.behaviour = behaviour

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        return await self.behaviour()


class TestIsolationBoundary:
    """screen() turns every failure into an error result"""

    async def test_success(self):
        async def ok():
            return {'matches': [], 'totalResults': 0}
        result = await ScriptedAdapter(ok).screen(query("Acme"))

        assert result.ok
        assert result.error is None

    async def test_unexpected_exception(self):
        async def boom():
            raise RuntimeError("boom")
        result = await ScriptedAdapter(boom).screen(query("Acme"))

        assert not result.ok
        assert result.error == "RuntimeError: boom"
        assert result.payload is None

    async def test_deadline(self):
        async def slow():
            await asyncio.sleep(5)
        result = await ScriptedAdapter(slow, timeout=0.05).screen(query("Acme"))

        assert result.error == "timeout after 0.05s"

    async def test_malformed_payload(self):
        async def malformed():
            return {}['results']
        result = await ScriptedAdapter(malformed).screen(query("Acme"))

        assert result.error.startswith("malformed payload: KeyError")

    async def test_http_status_error(self):
        async def not_found():
            request = httpx.Request("GET", "https://example.org")
            response = httpx.Response(503, request=request)
            response.raise_for_status()
        result = await ScriptedAdapter(not_found).screen(query("Acme"))

        assert result.error == "HTTP 503"

    async def test_unavailable_keeps_empty_payload(self):
        async def unavailable():
            raise SourceUnavailable("list not loaded")
        result = await ScriptedAdapter(unavailable).screen(query("Acme"))

        assert result.error == "list not loaded"
        assert result.payload['matches'] == []

    async def test_missing_required_key_skips_call(self, monkeypatch):
        monkeypatch.delenv("TEST_COURT_KEY", raising=False)

        def handler(request):
            raise AssertionError("no request expected")

        adapter = CourtListenerAdapter(
            SourceConfig(base_url="https://court.test", api_key_env="TEST_COURT_KEY",
                         requires_api_key=True),
            mock_client(handler),
        )
        result = await adapter.screen(query("John Doe"))

        assert result.error == "TEST_COURT_KEY not configured"
        assert result.payload == {'matches': [], 'totalResults': 0}


class TestBoundedCache:

    def test_ttl_expiry(self):
        now = [0.0]
        cache = BoundedCache(max_size=10, ttl_seconds=60, clock=lambda: now[0])
        cache.set("k", "v")
        now[0] = 59
        assert cache.get("k") == "v"
        now[0] = 61
        assert cache.get("k") is None

    def test_oldest_evicted(self):
        cache = BoundedCache(max_size=2, ttl_seconds=60)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("c") == 3


# ============================================
# OFAC / WALLET
# ============================================

DERIPASKA = ReferenceRecord(
    id="12345", primary_name="DERIPASKA, Oleg Vladimirovich",
    entity_kind=EntityKind.INDIVIDUAL, programs=frozenset({"UKRAINE-EO13661"}),
)
ROSNEFT = ReferenceRecord(
    id="777", primary_name="ROSNEFT OIL COMPANY", entity_kind=EntityKind.ORGANIZATION,
    programs=frozenset({"RUSSIA-EO14024"}),
)
LAZARUS = ReferenceRecord(
    id="555", primary_name="LAZARUS GROUP", entity_kind=EntityKind.ORGANIZATION,
    programs=frozenset({"DPRK3"}),
    remarks=f"Digital Currency Address - ETH {ETH_ADDRESS}",
    addresses=(CryptoAddress("ETH", ETH_ADDRESS),),
)


class TestOfacSdnAdapter:

    async def test_name_match(self):
        adapter = OfacSdnAdapter(SourceConfig(), static_cache("ofac_sdn", [DERIPASKA, ROSNEFT]))
        result = await adapter.screen(query("Oleg Deripaska"))

        assert result.ok
        match = result.payload['matches'][0]
        assert match['record_id'] == "12345"
        assert match['entity']['programs'] == ["UKRAINE-EO13661"]
        assert result.payload['listSize'] == 2
        assert result.payload['risk']['score'] > 0

    async def test_kind_filter(self):
        adapter = OfacSdnAdapter(SourceConfig(), static_cache("ofac_sdn", [ROSNEFT]))
        result = await adapter.screen(query("Rosneft", SubjectKind.INDIVIDUAL))

        assert result.payload['matches'] == []

    async def test_no_match(self):
        adapter = OfacSdnAdapter(SourceConfig(), static_cache("ofac_sdn", [DERIPASKA]))
        result = await adapter.screen(query("John Smith"))

        assert result.ok
        assert result.payload['totalResults'] == 0
        assert result.payload['risk']['score'] == 0

    async def test_unloaded_list_reports_error(self):
        adapter = OfacSdnAdapter(SourceConfig(), failing_cache("ofac_sdn"))
        result = await adapter.screen(query("Oleg Deripaska"))

        assert result.error == "SDN list not loaded"


class TestWalletAdapters:

    def test_detect_chain(self):
        assert detect_chain(ETH_ADDRESS) == "ETH"
        assert detect_chain("1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa") == "XBT"
        assert detect_chain("bc1qa5wkgaew2dkv56kfvj49j0av5nml45x9ek9hz6") == "XBT"
        assert detect_chain("TQn9Y2khEsLJW1ChVWFMSMeRDow5KcbLSE") == "TRX"
        assert detect_chain("7EcDhSYGxXyscszYEp35KHN8vvw3svAuLKTzXwCFLtV") == "SOL"
        assert detect_chain("Oleg Deripaska") is None
        assert is_wallet_address(f"  {ETH_ADDRESS}  ")

    async def test_listed_address_blocked(self):
        wallet_record = ReferenceRecord(
            id=f"ETH:{ETH_ADDRESS.lower()}", primary_name=ETH_ADDRESS,
            entity_kind=EntityKind.WALLET, programs=frozenset({"ETH"}),
            addresses=(CryptoAddress("ETH", ETH_ADDRESS),), source='OFAC_WALLET_LIST',
        )
        adapter = SanctionedWalletAdapter(SourceConfig(), static_cache("wallets", [wallet_record]))
        result = await adapter.screen(query(ETH_ADDRESS, SubjectKind.WALLET))

        assert result.payload['status'] == "BLOCKED"
        assert result.payload['matches'][0]['match_type'] == "address_exact"
        assert result.payload['risk']['score'] == 100

    async def test_known_service_without_lists(self):
        """The built-in service table answers even when downloads failed"""
        adapter = SanctionedWalletAdapter(SourceConfig(), failing_cache("wallets"))
        result = await adapter.screen(query(TORNADO, SubjectKind.WALLET))

        assert result.ok
        assert result.payload['status'] == "BLOCKED"
        assert result.payload['matches'][0]['service'] == "Tornado Cash"
        assert result.payload['matches'][0]['program'] == "CYBER2"

    async def test_unknown_address_without_lists(self):
        adapter = SanctionedWalletAdapter(SourceConfig(), failing_cache("wallets"))
        result = await adapter.screen(query(ETH_ADDRESS, SubjectKind.WALLET))

        assert result.error == "sanctioned wallet list not loaded"

    async def test_clean_address(self):
        adapter = SanctionedWalletAdapter(SourceConfig(), static_cache("wallets", [LAZARUS]))
        result = await adapter.screen(
            query("0x1111111111111111111111111111111111111111", SubjectKind.WALLET)
        )

        assert result.payload['status'] == "NO_MATCH"
        assert result.payload['risk']['score'] == 0

    async def test_invalid_format(self):
        adapter = SanctionedWalletAdapter(SourceConfig(), static_cache("wallets", [LAZARUS]))
        result = await adapter.screen(query("not-a-wallet", SubjectKind.WALLET))

        assert result.payload['status'] == "INVALID"

    async def test_opensanctions_wallet_match(self, monkeypatch):
        monkeypatch.setenv("TEST_OS_KEY", "key")
        seen = {}

        def handler(request):
            seen['auth'] = request.headers.get('Authorization')
            seen['body'] = json.loads(request.content)
            return httpx.Response(200, json={'responses': {'wallet': {'results': [
                {'id': 'os-1', 'caption': 'Garantex Europe', 'score': 0.9, 'datasets': ['us_ofac_sdn']},
                {'id': 'os-2', 'caption': 'Weak Match', 'score': 0.3},
            ]}}})

        adapter = SanctionedWalletAdapter(
            SourceConfig(base_url="https://os.test", api_key_env="TEST_OS_KEY"),
            static_cache("wallets", [LAZARUS]),
            client=mock_client(handler),
        )
        result = await adapter.screen(
            query("0x1111111111111111111111111111111111111111", SubjectKind.WALLET)
        )

        assert seen['auth'] == "ApiKey key"
        assert seen['body']['queries']['wallet']['schema'] == "CryptoWallet"
        assert result.payload['status'] == "BLOCKED"
        assert [hit['entity'] for hit in result.payload['openSanctions']] == ["Garantex Europe"]

    async def test_sdn_remarks_address(self):
        adapter = OfacWalletAdapter(SourceConfig(), static_cache("ofac_sdn", [DERIPASKA, LAZARUS]))
        result = await adapter.screen(query(ETH_ADDRESS.lower(), SubjectKind.WALLET))

        assert result.payload['isSanctioned'] is True
        assert result.payload['matches'][0]['entity']['name'] == "LAZARUS GROUP"
        assert result.payload['risk']['score'] == 100


# ============================================
# HTTP SOURCES
# ============================================

class TestOpenSanctionsPep:

    PUTIN = {
        'id': 'Q7747', 'schema': 'Person', 'caption': 'Vladimir Putin', 'score': 0.98,
        'datasets': ['ru_peps', 'eu_fsf'],
        'properties': {
            'name': ['Vladimir Putin'],
            'topics': ['role.pep', 'sanction'],
            'position': ['President of Russia'],
        },
    }
    UNRELATED = {
        'id': 'Q1', 'schema': 'Person', 'caption': 'Someone Else', 'score': 0.4,
        'datasets': ['ru_peps'], 'properties': {'name': ['Someone Else']},
    }

    async def test_pep_match(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={'results': [self.PUTIN, self.UNRELATED]})

        adapter = OpenSanctionsPepAdapter(SourceConfig(base_url="https://os.test"), mock_client(handler))
        result = await adapter.screen(query("Vladimir Putin", country="RU"))

        assert sorted(paths) == ["/search/default", "/search/peps"]
        payload = result.payload
        assert payload['isPEP'] is True
        assert payload['totalResults'] == 1
        match = payload['matches'][0]
        assert match['pepLevel'] == "ACTIVE"
        assert match['pepPosition'] == "President of Russia"
        assert match['sanctions'] == ["eu_fsf"]
        flag_types = [f['type'] for f in payload['risk']['flags']]
        assert flag_types == ["SANCTIONS_LIST", "ACTIVE_PEP"]

    async def test_results_cached(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json={'results': []})

        adapter = OpenSanctionsPepAdapter(SourceConfig(base_url="https://os.test"), mock_client(handler))
        await adapter.screen(query("Vladimir Putin"))
        await adapter.screen(query("vladimir putin"))

        assert len(calls) == 2

    async def test_both_collections_failing(self):
        def handler(request):
            return httpx.Response(500)

        adapter = OpenSanctionsPepAdapter(SourceConfig(base_url="https://os.test"), mock_client(handler))
        result = await adapter.screen(query("Vladimir Putin"))

        assert result.error == "HTTP 500"
        assert result.payload is None


class TestCourtListener:

    DOCKET = {
        'docket_id': 101, 'caseName': 'United States v. John Doe',
        'docketNumber': '1:20-cr-00123', 'dateFiled': '2020-01-15', 'court': 'S.D.N.Y.',
    }

    def test_party_role_and_case_type(self):
        assert party_role("United States v. John Doe", "John Doe") == "defendant"
        assert party_role("John Doe v. Acme Corp", "John Doe") == "plaintiff"
        assert case_type("1:20-cr-00123", "") == "criminal"
        assert case_type("2:19-bk-1", "") == "bankruptcy"
        assert case_type("", "Contract") == "civil"

    async def test_criminal_defendant(self, monkeypatch):
        monkeypatch.setenv("TEST_COURT_KEY", "token")

        def handler(request):
            assert request.headers['Authorization'] == "Token token"
            if request.url.params['type'] == 'r':
                return httpx.Response(200, json={'results': [self.DOCKET]})
            return httpx.Response(200, json={'results': []})

        adapter = CourtListenerAdapter(
            SourceConfig(base_url="https://court.test", api_key_env="TEST_COURT_KEY",
                         requires_api_key=True),
            mock_client(handler),
        )
        result = await adapter.screen(query("John Doe"))

        payload = result.payload
        assert payload['totalResults'] == 1
        case = payload['matches'][0]
        assert case['partyRole'] == "defendant"
        assert case['caseType'] == "criminal"
        assert case['status'] == "open"
        assert case['riskSeverity'] == "critical"
        assert payload['risk']['score'] == 55


class TestAleph:

    async def test_leak_and_offshore_entity(self):
        def handler(request):
            if request.url.path.endswith("/entities"):
                return httpx.Response(200, json={'results': [{
                    'id': 'e1', 'schema': 'Company',
                    'properties': {'name': ['Acme Holdings Ltd'],
                                   'jurisdiction': ['British Virgin Islands']},
                    'collection': {'label': 'Panama Papers'},
                }]})
            return httpx.Response(200, json={'results': []})

        adapter = OccrpAlephAdapter(SourceConfig(base_url="https://aleph.test"), mock_client(handler))
        result = await adapter.screen(query("Acme Holdings Ltd"))

        payload = result.payload
        assert payload['datasets'] == ["panama_papers"]
        assert payload['matches'][0]['matchConfidence'] == 1.0
        flag_types = {f['type'] for f in payload['risk']['flags']}
        assert flag_types == {"ENTITY_MATCH", "LEAK_DATABASE_MATCH", "OFFSHORE_ENTITIES"}
        assert payload['risk']['score'] == 65

    async def test_document_search_failure_tolerated(self):
        def handler(request):
            if request.url.path.endswith("/documents"):
                return httpx.Response(502)
            return httpx.Response(200, json={'results': []})

        adapter = OccrpAlephAdapter(SourceConfig(base_url="https://aleph.test"), mock_client(handler))
        result = await adapter.screen(query("Acme Holdings Ltd"))

        assert result.ok
        assert result.payload['documentCount'] == 0


class TestOpenCorporates:

    async def test_offshore_dissolved_company(self):
        def handler(request):
            if request.url.path.endswith("/companies/search"):
                assert request.url.params['jurisdiction_code'] == "vg"
                return httpx.Response(200, json={'results': {'total_count': 1, 'companies': [
                    {'company': {'name': 'ACME LTD', 'company_number': '123',
                                 'jurisdiction_code': 'vg', 'current_status': 'Dissolved',
                                 'incorporation_date': '2010-01-01'}},
                ]}})
            return httpx.Response(500)

        adapter = OpenCorporatesAdapter(
            SourceConfig(base_url="https://oc.test"), mock_client(handler),
            today=lambda: date(2024, 6, 1),
        )
        result = await adapter.screen(query("Acme Ltd", jurisdiction="VG"))

        payload = result.payload
        assert result.ok
        assert payload['matches'][0]['companyNumber'] == "123"
        assert payload['officerError'] is not None
        assert payload['risk']['score'] == 30

    async def test_company_search_failure_is_error(self):
        def handler(request):
            return httpx.Response(429)

        adapter = OpenCorporatesAdapter(SourceConfig(base_url="https://oc.test"), mock_client(handler))
        result = await adapter.screen(query("Acme Ltd"))

        assert result.error == "HTTP 429"


RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Recent Actions</title>
<item>
  <title>Treasury Targets Oleg Deripaska Associates</title>
  <link>https://ofac.treasury.gov/recent-actions/20240101</link>
  <description>Individuals designated for sanctions evasion.</description>
  <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate>
</item>
<item>
  <title>Counter Terrorism Designations Update</title>
  <link>https://ofac.treasury.gov/recent-actions/20240102</link>
</item>
</channel></rss>"""


class TestAnnouncements:

    def test_name_variants(self):
        assert name_variants("Oleg Deripaska") == ["Oleg Deripaska", "Deripaska, Oleg", "Deripaska"]
        assert name_variants("DERIPASKA, Oleg") == ["DERIPASKA, Oleg", "Oleg DERIPASKA", "DERIPASKA"]

    async def test_direct_announcement(self):
        calls = []

        def handler(request):
            if request.url.host == "api.opensanctions.org":
                return httpx.Response(200, json={'responses': {}})
            if request.url.host == "api.gdeltproject.org":
                return httpx.Response(200, json={'articles': []})
            calls.append(1)
            return httpx.Response(200, content=RSS)

        adapter = SanctionsAnnouncementAdapter(
            SourceConfig(base_url="https://ofac.test/rss.xml"), mock_client(handler)
        )
        result = await adapter.screen(query("Oleg Deripaska"))
        await adapter.screen(query("Someone Else"))

        payload = result.payload
        assert payload['hasSanctionsAnnouncement'] is True
        assert payload['actions'][0]['date'] == "2024-01-01"
        assert payload['feedSize'] == 2
        assert payload['lookupErrors'] == {}
        assert len(calls) == 1

    async def test_opensanctions_listing(self, monkeypatch):
        monkeypatch.setenv("TEST_OS_KEY", "secret")
        bodies = []

        def handler(request):
            if request.url.host == "api.opensanctions.org":
                assert request.method == "POST"
                assert request.headers['Authorization'] == "ApiKey secret"
                assert request.url.params['algorithm'] == "best"
                bodies.append(json.loads(request.content))
                return httpx.Response(200, json={'responses': {'subject': {'results': [
                    {'id': 'Q1', 'caption': 'Ivan Petrov', 'score': 0.95,
                     'datasets': ['us_ofac_sdn'], 'properties': {'topics': ['sanction']}},
                    {'id': 'Q2', 'caption': 'Ivan Petrovsky', 'score': 0.3,
                     'datasets': ['wikidata'], 'properties': {}},
                ]}}})
            if request.url.host == "api.gdeltproject.org":
                return httpx.Response(503)
            return httpx.Response(200, content=RSS)

        adapter = SanctionsAnnouncementAdapter(
            SourceConfig(base_url="https://ofac.test/rss.xml", api_key_env="TEST_OS_KEY"),
            mock_client(handler),
        )
        result = await adapter.screen(query("Ivan Petrov"))

        payload = result.payload
        assert result.ok
        assert bodies[0]['queries']['subject']['properties']['name'][0] == "Ivan Petrov"
        assert [a['url'] for a in payload['actions']] == ["https://opensanctions.org/entities/Q1/"]
        assert payload['lookupErrors'] == {'eu_council': "HTTP 503", 'uk_ofsi': "HTTP 503"}
        assert {f['type'] for f in payload['risk']['flags']} == {
            "SANCTIONS_ANNOUNCEMENT", "OPENSANCTIONS_MATCH"
        }
        assert payload['risk']['score'] == 90

    async def test_eu_press_mention(self):
        def handler(request):
            if request.url.host == "api.opensanctions.org":
                return httpx.Response(200, json={'responses': {}})
            if request.url.host == "api.gdeltproject.org":
                if "domain:gov.uk" in request.url.params['query']:
                    return httpx.Response(200, json={'articles': []})
                return httpx.Response(200, json={'articles': [{
                    'title': 'Council adopts restrictive measures against Ivan Petrov',
                    'url': 'https://www.consilium.europa.eu/press/1',
                    'seendate': '20240305T101500Z', 'domain': 'consilium.europa.eu',
                }]})
            return httpx.Response(200, content=RSS)

        adapter = SanctionsAnnouncementAdapter(
            SourceConfig(base_url="https://ofac.test/rss.xml"), mock_client(handler)
        )
        result = await adapter.screen(query("Ivan Petrov"))

        actions = result.payload['actions']
        # both name variants return the same article
        assert len(actions) == 1
        assert actions[0]['source'] == "EU Council/Commission"
        assert actions[0]['date'] == "2024-03-05"
        assert actions[0]['severity'] == "HIGH"
        assert result.payload['risk']['score'] == 15

    async def test_feed_failure_is_error(self):
        def handler(request):
            if request.url.host == "ofac.test":
                return httpx.Response(503)
            return httpx.Response(200, json={'responses': {}, 'articles': []})

        adapter = SanctionsAnnouncementAdapter(
            SourceConfig(base_url="https://ofac.test/rss.xml"), mock_client(handler)
        )
        result = await adapter.screen(query("Oleg Deripaska"))

        assert result.error == "HTTP 503"

    async def test_malformed_feed(self):
        def handler(request):
            return httpx.Response(200, content=b"<rss><channel>")

        adapter = SanctionsAnnouncementAdapter(
            SourceConfig(base_url="https://ofac.test/rss.xml"), mock_client(handler)
        )
        result = await adapter.screen(query("Oleg Deripaska"))

        assert result.error.startswith("malformed payload")


class TestRegistry:

    def test_registry_order_and_key_gating(self, tmp_path, monkeypatch):
        for env in ("COURTLISTENER_API_KEY", "OPENSANCTIONS_API_KEY", "OCCRP_API_KEY",
                    "OPENCORPORATES_API_KEY", "COMPANIES_HOUSE_API_KEY", "ETHERSCAN_API_KEY",
                    "MARINETRAFFIC_API_KEY"):
            monkeypatch.delenv(env, raising=False)
        config = ConfigManager(str(tmp_path / "missing.yaml"))

        registry = build_registry(config, static_cache("ofac_sdn", []), static_cache("wallets", []))

        assert list(registry['entity']) == [
            'ofac', 'pep', 'aleph', 'corporate', 'announcements', 'regulatory',
            'adverse_media', 'shipping', 'finreg', 'data_sources',
        ]
        assert list(registry['wallet']) == ['wallet', 'ofac_wallet', 'blockchain']

    def test_disabled_source_left_out(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("sources:\n  announcements:\n    enabled: false\n")
        config = ConfigManager(str(config_file))

        registry = build_registry(config, static_cache("ofac_sdn", []), static_cache("wallets", []))
        assert 'announcements' not in registry['entity']
