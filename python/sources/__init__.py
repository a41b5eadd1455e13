"""
Source Adapters Package

One adapter per external data source, all behind the same
``await adapter.screen(query) -> SourceResult`` contract.

build_registry() assembles the adapters enabled in configuration, in a
fixed order that the orchestrator and risk engine rely on.
"""

import logging
from typing import Dict, Optional

import httpx

from list_cache import ReferenceListCache
from matcher import NameMatcher
from sources.adverse_media import AdverseMediaAdapter
from sources.aleph import OccrpAlephAdapter
from sources.announcements import SanctionsAnnouncementAdapter
from sources.base import SourceAdapter, SourceUnavailable
from sources.blockchain import BlockchainExplorerAdapter
from sources.court_records import CourtListenerAdapter
from sources.data_sources import PublicDataSourcesAdapter
from sources.financial_registrations import FinancialRegistrationsAdapter
from sources.ofac import OfacSdnAdapter
from sources.opencorporates import OpenCorporatesAdapter
from sources.opensanctions import OpenSanctionsPepAdapter
from sources.regulatory import RegulatoryEnforcementAdapter
from sources.shipping import ShippingTradeAdapter
from sources.uk_companies import UkCompaniesHouseAdapter
from sources.wallet import OfacWalletAdapter, SanctionedWalletAdapter, detect_chain, is_wallet_address

logger = logging.getLogger(__name__)

# Registry order (also the result-map order)
ENTITY_SOURCES = (
    'ofac', 'pep', 'court_records', 'aleph', 'corporate', 'uk_companies', 'announcements',
    'regulatory', 'adverse_media', 'shipping', 'finreg', 'data_sources',
)
WALLET_SOURCES = ('wallet', 'ofac_wallet', 'blockchain')


def build_registry(config, sdn_cache: ReferenceListCache, wallet_cache: ReferenceListCache,
                   client: Optional[httpx.AsyncClient] = None,
                   matcher: Optional[NameMatcher] = None) -> Dict[str, Dict[str, SourceAdapter]]:
    """Build the entity and wallet adapter maps

    Adapters disabled in config, or needing an API key that is not set, are
    left out.

    Returns:
        {'entity': {source_id: adapter}, 'wallet': {source_id: adapter}}
    """
    matcher = matcher or NameMatcher(config.matching)
    sources = config.sources

    factories = {
        'ofac': lambda c: OfacSdnAdapter(c, sdn_cache, matcher),
        'pep': lambda c: OpenSanctionsPepAdapter(c, client, matcher),
        'court_records': lambda c: CourtListenerAdapter(c, client),
        'aleph': lambda c: OccrpAlephAdapter(c, client),
        'corporate': lambda c: OpenCorporatesAdapter(c, client),
        'uk_companies': lambda c: UkCompaniesHouseAdapter(c, client),
        'announcements': lambda c: SanctionsAnnouncementAdapter(c, client),
        'regulatory': lambda c: RegulatoryEnforcementAdapter(c, client),
        'adverse_media': lambda c: AdverseMediaAdapter(c, client),
        'shipping': lambda c: ShippingTradeAdapter(c, client),
        'finreg': lambda c: FinancialRegistrationsAdapter(c, client),
        'data_sources': lambda c: PublicDataSourcesAdapter(c, client),
        'wallet': lambda c: SanctionedWalletAdapter(c, wallet_cache, matcher, client),
        # SDN remarks addresses share the OFAC source settings
        'ofac_wallet': lambda c: OfacWalletAdapter(c, sdn_cache, matcher),
        'blockchain': lambda c: BlockchainExplorerAdapter(c, client),
    }

    def assemble(order):
        adapters: Dict[str, SourceAdapter] = {}
        for source_id in order:
            source_config = sources.get('ofac' if source_id == 'ofac_wallet' else source_id)
            if source_config is None or not source_config.enabled:
                logger.info(f"Source {source_id} disabled")
                continue
            adapter = factories[source_id](source_config)
            if not adapter.configured:
                logger.info(f"Source {source_id} skipped: {source_config.api_key_env} not set")
                continue
            adapters[source_id] = adapter
        return adapters

    registry = {'entity': assemble(ENTITY_SOURCES), 'wallet': assemble(WALLET_SOURCES)}
    logger.info(
        f"✓ Source registry: entity={list(registry['entity'])}, wallet={list(registry['wallet'])}"
    )
    return registry


__all__ = [
    'ENTITY_SOURCES',
    'WALLET_SOURCES',
    'SourceAdapter',
    'SourceUnavailable',
    'build_registry',
    'detect_chain',
    'is_wallet_address',
]
