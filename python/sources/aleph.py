"""
OCCRP Aleph Source Adapter

Searches entities and documents on the OCCRP Aleph investigative data
platform: leaked documents, corporate registries, sanctions lists and
offshore leaks.

Features:
- Entity name confidence (exact, containment, edit-distance similarity)
- Dataset identification from collection labels
- Risk flags for leaks, sanctions, debarment and offshore connections
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from matcher import similarity
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import BoundedCache, SourceAdapter, risk_block

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 100
MIN_CONFIDENCE = 0.6

SCHEMA_TYPES = {
    'Person': 'individual', 'LegalEntity': 'company', 'Company': 'company',
    'Organization': 'organization', 'PublicBody': 'government', 'Asset': 'asset',
    'RealEstate': 'property', 'Vehicle': 'vehicle', 'Vessel': 'vessel',
    'Aircraft': 'aircraft', 'BankAccount': 'bank_account', 'CryptoWallet': 'crypto_wallet',
    'Directorship': 'relationship', 'Ownership': 'relationship',
    'Family': 'relationship', 'Associate': 'relationship',
}

DATASET_KEYWORDS = {
    'panama_papers': ('panama', 'mossack fonseca'),
    'paradise_papers': ('paradise', 'appleby'),
    'pandora_papers': ('pandora',),
    'offshore_leaks': ('offshore leaks', 'icij'),
    'bahamas_leaks': ('bahamas',),
    'swiss_leaks': ('hsbc', 'swiss'),
    'lux_leaks': ('luxembourg', 'pwc'),
    'fincen_files': ('fincen', 'suspicious activity'),
    'uk_companies_house': ('companies house', 'uk companies'),
    'us_sec': ('sec', 'edgar'),
    'opencorporates': ('opencorporates',),
    'ofac': ('ofac', 'sdn'),
    'eu_sanctions': ('eu sanctions', 'european union'),
    'un_sanctions': ('un sanctions', 'security council'),
    'occrp_investigations': ('occrp', 'organized crime'),
    'world_bank_debarment': ('world bank', 'debarment'),
}

LEAK_DATASETS = (
    'panama_papers', 'paradise_papers', 'pandora_papers', 'offshore_leaks',
    'bahamas_leaks', 'swiss_leaks', 'fincen_files',
)
SANCTION_DATASETS = ('ofac', 'eu_sanctions', 'un_sanctions')
OFFSHORE_JURISDICTIONS = (
    'bvi', 'british virgin islands', 'cayman', 'panama', 'seychelles', 'bahamas',
    'jersey', 'guernsey', 'isle of man', 'liechtenstein',
)


def _first(values: Optional[List[Any]]) -> Any:
    return values[0] if values else None


def name_confidence(names: List[str], subject: str) -> float:
    subject = subject.lower()
    best = 0.0
    for name in (n.lower() for n in names):
        if name == subject:
            return 1.0
        if name in subject or subject in name:
            best = max(best, 0.8)
        else:
            best = max(best, similarity(name, subject))
    return best


def process_entities(results: List[Dict[str, Any]], subject: str) -> List[Dict[str, Any]]:
    processed = []
    for entity in results:
        props = entity.get('properties') or {}
        names = (props.get('name') or []) + (props.get('alias') or []) + (props.get('previousName') or [])
        confidence = name_confidence(names, subject)
        if confidence < MIN_CONFIDENCE:
            continue
        collection = entity.get('collection') or {}
        processed.append({
            'id': entity.get('id'),
            'schema': entity.get('schema'),
            'name': _first(props.get('name')) or 'Unknown',
            'aliases': props.get('alias') or [],
            'type': SCHEMA_TYPES.get(entity.get('schema'), 'unknown'),
            'country': props.get('country') or [],
            'jurisdiction': _first(props.get('jurisdiction')),
            'collection': collection.get('label'),
            'matchConfidence': round(confidence, 4),
            'url': f"https://aleph.occrp.org/entities/{entity.get('id')}",
        })
    processed.sort(key=lambda e: -e['matchConfidence'])
    return processed


def process_documents(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    documents = []
    for doc in results:
        props = doc.get('properties') or {}
        documents.append({
            'id': doc.get('id'),
            'title': _first(props.get('title')) or _first(props.get('fileName')) or 'Untitled',
            'date': _first(props.get('date')) or _first(props.get('createdAt')),
            'collection': (doc.get('collection') or {}).get('label'),
            'url': f"https://aleph.occrp.org/documents/{doc.get('id')}",
        })
    return documents


def identify_datasets(entities: List[Dict[str, Any]], documents: List[Dict[str, Any]]) -> List[str]:
    labels = [(item.get('collection') or '').lower() for item in entities + documents]
    found = []
    for dataset, keywords in DATASET_KEYWORDS.items():
        if any(kw in label for label in labels for kw in keywords):
            found.append(dataset)
    return found


def calculate_aleph_risk(entities: List[Dict[str, Any]], documents: List[Dict[str, Any]],
                         datasets: List[str]) -> Dict[str, Any]:
    score = 0
    flags: List[RiskFlag] = []

    strong = [e for e in entities if e['matchConfidence'] >= 0.9]
    if strong:
        score += 20
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.ENTITY_MATCH,
            f"{len(strong)} high-confidence entity match(es) in OCCRP Aleph",
            points=20, source='aleph'
        ))

    leaks = [d for d in datasets if d in LEAK_DATASETS]
    if leaks:
        points = 30 + (len(leaks) - 1) * 10
        score += points
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.LEAK_DATABASE_MATCH,
            f"Found in leaked database(s): {', '.join(leaks)}", points=points, source='aleph'
        ))

    sanctions = [d for d in datasets if d in SANCTION_DATASETS]
    if sanctions:
        score += 50
        flags.append(RiskFlag(
            Severity.CRITICAL, FlagCategory.SANCTIONS_DATABASE,
            f"Appears in sanctions database(s): {', '.join(sanctions)}", points=50, source='aleph'
        ))

    if 'world_bank_debarment' in datasets:
        score += 25
        flags.append(RiskFlag(
            Severity.HIGH, FlagCategory.DEBARMENT,
            "Listed in World Bank debarment database", points=25, source='aleph'
        ))

    if len(documents) > 50:
        score += 15
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.HIGH_DOCUMENT_VOLUME,
            f"{len(documents)} documents mentioning this entity", points=15, source='aleph'
        ))
    elif len(documents) > 10:
        score += 10
        flags.append(RiskFlag(
            Severity.LOW, FlagCategory.DOCUMENT_MENTIONS,
            f"{len(documents)} documents mentioning this entity", points=10, source='aleph'
        ))

    offshore = [
        e for e in entities
        if any(j in (e['jurisdiction'] or '').lower() or j in ' '.join(e['country']).lower()
               for j in OFFSHORE_JURISDICTIONS)
    ]
    if offshore:
        score += 15
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.OFFSHORE_ENTITIES,
            f"{len(offshore)} offshore entity connection(s)", points=15, source='aleph'
        ))

    return risk_block(score, flags)


class OccrpAlephAdapter(SourceAdapter):
    """Investigative database screening"""

    source_id = 'aleph'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[BoundedCache] = None):
        super().__init__(config, client)
        self.cache = cache or BoundedCache(max_size=200, ttl_seconds=3600)

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"ApiKey {self.api_key}"
        return headers

    async def _search_endpoint(self, endpoint: str, subject: str) -> List[Dict[str, Any]]:
        data = await self.get_json(
            f"{self.base_url}/{endpoint}",
            params={'q': subject, 'limit': SEARCH_LIMIT},
            headers=self._headers(),
        )
        return data.get('results') or []

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        subject = query.subject_text.strip()
        cached = self.cache.get(subject.lower())
        if cached is not None:
            return cached

        entity_results, document_results = await asyncio.gather(
            self._search_endpoint('entities', subject),
            self._search_endpoint('documents', subject),
            return_exceptions=True,
        )
        if isinstance(entity_results, BaseException) and isinstance(document_results, BaseException):
            raise entity_results
        if isinstance(entity_results, BaseException):
            logger.warning(f"⚠ Aleph entity search failed: {entity_results}")
            entity_results = []
        if isinstance(document_results, BaseException):
            logger.warning(f"⚠ Aleph document search failed: {document_results}")
            document_results = []

        entities = process_entities(entity_results, subject)
        documents = process_documents(document_results)
        datasets = identify_datasets(entities, documents)

        payload = {
            'matches': entities[:50],
            'documents': documents[:50],
            'totalResults': len(entities),
            'documentCount': len(documents),
            'datasets': datasets,
            'risk': calculate_aleph_risk(entities, documents, datasets),
        }
        self.cache.set(subject.lower(), payload)
        return payload
