"""
Reference List Parsers

Turns downloaded list bodies into immutable ReferenceRecord sequences.

Features:
- OFAC SDN CSV parsing with quoted-field handling (one record per line)
- Structured data extraction from SDN remarks (DOB, nationality, aliases,
  digital currency addresses)
- Newline-delimited sanctioned wallet address lists
- Built-in table of known sanctioned crypto services

Malformed lines are skipped individually; a bad line never aborts a load.
"""

import csv
import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from models import CryptoAddress, EntityKind, ReferenceRecord

logger = logging.getLogger(__name__)

# SDN.CSV column positions
COL_ENT_NUM = 0
COL_NAME = 1
COL_TYPE = 2
COL_PROGRAM = 3
COL_REMARKS = 11

# OFAC writes "-0-" for empty columns
EMPTY_MARKER = '-0-'

DOB_PATTERN = re.compile(r'DOB\s+(\d{1,2}\s+\w{3}\s+\d{4}|\d{4})', re.IGNORECASE)
NATIONALITY_PATTERN = re.compile(r'nationality\s+(\w+)', re.IGNORECASE)
CITIZEN_PATTERN = re.compile(r'citizen\s+(\w+)', re.IGNORECASE)
DIGITAL_CURRENCY_PATTERN = re.compile(
    r'Digital Currency Address\s*-\s*(\w+)\s+(\w+)', re.IGNORECASE
)
BARE_CURRENCY_PATTERN = re.compile(
    r'\b(XBT|ETH|USDT|TRX|LTC|ZEC|DASH|BSC|XRP)\s+(\w{20,})', re.IGNORECASE
)
AKA_PATTERN = re.compile(r"a\.k\.a\.\s+'([^']+)'", re.IGNORECASE)

# service name, chain, program, designation date
KNOWN_SANCTIONED_SERVICES: Dict[str, Tuple[str, str, str, str]] = {
    '0xd90e2f925da726b50c4ed8d0fb90ad053324f31b': ('Tornado Cash', 'ETH', 'CYBER2', '2022-08-08'),
    '0x722122df12d4e14e13ac3b6895a86e84145b6967': ('Tornado Cash Router', 'ETH', 'CYBER2', '2022-08-08'),
    '0xdd4c48c0b24039969fc16d1cdf626eab821d3384': ('Tornado Cash', 'ETH', 'CYBER2', '2022-08-08'),
    '0xd4b88df4d29f5cedd6857912842cff3b20c8cfa3': ('Tornado Cash', 'ETH', 'CYBER2', '2022-08-08'),
    '0x910cbd523d972eb0a6f4cae4618ad62622b39dbf': ('Tornado Cash', 'ETH', 'CYBER2', '2022-08-08'),
    '0xa160cdab225685da1d56aa342ad8841c3b53f291': ('Tornado Cash', 'ETH', 'CYBER2', '2022-08-08'),
    '0xfd8610d20aa15b7b2e3be39b396a1bc3516c7144': ('Tornado Cash', 'ETH', 'CYBER2', '2022-08-08'),
    '0xf60dd140cff0706bae9cd734ac3683f01fc92926': ('Tornado Cash', 'ETH', 'CYBER2', '2022-08-08'),
    '0x12d66f87a04a9e220743712ce6d9bb1b5616b8fc': ('Tornado Cash 0.1 ETH', 'ETH', 'CYBER2', '2022-08-08'),
    '0x47ce0c6ed5b0ce3d3a51fdb1c52dc66a7c3c2936': ('Tornado Cash 1 ETH', 'ETH', 'CYBER2', '2022-08-08'),
    '0x23773e65ed146a459791799d01336db287f25334': ('Tornado Cash 10 ETH', 'ETH', 'CYBER2', '2022-08-08'),
    '0xd21be7248e0197ee08e0c20d4a398dad8926dec7': ('Tornado Cash 100 ETH', 'ETH', 'CYBER2', '2022-08-08'),
    '0x178169b423a011fff22b9e3f3abea13414ddd0f1': ('Tornado Cash Governance', 'ETH', 'CYBER2', '2022-08-08'),
    '0x610b717796ad172b316836ac95a2ffad065ceab4': ('Tornado Cash Governance', 'ETH', 'CYBER2', '2022-08-08'),
    '0xba214c1c1928a32bffe790263e38b4af9bfcd659': ('Tornado Cash Governance', 'ETH', 'CYBER2', '2022-08-08'),
    '0xb1c8094b234dce6e03f10a5b673c1d8c69739a00': ('Tornado Cash Governance', 'ETH', 'CYBER2', '2022-08-08'),
    '0x6f1ca141a28907f78ebaa64f83d4e6f1da97e63c': ('Garantex', 'ETH', 'RUSSIA-EO14024', '2022-04-05'),
    '0x94a1b5cdb22c43faab4abeb5c74999895464ddba': ('Blender.io', 'ETH', 'CYBER2', '2022-05-06'),
    '0x72a5843cc08275c8171e582972aa4fda8c397b2a': ('Sinbad.io', 'ETH', 'CYBER2', '2023-11-29'),
}


def _clean(value: Optional[str]) -> str:
    value = (value or '').strip()
    return '' if value == EMPTY_MARKER else value


def normalize_entity_kind(raw_type: str) -> EntityKind:
    """Map an SDN_Type column value onto EntityKind

    SDN.CSV leaves the type column empty for companies and organizations.
    """
    t = _clean(raw_type).lower()
    if not t:
        return EntityKind.ORGANIZATION
    if 'individual' in t:
        return EntityKind.INDIVIDUAL
    if 'entity' in t or 'company' in t or 'organization' in t:
        return EntityKind.ORGANIZATION
    if 'vessel' in t:
        return EntityKind.VESSEL
    if 'aircraft' in t:
        return EntityKind.AIRCRAFT
    return EntityKind.UNKNOWN


def parse_remarks(remarks: str) -> Dict[str, object]:
    """Extract structured fields from an SDN remarks column

    Returns:
        Dict with date_of_birth, nationality, citizenship, aliases (list)
        and addresses (list of CryptoAddress)
    """
    parsed: Dict[str, object] = {
        'date_of_birth': None,
        'nationality': None,
        'citizenship': None,
        'aliases': [],
        'addresses': [],
    }
    if not remarks:
        return parsed

    dob = DOB_PATTERN.search(remarks)
    if dob:
        parsed['date_of_birth'] = dob.group(1)

    nationality = NATIONALITY_PATTERN.search(remarks)
    if nationality:
        parsed['nationality'] = nationality.group(1)

    citizen = CITIZEN_PATTERN.search(remarks)
    if citizen:
        parsed['citizenship'] = citizen.group(1)

    addresses: List[CryptoAddress] = []
    seen = set()
    for m in DIGITAL_CURRENCY_PATTERN.finditer(remarks):
        key = m.group(2).lower()
        if key not in seen:
            seen.add(key)
            addresses.append(CryptoAddress(currency=m.group(1).upper(), address=m.group(2)))
    for m in BARE_CURRENCY_PATTERN.finditer(remarks):
        key = m.group(2).lower()
        if key not in seen:
            seen.add(key)
            addresses.append(CryptoAddress(currency=m.group(1).upper(), address=m.group(2)))
    parsed['addresses'] = addresses

    aliases: List[str] = []
    for m in AKA_PATTERN.finditer(remarks):
        alias = m.group(1).strip()
        if alias and alias not in aliases:
            aliases.append(alias)
    parsed['aliases'] = aliases

    return parsed


def _parse_sdn_line(line: str) -> Optional[ReferenceRecord]:
    try:
        fields = next(csv.reader([line]))
    except (csv.Error, StopIteration):
        return None

    if len(fields) < 3:
        return None

    ent_num = _clean(fields[COL_ENT_NUM])
    name = _clean(fields[COL_NAME])
    if not ent_num or not name or name == 'SDN_Name':
        return None

    program = _clean(fields[COL_PROGRAM]) if len(fields) > COL_PROGRAM else ''
    remarks = _clean(fields[COL_REMARKS] if len(fields) > COL_REMARKS else fields[-1])
    extracted = parse_remarks(remarks)

    return ReferenceRecord(
        id=ent_num,
        primary_name=name,
        aliases=tuple(extracted['aliases']),
        entity_kind=normalize_entity_kind(fields[COL_TYPE]),
        programs=frozenset(p.strip() for p in program.split(';') if p.strip()),
        remarks=remarks,
        date_of_birth=extracted['date_of_birth'],
        nationality=extracted['nationality'],
        citizenship=extracted['citizenship'],
        addresses=tuple(extracted['addresses']),
        source='OFAC',
    )


def parse_sdn_csv(text: str) -> List[ReferenceRecord]:
    """Parse an OFAC SDN/consolidated CSV body

    Args:
        text: Full CSV body as downloaded

    Returns:
        List of records; header, short and malformed lines are skipped
    """
    records: List[ReferenceRecord] = []
    skipped = 0
    for line in text.splitlines():
        if not line.strip():
            continue
        record = _parse_sdn_line(line)
        if record is None:
            skipped += 1
            continue
        records.append(record)

    if skipped:
        logger.debug(f"SDN parse skipped {skipped} lines")
    logger.info(f"✓ Parsed {len(records)} SDN entries")
    return records


def parse_address_list(text: str, chain: str) -> List[ReferenceRecord]:
    """Parse a newline-delimited sanctioned address list for one chain"""
    records: List[ReferenceRecord] = []
    for line in text.splitlines():
        address = line.strip()
        if not address or address.startswith('#'):
            continue
        if any(c.isspace() for c in address):
            continue
        records.append(ReferenceRecord(
            id=f"{chain}:{address.lower()}",
            primary_name=address,
            entity_kind=EntityKind.WALLET,
            programs=frozenset({chain}),
            addresses=(CryptoAddress(currency=chain, address=address),),
            source='OFAC_WALLET_LIST',
        ))
    return records


def known_service_records() -> List[ReferenceRecord]:
    """Records for the built-in known sanctioned services table"""
    records = []
    for address, (service, chain, program, designated) in KNOWN_SANCTIONED_SERVICES.items():
        records.append(ReferenceRecord(
            id=f"{chain}:{address}",
            primary_name=service,
            entity_kind=EntityKind.WALLET,
            programs=frozenset({program}),
            remarks=f"Designated {designated}",
            addresses=(CryptoAddress(currency=chain, address=address),),
            source='KNOWN_SERVICE',
        ))
    return records


def merge_wallet_records(groups: Iterable[List[ReferenceRecord]]) -> List[ReferenceRecord]:
    """Merge per-chain lists with the known services table

    Known services come first so their service name survives duplicates.
    """
    merged: Dict[str, ReferenceRecord] = {r.id: r for r in known_service_records()}
    for group in groups:
        for record in group:
            merged.setdefault(record.id, record)
    return list(merged.values())
