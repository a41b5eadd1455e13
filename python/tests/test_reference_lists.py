"""
Unit tests for reference list parsing
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from models import CryptoAddress, EntityKind
from reference_lists import (
    KNOWN_SANCTIONED_SERVICES, known_service_records, merge_wallet_records,
    normalize_entity_kind, parse_address_list, parse_remarks, parse_sdn_csv,
)


SDN_CSV = "\n".join([
    'ent_num,SDN_Name,SDN_Type,Program,Title,Call_Sign,Vess_type,Tonnage,GRT,Vess_flag,Vess_owner,Remarks',
    '36,"AEROCARIBBEAN AIRLINES",-0- ,"CUBA",-0- ,-0- ,-0- ,-0- ,-0- ,-0- ,-0- ,-0- ',
    '12345,"DERIPASKA, Oleg Vladimirovich","individual","UKRAINE-EO13661; RUSSIA-EO14024",-0-,-0-,-0-,-0-,-0-,-0-,-0-,'
    '"DOB 02 Jan 1968; POB Dzerzhinsk, Russia; nationality Russia; citizen Russia; a.k.a. \'DERIPASKA, Oleg\'."',
    '',
    'garbage',
    '99,"KHOROSHEV, Dmitry","individual","CYBER2",-0-,-0-,-0-,-0-,-0-,-0-,-0-,'
    '"Digital Currency Address - XBT 12QtD5BFwRsdNsAZY76UVE1xyCGNTojH9h; '
    'alt. Digital Currency Address - ETH 0x7F367cC41522cE07553e823bf3be79A889DEbe1B."',
])


class TestSdnCsv:
    """SDN.CSV parsing"""

    def test_parses_records_and_skips_junk(self):
        records = parse_sdn_csv(SDN_CSV)
        assert [r.id for r in records] == ["36", "12345", "99"]

    def test_empty_type_is_organization(self):
        airline = parse_sdn_csv(SDN_CSV)[0]

        assert airline.primary_name == "AEROCARIBBEAN AIRLINES"
        assert airline.entity_kind == EntityKind.ORGANIZATION
        assert airline.programs == frozenset({"CUBA"})
        assert airline.remarks == ""

    def test_individual_with_remarks(self):
        record = parse_sdn_csv(SDN_CSV)[1]

        assert record.primary_name == "DERIPASKA, Oleg Vladimirovich"
        assert record.entity_kind == EntityKind.INDIVIDUAL
        assert record.programs == frozenset({"UKRAINE-EO13661", "RUSSIA-EO14024"})
        assert record.date_of_birth == "02 Jan 1968"
        assert record.nationality == "Russia"
        assert record.citizenship == "Russia"
        assert record.aliases == ("DERIPASKA, Oleg",)
        assert record.source == "OFAC"

    def test_digital_currency_addresses(self):
        record = parse_sdn_csv(SDN_CSV)[2]

        assert record.addresses == (
            CryptoAddress("XBT", "12QtD5BFwRsdNsAZY76UVE1xyCGNTojH9h"),
            CryptoAddress("ETH", "0x7F367cC41522cE07553e823bf3be79A889DEbe1B"),
        )

    def test_empty_body(self):
        assert parse_sdn_csv("") == []

    def test_records_are_immutable(self):
        record = parse_sdn_csv(SDN_CSV)[0]
        with pytest.raises(AttributeError):
            record.primary_name = "changed"


class TestRemarks:
    """Structured data pulled out of the remarks column"""

    def test_year_only_dob(self):
        assert parse_remarks("DOB 1970; POB Tehran")['date_of_birth'] == "1970"

    def test_multiple_aliases_deduplicated(self):
        parsed = parse_remarks("a.k.a. 'ALPHA'; a.k.a. 'BETA'; a.k.a. 'ALPHA'.")
        assert parsed['aliases'] == ["ALPHA", "BETA"]

    def test_bare_currency_mention(self):
        parsed = parse_remarks("alt. XBT 1AjZPMsnmpdK2Rv9KQNfMurTXinscVro9V listed")
        assert parsed['addresses'] == [CryptoAddress("XBT", "1AjZPMsnmpdK2Rv9KQNfMurTXinscVro9V")]

    def test_empty_remarks(self):
        parsed = parse_remarks("")
        assert parsed['aliases'] == []
        assert parsed['addresses'] == []
        assert parsed['date_of_birth'] is None


class TestEntityKind:

    @pytest.mark.parametrize("raw,expected", [
        ("individual", EntityKind.INDIVIDUAL),
        ("vessel", EntityKind.VESSEL),
        ("aircraft", EntityKind.AIRCRAFT),
        ("-0-", EntityKind.ORGANIZATION),
        ("", EntityKind.ORGANIZATION),
        ("entity", EntityKind.ORGANIZATION),
        ("something else", EntityKind.UNKNOWN),
    ])
    def test_mapping(self, raw, expected):
        assert normalize_entity_kind(raw) == expected


class TestWalletLists:
    """Sanctioned address lists and the known services table"""

    def test_address_list(self):
        text = "# ETH addresses\n0xAbCdEf0123456789abcdef0123456789ABCDEF01\n\nnot an address\n"
        records = parse_address_list(text, "ETH")

        assert len(records) == 1
        record = records[0]
        assert record.id == "ETH:0xabcdef0123456789abcdef0123456789abcdef01"
        assert record.primary_name == "0xAbCdEf0123456789abcdef0123456789ABCDEF01"
        assert record.entity_kind == EntityKind.WALLET
        assert record.addresses[0].currency == "ETH"

    def test_known_service_records(self):
        records = known_service_records()
        assert len(records) == len(KNOWN_SANCTIONED_SERVICES)
        assert all(r.source == "KNOWN_SERVICE" for r in records)

    def test_merge_prefers_known_services(self):
        tornado = "0xd90e2f925da726b50c4ed8d0fb90ad053324f31b"
        downloaded = parse_address_list(f"{tornado}\n0x1111111111111111111111111111111111111111\n", "ETH")

        merged = merge_wallet_records([downloaded])
        by_id = {r.id: r for r in merged}

        assert len(merged) == len(KNOWN_SANCTIONED_SERVICES) + 1
        assert by_id[f"ETH:{tornado}"].primary_name == "Tornado Cash"
        assert "ETH:0x1111111111111111111111111111111111111111" in by_id
