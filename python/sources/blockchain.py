"""
Blockchain Explorer Source Adapter

On-chain activity for a wallet address, from the explorer that matches its
chain plus Blockchair where Blockchair covers the chain:

    ETH   Etherscan (ETHERSCAN_API_KEY optional)
    XBT   blockchain.info and BTC.com
    TRX   Tronscan
    SOL   Solscan

Activity is scored for volume, age against volume, contract accounts and
token spread. None of it is a sanctions hit on its own.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from config_manager import SourceConfig
from models import FlagCategory, RiskFlag, ScreeningQuery, Severity
from sources.base import SourceAdapter, empty_risk, gather_lookups, risk_block
from sources.wallet import detect_chain

logger = logging.getLogger(__name__)

ETHERSCAN_URL = "https://api.etherscan.io/api"
BLOCKCHAIN_INFO_URL = "https://blockchain.info/rawaddr"
BTC_COM_URL = "https://chain.api.btc.com/v3/address"
TRONSCAN_URL = "https://apilist.tronscanapi.com/api"
SOLSCAN_URL = "https://public-api.solscan.io"
BLOCKCHAIR_URL = "https://api.blockchair.com"

BLOCKCHAIR_CHAINS = {
    'XBT': 'bitcoin', 'ETH': 'ethereum', 'TRX': 'tron',
    'LTC': 'litecoin', 'DASH': 'dash', 'ZEC': 'zcash',
}

HIGH_TX_VOLUME = 10000
NEW_ADDRESS_DAYS = 30
NEW_ADDRESS_TX = 100
MANY_TOKENS = 10


def _timestamp(value: Any) -> Optional[datetime]:
    """Explorer time (unix seconds, unix millis or ISO text) as an aware datetime"""
    if value in (None, '', 0):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def consolidate(reports: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Merge per-explorer reports into one activity summary"""
    info = {
        'balances': {},
        'totalTxCount': 0,
        'firstSeen': None,
        'lastSeen': None,
        'tokens': [],
        'isContract': False,
    }
    for explorer, report in reports.items():
        if report.get('balance') is not None:
            info['balances'][explorer] = report['balance']
        info['totalTxCount'] = max(info['totalTxCount'], int(report.get('transactionCount') or 0))
        info['tokens'].extend(report.get('tokens') or [])
        info['isContract'] = info['isContract'] or bool(report.get('isContract'))
        first = _timestamp(report.get('firstSeen'))
        if first and (info['firstSeen'] is None or first < info['firstSeen']):
            info['firstSeen'] = first
        last = _timestamp(report.get('lastSeen'))
        if last and (info['lastSeen'] is None or last > info['lastSeen']):
            info['lastSeen'] = last
    return info


def calculate_activity_risk(info: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    score = 0
    flags: List[RiskFlag] = []
    tx_count = info['totalTxCount']

    if tx_count > HIGH_TX_VOLUME:
        score += 15
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.HIGH_TX_VOLUME,
            f"{tx_count} transactions (high volume)", points=15, source='blockchain'
        ))

    if info['firstSeen'] is not None:
        age_days = (now - info['firstSeen']).total_seconds() / 86400
        if age_days < NEW_ADDRESS_DAYS and tx_count > NEW_ADDRESS_TX:
            score += 20
            flags.append(RiskFlag(
                Severity.HIGH, FlagCategory.NEW_HIGH_ACTIVITY,
                f"Address is {round(age_days)} days old with {tx_count} transactions",
                points=20, source='blockchain'
            ))

    if info['isContract']:
        score += 10
        flags.append(RiskFlag(
            Severity.MEDIUM, FlagCategory.CONTRACT_ADDRESS,
            "Address is a smart contract", points=10, source='blockchain'
        ))

    if len(info['tokens']) > MANY_TOKENS:
        score += 10
        flags.append(RiskFlag(
            Severity.LOW, FlagCategory.MANY_TOKENS,
            f"{len(info['tokens'])} different token types held", points=10, source='blockchain'
        ))

    return risk_block(score, flags)


class BlockchainExplorerAdapter(SourceAdapter):
    """On-chain activity screening for wallet addresses"""

    source_id = 'blockchain'

    def __init__(self, config: SourceConfig, client: Optional[httpx.AsyncClient] = None,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        super().__init__(config, client)
        self._now = now

    async def _etherscan(self, address: str) -> Dict[str, Any]:
        base = {'module': 'account', 'address': address}
        if self.api_key:
            base['apikey'] = self.api_key
        results, _ = await gather_lookups(self.source_id, {
            'balance': self.get_json(ETHERSCAN_URL, params=dict(base, action='balance', tag='latest')),
            'txlist': self.get_json(ETHERSCAN_URL, params=dict(
                base, action='txlist', startblock=0, endblock=99999999, page=1, offset=25, sort='desc'
            )),
            'tokentx': self.get_json(ETHERSCAN_URL, params=dict(
                base, action='tokentx', page=1, offset=25, sort='desc'
            )),
        })
        balance = results.get('balance') or {}
        txs = (results.get('txlist') or {}).get('result')
        txs = txs if isinstance(txs, list) else []
        transfers = (results.get('tokentx') or {}).get('result')
        transfers = transfers if isinstance(transfers, list) else []
        return {
            'balance': f"{int(balance['result']) / 1e18:.4f} ETH" if balance.get('status') == '1' else None,
            'transactionCount': len(txs),
            'firstSeen': int(txs[-1]['timeStamp']) if txs else None,
            'lastSeen': int(txs[0]['timeStamp']) if txs else None,
            'tokens': sorted({t.get('tokenSymbol') or t.get('tokenName') or '' for t in transfers} - {''}),
            'explorerUrl': f"https://etherscan.io/address/{address}",
        }

    async def _bitcoin(self, address: str) -> Dict[str, Any]:
        results, _ = await gather_lookups(self.source_id, {
            'blockchain_info': self.get_json(f"{BLOCKCHAIN_INFO_URL}/{address}", params={'limit': 10}),
            'btc_com': self.get_json(f"{BTC_COM_URL}/{address}"),
        })
        report: Dict[str, Any] = {'explorerUrl': f"https://www.blockchain.com/btc/address/{address}"}
        bc = results.get('blockchain_info')
        if bc:
            report['balance'] = f"{(bc.get('final_balance') or 0) / 1e8:.8f} BTC"
            report['transactionCount'] = bc.get('n_tx') or 0
            report['totalReceived'] = f"{(bc.get('total_received') or 0) / 1e8:.8f} BTC"
            report['totalSent'] = f"{(bc.get('total_sent') or 0) / 1e8:.8f} BTC"
        btc = (results.get('btc_com') or {}).get('data') or {}
        if btc:
            report['transactionCount'] = max(report.get('transactionCount', 0), btc.get('tx_count') or 0)
        return report

    async def _tron(self, address: str) -> Dict[str, Any]:
        acct = await self.get_json(f"{TRONSCAN_URL}/accountv2", params={'address': address})
        return {
            'balance': f"{(acct.get('balance') or 0) / 1e6:.2f} TRX",
            'transactionCount': acct.get('transactions') or acct.get('totalTransactionCount') or 0,
            'firstSeen': acct.get('date_created'),
            'tokens': [
                t.get('tokenAbbr') or t.get('tokenName') or ''
                for t in (acct.get('withPriceTokens') or [])
            ],
            'explorerUrl': f"https://tronscan.org/#/address/{address}",
        }

    async def _solana(self, address: str) -> Dict[str, Any]:
        headers = {'Accept': 'application/json'}
        results, _ = await gather_lookups(self.source_id, {
            'account': self.get_json(f"{SOLSCAN_URL}/account/{address}", headers=headers),
            'transactions': self.get_json(f"{SOLSCAN_URL}/account/transactions",
                                          params={'account': address, 'limit': 10}, headers=headers),
        })
        acct = results.get('account') or {}
        txs = results.get('transactions')
        txs = txs if isinstance(txs, list) else []
        lamports = acct.get('lamports')
        return {
            'balance': f"{lamports / 1e9:.4f} SOL" if lamports is not None else None,
            'transactionCount': len(txs),
            'isContract': bool(acct.get('executable')),
            'explorerUrl': f"https://solscan.io/account/{address}",
        }

    async def _blockchair(self, address: str, chain: str) -> Dict[str, Any]:
        name = BLOCKCHAIR_CHAINS[chain]
        data = await self.get_json(f"{BLOCKCHAIR_URL}/{name}/dashboards/address/{address}")
        entries = data.get('data') or {}
        entry = entries.get(address) or entries.get(address.lower()) or {}
        info = entry.get('address') or {}
        return {
            'balance': info.get('balance'),
            'balanceUSD': info.get('balance_usd'),
            'transactionCount': info.get('transaction_count') or 0,
            'firstSeen': info.get('first_seen_receiving') or info.get('first_seen'),
            'lastSeen': info.get('last_seen_receiving') or info.get('last_seen'),
            'explorerUrl': f"https://blockchair.com/{name}/address/{address}",
        }

    async def _search(self, query: ScreeningQuery) -> Dict[str, Any]:
        address = query.subject_text.strip()
        chain = detect_chain(address)

        explorers = {
            'ETH': ('etherscan', self._etherscan),
            'XBT': ('bitcoin', self._bitcoin),
            'TRX': ('tronscan', self._tron),
            'SOL': ('solscan', self._solana),
        }
        lookups = {}
        if chain in explorers:
            name, lookup = explorers[chain]
            lookups[name] = lookup(address)
        if chain in BLOCKCHAIR_CHAINS:
            lookups['blockchair'] = self._blockchair(address, chain)
        if not lookups:
            logger.debug(f"blockchain: no explorer covers chain {chain}")
            return {'matches': [], 'totalResults': 0, 'chain': chain, 'risk': empty_risk()}

        reports, errors = await gather_lookups(self.source_id, lookups)
        info = consolidate(reports)
        return {
            'matches': [dict(report, explorer=name) for name, report in reports.items()],
            'totalResults': len(reports),
            'chain': chain,
            'totalTxCount': info['totalTxCount'],
            'firstSeen': info['firstSeen'].isoformat() if info['firstSeen'] else None,
            'lastSeen': info['lastSeen'].isoformat() if info['lastSeen'] else None,
            'tokenCount': len(info['tokens']),
            'lookupErrors': errors,
            'risk': calculate_activity_risk(info, self._now()),
        }
