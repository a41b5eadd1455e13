"""
Change-Stream Watcher

Long-lived subscriptions to the Companies House streaming API. Events for
watchlisted companies become alerts; disqualified officers and insolvency
events are tracked for every company.

Features:
- Per-stream state machine: DISCONNECTED -> CONNECTING -> CONNECTED
- Unbounded reconnect with a fixed backoff (tenacity AsyncRetrying)
- Injectable transport and sleep function for testing
- Event classification and severity tables per stream
- Capped alert ring buffer with filtering and pagination
- Optional write-through persistence of the watchlist and alerts, run on a
  single worker thread so store calls never block the event loop
"""

import asyncio
import inspect
import json
import logging
import re
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Deque, Dict, List,
    Optional, Set,
)

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_never, wait_fixed

from config_manager import WatcherConfig
from models import Alert, AlertStatus, EventType, Severity
from monitoring import record_alert, set_stream_connected
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
# transport(stream) -> async context manager yielding an async iterator of events.
# Entering the context opens the connection (raises on failure).
Transport = Callable[[str], AsyncContextManager[AsyncIterator[Event]]]
Listener = Callable[[Alert], Any]

_COMPANY_LINK = re.compile(r'/company/([^/]+)')


class StreamState(str, Enum):
    DISCONNECTED = 'DISCONNECTED'
    CONNECTING = 'CONNECTING'
    CONNECTED = 'CONNECTED'


class StreamClosed(Exception):
    """The server ended the stream; treated like any other disconnect"""
    pass


@dataclass
class StreamStatus:
    stream: str
    state: StreamState = StreamState.DISCONNECTED
    connect_attempts: int = 0
    events_received: int = 0
    last_error: Optional[str] = None
    last_event_at: Optional[str] = None
    history: Deque[StreamState] = field(default_factory=lambda: deque(maxlen=20))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'connectAttempts': self.connect_attempts,
            'eventsReceived': self.events_received,
            'lastError': self.last_error,
            'lastEventAt': self.last_event_at,
        }


# ============================================
# CLASSIFICATION
# ============================================

SEVERITY_BY_EVENT = {
    EventType.LIQUIDATION: Severity.CRITICAL,
    EventType.ADMINISTRATION: Severity.CRITICAL,
    EventType.OFFICER_DISQUALIFIED: Severity.CRITICAL,
    EventType.CVA: Severity.HIGH,
    EventType.INSOLVENCY_EVENT: Severity.HIGH,
    EventType.PSC_NOTIFIED: Severity.HIGH,
    EventType.PSC_CEASED: Severity.HIGH,
    EventType.STATUS_CHANGE: Severity.HIGH,
    EventType.OFFICER_RESIGNED: Severity.MEDIUM,
    EventType.OFFICER_APPOINTED: Severity.MEDIUM,
    EventType.NAME_CHANGE: Severity.MEDIUM,
    EventType.ADDRESS_CHANGE: Severity.MEDIUM,
    EventType.CHARGE_CREATED: Severity.MEDIUM,
}


def extract_subject_key(event: Event) -> Optional[str]:
    """Company number from the event payload or its company links"""
    data = event.get('data') or {}
    number = data.get('company_number')
    if number:
        return str(number)
    candidates = [
        (data.get('links') or {}).get('company'),
        event.get('resource_uri'),
        (data.get('links') or {}).get('self'),
    ]
    for link in candidates:
        if link:
            found = _COMPANY_LINK.search(str(link))
            if found:
                return found.group(1)
    return None


def classify_event(stream: str, event: Event) -> EventType:
    data = event.get('data') or {}
    changed = (event.get('event') or {}).get('type') == 'changed'

    if stream == 'companies':
        if changed:
            fields = (event.get('event') or {}).get('fields_changed') or []
            if 'company_status' in fields:
                return EventType.STATUS_CHANGE
            if 'registered_office_address' in fields:
                return EventType.ADDRESS_CHANGE
            if 'company_name' in fields:
                return EventType.NAME_CHANGE
            return EventType.COMPANY_UPDATE
        return EventType.COMPANY_EVENT

    if stream == 'officers':
        if changed:
            return EventType.OFFICER_RESIGNED if data.get('resigned_on') else EventType.OFFICER_APPOINTED
        return EventType.OFFICER_CHANGE

    if stream == 'persons-with-significant-control':
        if changed:
            return EventType.PSC_CEASED if data.get('ceased_on') else EventType.PSC_NOTIFIED
        return EventType.PSC_CHANGE

    if stream == 'disqualified-officers':
        return EventType.OFFICER_DISQUALIFIED

    if stream == 'insolvency-cases':
        case_type = str(data.get('case_type') or '').lower()
        if 'liquidation' in case_type:
            return EventType.LIQUIDATION
        if 'administration' in case_type:
            return EventType.ADMINISTRATION
        if 'voluntary' in case_type:
            return EventType.CVA
        return EventType.INSOLVENCY_EVENT

    if stream == 'charges':
        return EventType.CHARGE_SATISFIED if data.get('status') == 'satisfied' else EventType.CHARGE_CREATED

    if stream == 'filings':
        category = data.get('category') or ''
        if category == 'accounts':
            return EventType.ACCOUNTS_FILED
        if category == 'confirmation-statement':
            return EventType.CONFIRMATION_STATEMENT
        if category == 'resolution':
            return EventType.RESOLUTION_FILED
        return EventType.FILING_RECEIVED

    return EventType.UNKNOWN


def severity_for(event_type: EventType) -> Severity:
    return SEVERITY_BY_EVENT.get(event_type, Severity.LOW)


def summarize(event_type: EventType, event: Event, company_name: Optional[str] = None) -> str:
    data = event.get('data') or {}
    name = data.get('company_name') or company_name or 'Unknown Company'
    person = data.get('name') or 'Unknown'
    summaries = {
        EventType.LIQUIDATION: f"{name} has entered liquidation proceedings",
        EventType.ADMINISTRATION: f"{name} has entered administration",
        EventType.CVA: f"{name} has entered a Company Voluntary Arrangement",
        EventType.OFFICER_DISQUALIFIED: f"An officer of {name} has been disqualified",
        EventType.PSC_NOTIFIED: f"New PSC notified for {name}: {person}",
        EventType.PSC_CEASED: f"PSC ceased for {name}",
        EventType.OFFICER_RESIGNED: f"Officer resigned from {name}: {person}",
        EventType.OFFICER_APPOINTED: f"New officer appointed to {name}",
        EventType.STATUS_CHANGE: f"{name} status changed to: {data.get('company_status') or 'unknown'}",
        EventType.ADDRESS_CHANGE: f"{name} registered office address changed",
        EventType.NAME_CHANGE: f"{name} changed its registered name",
        EventType.CHARGE_CREATED: f"New charge registered against {name}",
    }
    return summaries.get(event_type, f"Update received for {name}")


# ============================================
# ALERT STORE
# ============================================

class AlertStore:
    """Capped ring buffer of alerts, oldest evicted first"""

    def __init__(self, capacity: int = 10000):
        self.capacity = capacity
        self._alerts: Deque[Alert] = deque(maxlen=capacity)

    def append(self, alert: Alert) -> None:
        self._alerts.append(alert)

    def __len__(self) -> int:
        return len(self._alerts)

    def query(self, severity: Optional[Severity] = None, subject_key: Optional[str] = None,
              status: Optional[AlertStatus] = None, offset: int = 0, limit: int = 50) -> List[Alert]:
        """Filtered alerts, most recent first"""
        matching = [
            a for a in reversed(self._alerts)
            if (severity is None or a.severity == severity)
            and (subject_key is None or a.subject_key == subject_key)
            and (status is None or a.status == status)
        ]
        offset = max(offset, 0)
        return matching[offset:offset + max(limit, 0)]

    def counts(self) -> Dict[str, int]:
        counts = {s.value.lower(): 0 for s in Severity}
        for alert in self._alerts:
            counts[alert.severity.value.lower()] += 1
        counts['total'] = len(self._alerts)
        return counts

    def get(self, alert_id: str) -> Optional[Alert]:
        return next((a for a in self._alerts if a.id == alert_id), None)

    def acknowledge(self, alert_id: str, status: AlertStatus = AlertStatus.ACKNOWLEDGED) -> Optional[Alert]:
        alert = self.get(alert_id)
        if alert is not None:
            alert.status = status
        return alert


# ============================================
# DEFAULT TRANSPORT
# ============================================

def companies_house_transport(base_url: str, api_key: str,
                              client: Optional[httpx.AsyncClient] = None) -> Transport:
    """Newline-delimited JSON over a long-lived HTTP GET (basic auth ``key:``)"""

    @asynccontextmanager
    async def connect(stream: str) -> AsyncIterator[AsyncIterator[Event]]:
        owned = client is None
        http = client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
        try:
            async with http.stream('GET', f"{base_url.rstrip('/')}/{stream}",
                                   auth=(api_key, '')) as response:
                response.raise_for_status()

                async def events() -> AsyncIterator[Event]:
                    async for line in response.aiter_lines():
                        line = line.strip()
                        if not line:
                            # heartbeat
                            continue
                        try:
                            yield json.loads(line)
                        except json.JSONDecodeError:
                            logger.warning(f"⚠ {stream}: skipping malformed event line")

                yield events()
        finally:
            if owned:
                await http.aclose()

    return connect


# ============================================
# WATCHER
# ============================================

class ChangeStreamWatcher:
    """Subscribes to change streams and raises alerts for watchlisted companies"""

    def __init__(self, config: Optional[WatcherConfig] = None,
                 transport: Optional[Transport] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 store: Any = None,
                 api_key: Optional[str] = None,
                 audit: Any = None):
        """
        Args:
            config: Watcher settings (streams, backoff, capacity)
            transport: Stream connector; defaults to the Companies House API
            sleep: Backoff sleep, injectable for tests
            store: Optional persistence with load_watchlist/load_alerts/
                add_watch/remove_watch/save_alert/update_alert_status
            api_key: Stream key (defaults to the configured environment variable)
            audit: Optional AuditLogger for watchlist and alert status changes
        """
        self.config = config or WatcherConfig()
        self.api_key = api_key if api_key is not None else self.config.api_key
        self._transport = transport
        if self._transport is None and self.api_key:
            self._transport = companies_house_transport(self.config.base_url, self.api_key)
        self._sleep = sleep
        self.store = store
        self.audit = audit

        self.alerts = AlertStore(self.config.alert_capacity)
        self.watchlist: Dict[str, str] = {}
        self.disqualified_officers: Dict[str, Dict[str, Any]] = {}
        self.states: Dict[str, StreamStatus] = {s: StreamStatus(s) for s in self.config.streams}
        self._listeners: List[Listener] = []
        self._tasks: Dict[str, asyncio.Task] = {}
        self._writer: Optional[ThreadPoolExecutor] = None
        self._pending_writes: Set[asyncio.Future] = set()

        if self.store is not None:
            self.watchlist.update(self._call_store('load_watchlist') or {})
            for alert in self._call_store('load_alerts', self.alerts.capacity) or []:
                self.alerts.append(alert)

    @property
    def configured(self) -> bool:
        return self._transport is not None

    # ============================================
    # LIFECYCLE
    # ============================================

    async def start(self) -> None:
        """Open every configured stream (no-op without a stream key)"""
        if not self.configured:
            logger.info(f"Change-stream watcher disabled: {self.config.api_key_env} not set")
            return
        for stream in self.config.streams:
            if stream in self._tasks and not self._tasks[stream].done():
                continue
            self._tasks[stream] = asyncio.create_task(self._run_stream(stream), name=f"stream:{stream}")
        logger.info(f"✓ Watching {len(self._tasks)} change stream(s)")

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.flush()
        if self._writer is not None:
            self._writer.shutdown(wait=True)
            self._writer = None
        for stream in self.states:
            self._set_state(stream, StreamState.DISCONNECTED)
        logger.info("Change-stream watcher stopped")

    def _set_state(self, stream: str, state: StreamState) -> None:
        status = self.states.setdefault(stream, StreamStatus(stream))
        if status.state != state:
            status.state = state
            status.history.append(state)
            set_stream_connected(stream, state == StreamState.CONNECTED)

    async def _run_stream(self, stream: str) -> None:
        retrying = AsyncRetrying(
            wait=wait_fixed(self.config.reconnect_backoff_seconds),
            stop=stop_never,
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            before_sleep=lambda state: logger.warning(
                f"⚠ {stream} disconnected ({state.outcome.exception()}), "
                f"reconnecting in {self.config.reconnect_backoff_seconds}s"
            ),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._consume(stream)
        finally:
            self._set_state(stream, StreamState.DISCONNECTED)

    async def _consume(self, stream: str) -> None:
        status = self.states[stream]
        status.connect_attempts += 1
        self._set_state(stream, StreamState.CONNECTING)
        try:
            async with self._transport(stream) as events:
                self._set_state(stream, StreamState.CONNECTED)
                status.last_error = None
                logger.info(f"✓ Connected to {stream} stream")
                async for event in events:
                    self.handle_event(stream, event)
            raise StreamClosed(f"{stream} stream closed by server")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            status.last_error = f"{type(e).__name__}: {e}"
            self._set_state(stream, StreamState.DISCONNECTED)
            raise

    # ============================================
    # EVENT HANDLING
    # ============================================

    def handle_event(self, stream: str, event: Event) -> Optional[Alert]:
        """Process one stream event; returns the watchlist alert if one was raised"""
        status = self.states.setdefault(stream, StreamStatus(stream))
        status.events_received += 1
        status.last_event_at = datetime.now(timezone.utc).isoformat()

        subject_key = extract_subject_key(event)
        if subject_key:
            subject_key = subject_key.upper()
        alert = None
        if subject_key and subject_key in self.watchlist:
            event_type = classify_event(stream, event)
            alert = Alert(
                subject_key=subject_key,
                event_type=event_type,
                severity=severity_for(event_type),
                summary=summarize(event_type, event, self.watchlist[subject_key]),
                stream=stream,
                company_name=(event.get('data') or {}).get('company_name') or self.watchlist[subject_key],
                data=event,
            )
            self._save(alert)
            self._notify(alert)
            logger.info(f"Alert: {alert.event_type.value} for {subject_key} [{alert.severity.value}]")

        if stream == 'disqualified-officers':
            self._track_disqualified(event)
        elif stream == 'insolvency-cases' and alert is None:
            self._record_insolvency(subject_key, event)
        return alert

    def _track_disqualified(self, event: Event) -> None:
        data = event.get('data') or {}
        name = data.get('name')
        if not name:
            return
        self.disqualified_officers[str(name).lower()] = {
            'name': name,
            'companyNumber': data.get('company_number'),
            'disqualification': data.get('disqualification'),
            'dateOfBirth': data.get('date_of_birth'),
            'detectedAt': datetime.now(timezone.utc).isoformat(),
        }

    def _record_insolvency(self, subject_key: Optional[str], event: Event) -> None:
        data = event.get('data') or {}
        alert = Alert(
            subject_key=subject_key or '',
            event_type=classify_event('insolvency-cases', event),
            severity=Severity.HIGH,
            summary=f"{data.get('company_name') or 'Unknown'} insolvency event detected",
            stream='insolvency-cases',
            company_name=data.get('company_name'),
            data=event,
        )
        self._save(alert)

    def _save(self, alert: Alert) -> None:
        self.alerts.append(alert)
        record_alert(alert.severity.value)
        self._persist('save_alert', alert)

    def _notify(self, alert: Alert) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(alert)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("✗ Alert listener failed")

    def _persist(self, method: str, *args) -> None:
        """Write through to the store, on the worker thread when a loop is running"""
        if self.store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._call_store(method, *args)
            return
        if self._writer is None:
            # One worker keeps writes in call order
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="watchlist-store")
        future = loop.run_in_executor(self._writer, self._call_store, method, *args)
        self._pending_writes.add(future)
        future.add_done_callback(self._pending_writes.discard)

    def _call_store(self, method: str, *args) -> Any:
        try:
            return getattr(self.store, method)(*args)
        except Exception as e:
            logger.error(f"✗ Watchlist persistence ({method}) failed: {e}")
            return None

    async def flush(self) -> None:
        """Wait for queued store writes to finish"""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    # ============================================
    # PUBLIC API
    # ============================================

    def on_alert(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def add_to_watchlist(self, subject_key: str, name: str = '') -> None:
        key = subject_key.strip().upper()
        self.watchlist[key] = name
        self._persist('add_watch', key, name)
        if self.audit is not None:
            self.audit.log_watchlist_change("added", key, name)
        logger.info(f"Added {sanitize_for_logging(key, 20)} to watchlist (total: {len(self.watchlist)})")

    def remove_from_watchlist(self, subject_key: str) -> bool:
        key = subject_key.strip().upper()
        removed = self.watchlist.pop(key, None) is not None
        if removed:
            self._persist('remove_watch', key)
            if self.audit is not None:
                self.audit.log_watchlist_change("removed", key)
            logger.info(f"Removed {sanitize_for_logging(key, 20)} from watchlist (total: {len(self.watchlist)})")
        return removed

    def get_alerts(self, severity: Optional[Severity] = None, subject_key: Optional[str] = None,
                   status: Optional[AlertStatus] = None, offset: int = 0,
                   limit: Optional[int] = None) -> List[Alert]:
        return self.alerts.query(
            severity=severity, subject_key=subject_key, status=status, offset=offset,
            limit=self.config.default_page_size if limit is None else limit,
        )

    def get_alert_counts(self) -> Dict[str, int]:
        return self.alerts.counts()

    def acknowledge_alert(self, alert_id: str,
                          status: AlertStatus = AlertStatus.ACKNOWLEDGED) -> Optional[Alert]:
        alert = self.alerts.acknowledge(alert_id, status)
        if alert is not None:
            self._persist('update_alert_status', alert_id, status)
            if self.audit is not None:
                self.audit.log_alert_status(alert_id, status.value)
        return alert

    def check_disqualified_officer(self, name: str) -> Optional[Dict[str, Any]]:
        """Exact (case-insensitive) match first, then containment either way"""
        if not name or not name.strip():
            return None
        key = name.strip().lower()
        exact = self.disqualified_officers.get(key)
        if exact is not None:
            return exact
        for officer_name, officer in self.disqualified_officers.items():
            if key in officer_name or officer_name in key:
                return officer
        return None

    def get_watchlist_status(self) -> Dict[str, Any]:
        return {
            'configured': self.configured,
            'subscriptionStates': {s: st.to_dict() for s, st in self.states.items()},
            'watchlistSize': len(self.watchlist),
            'alertCount': len(self.alerts),
            'disqualifiedOfficersTracked': len(self.disqualified_officers),
        }
