"""
In-process cache engine.

Consumers talk to the engine with ``{"type": ..., "payload": {...}}`` messages
and receive ``{"type": ..., "payload": {...}}`` events.  Messages are handled
one at a time to completion; every event emitted while handling a message is
returned to the caller and also forwarded to the optional sink.

Requests                     Events
  init                         ready, statusChanged
  download / update            progress, statusChanged, downloadComplete / updateComplete
  clear                        clearComplete
  getStats                     stats
  getDashboardData             dashboardData
  getExtendedDashboardData     extendedDashboardData
  getCustomCardsData           customCardsData
  getRawData                   rawData
  (any)                        error
"""
from __future__ import annotations

import threading
from datetime import date
from typing import Any, Callable, Optional

from loguru import logger
from sqlalchemy.engine import Engine

from app.analytics.aggregates import AggregateMaintainer
from app.analytics.browse import get_raw_data, get_stats
from app.analytics.cards import CardCompiler, sort_cards
from app.analytics.dashboard import DashboardPlanner
from app.analytics.expressions import DATE_CEILING, DATE_FLOOR
from app.core.config import settings
from app.core.database import make_engine
from app.core.errors import (
    AggregateRebuildError,
    CacheError,
    EngineNotReadyError,
    IngestionError,
    QueryError,
)
from app.core.schema import init_schema
from app.etl.client import UpstreamClient, split_card_configs
from app.etl.sync import SyncOrchestrator, SyncParams, SyncStatus

Event = dict[str, Any]
EventSink = Callable[[Event], None]

REQUEST_TYPES = (
    "init",
    "download",
    "update",
    "clear",
    "getStats",
    "getDashboardData",
    "getExtendedDashboardData",
    "getCustomCardsData",
    "getRawData",
)

REQUEST_ALIASES = {
    "get_stats": "getStats",
    "get_dashboard_data": "getDashboardData",
    "get_extended_dashboard_data": "getExtendedDashboardData",
    "get_custom_cards_data": "getCustomCardsData",
    "get_raw_data": "getRawData",
}

FATAL_ERRORS = (IngestionError, AggregateRebuildError, EngineNotReadyError)


def canonical_type(message_type: Optional[str]) -> Optional[str]:
    if message_type in REQUEST_TYPES:
        return message_type
    return REQUEST_ALIASES.get(message_type or "")


def _compact(value: Any) -> str:
    return str(value or "").replace("-", "")


# an omitted bound means an open range
def _from_date(payload: dict) -> str:
    return _compact(payload.get("fromDate")) or DATE_FLOOR


def _to_date(payload: dict) -> str:
    return _compact(payload.get("toDate")) or DATE_CEILING


def _guid(payload: dict) -> str:
    guid = payload.get("guid")
    if not guid:
        raise QueryError("Payload is missing the company guid")
    return guid


class CacheEngine:
    """Owns one replica store and answers consumer messages against it."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        store: Optional[Engine] = None,
        client=None,
        sink: Optional[EventSink] = None,
        today: Callable[[], date] = date.today,
    ):
        self.database_url = database_url or settings.DATABASE_URL
        self.store = store
        self.client = client or UpstreamClient()
        self.sink = sink
        self.today = today
        self.status = SyncStatus.IDLE

        self.aggregates: Optional[AggregateMaintainer] = None
        self.planner: Optional[DashboardPlanner] = None
        self.cards: Optional[CardCompiler] = None
        self.sync: Optional[SyncOrchestrator] = None

        self._lock = threading.Lock()
        self._events: list[Event] = []
        self._handlers: dict[str, Callable[[dict], None]] = {
            "init": self._init,
            "download": self._download,
            "update": self._update,
            "clear": self._clear,
            "getStats": self._get_stats,
            "getDashboardData": self._get_dashboard_data,
            "getExtendedDashboardData": self._get_extended_dashboard_data,
            "getCustomCardsData": self._get_custom_cards_data,
            "getRawData": self._get_raw_data,
        }

    # ── protocol ──────────────────────────────────────────────────────────────

    @staticmethod
    def accepts(message_type: Optional[str]) -> bool:
        return canonical_type(message_type) is not None

    @property
    def is_ready(self) -> bool:
        return self.sync is not None

    def handle(self, message: dict) -> list[Event]:
        """Process one message to completion and return the events it produced."""
        message_type = canonical_type(message.get("type"))
        payload = message.get("payload") or {}
        with self._lock:
            self._events = []
            try:
                if message_type is None:
                    raise QueryError(f"Unknown message type {message.get('type')!r}")
                self._handlers[message_type](payload)
            except CacheError as exc:
                logger.error(f"{message.get('type')} failed: {exc}")
                self._emit("error", {"message": str(exc), "fatal": isinstance(exc, FATAL_ERRORS)})
            except Exception as exc:
                logger.exception(f"{message.get('type')} failed unexpectedly")
                self._emit("error", {"message": str(exc), "fatal": True})
            events, self._events = self._events, []
        return events

    def _emit(self, event_type: str, payload: dict) -> None:
        event = {"type": event_type, "payload": payload}
        self._events.append(event)
        if self.sink:
            self.sink(event)

    def _set_status(self, status: SyncStatus, message: str = "") -> None:
        self.status = status
        self._emit("statusChanged", {"status": status.value, "message": message})

    def _require_ready(self) -> None:
        if not self.is_ready:
            raise EngineNotReadyError("Store is not open; send init first")

    def snapshot(self) -> dict[str, Any]:
        return {"status": self.status.value, "ready": self.is_ready}

    def close(self) -> None:
        if self.store is not None:
            self.store.dispose()

    # ── handlers ──────────────────────────────────────────────────────────────

    def _init(self, payload: dict) -> None:
        self._set_status(SyncStatus.INITIALIZING)
        try:
            if self.store is None:
                self.store = make_engine(self.database_url)
            report = init_schema(self.store)
        except Exception as exc:
            self._set_status(SyncStatus.ERROR, str(exc))
            raise

        self.aggregates = AggregateMaintainer(self.store)
        self.planner = DashboardPlanner(self.store, self.aggregates)
        self.cards = CardCompiler(self.store)
        self.sync = SyncOrchestrator(
            self.store,
            self.client,
            aggregates=self.aggregates,
            on_progress=lambda current, total, message: self._emit(
                "progress", {"current": current, "total": total, "message": message}
            ),
            on_error=lambda message: self._emit("error", {"message": message, "fatal": False}),
            on_status=self._set_status,
            today=self.today,
        )
        self._set_status(SyncStatus.READY)
        self._emit(
            "ready",
            {
                "message": "Cache engine ready",
                "bootstrappedTenants": report.bootstrapped_tenants,
            },
        )

    def _download(self, payload: dict) -> None:
        self._require_ready()
        _guid(payload)
        params = SyncParams.from_payload(payload)
        result = self.sync.download(params)
        self._emit(
            "downloadComplete",
            {
                "totalRecords": result.total_records,
                "succeededChunks": result.succeeded_chunks,
                "failedChunks": result.failed_chunks,
                "message": f"Download complete: {result.total_records} vouchers synced",
            },
        )

    def _update(self, payload: dict) -> None:
        self._require_ready()
        _guid(payload)
        params = SyncParams.from_payload(payload)
        result = self.sync.update(params)
        self._emit(
            "updateComplete",
            {
                "totalRecords": result.total_records,
                "succeededChunks": result.succeeded_chunks,
                "failedChunks": result.failed_chunks,
                "message": f"Update complete: {result.total_records} vouchers",
            },
        )

    def _clear(self, payload: dict) -> None:
        self._require_ready()
        self.sync.clear(_guid(payload))
        self._emit("clearComplete", {"message": "Cache cleared"})

    def _get_stats(self, payload: dict) -> None:
        self._require_ready()
        self._emit("stats", get_stats(self.store, _guid(payload)))

    def _get_dashboard_data(self, payload: dict) -> None:
        self._require_ready()
        data = self.planner.get_dashboard_data(
            _guid(payload),
            _from_date(payload),
            _to_date(payload),
            payload.get("filters"),
        )
        self._emit("dashboardData", data)

    def _get_extended_dashboard_data(self, payload: dict) -> None:
        self._require_ready()
        data = self.planner.get_extended_dashboard_data(
            _guid(payload),
            _from_date(payload),
            _to_date(payload),
            payload.get("filters"),
        )
        self._emit("extendedDashboardData", data)

    def _get_custom_cards_data(self, payload: dict) -> None:
        self._require_ready()
        guid = _guid(payload)
        cards = payload.get("cards")
        card_settings = payload.get("settings") or {}
        tallyloc_id = payload.get("tallyloc_id", payload.get("tallylocId"))
        if cards is None and tallyloc_id and payload.get("token"):
            records = self.client.fetch_card_configs(
                tallyloc_id=tallyloc_id, co_guid=guid, token=payload["token"]
            )
            cards, card_settings = split_card_configs(records)

        cards = sort_cards(cards or [], card_settings)
        cards_data = self.cards.compute_all(
            cards,
            guid,
            _from_date(payload),
            _to_date(payload),
            filters=payload.get("filters"),
            settings=card_settings,
        )
        self._emit("customCardsData", {"cardsData": cards_data})

    def _get_raw_data(self, payload: dict) -> None:
        self._require_ready()
        self._emit(
            "rawData",
            get_raw_data(
                self.store,
                _guid(payload),
                limit=payload.get("limit"),
                offset=payload.get("offset") or 0,
            ),
        )
