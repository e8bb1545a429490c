"""
Sync orchestrator: drives chunked downloads and incremental updates from the
upstream sales extract into the local replica.

  idle → initializing → downloading | updating → ready
                         └──────────────┴──────→ error   (any failure that ends the run)

A chunk whose fetch fails (or whose payload is unusable) is reported through
``on_error`` and skipped; the run carries on with the next chunk.  Failures of
the local store end the run.  Nothing is retried automatically.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from dateutil.rrule import DAILY, rrule
from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.analytics.aggregates import AggregateMaintainer
from app.analytics.expressions import live_vouchers, vouchers
from app.core.config import settings
from app.core.errors import (
    AggregateRebuildError,
    IngestionError,
    SyncInProgressError,
    TransportError,
)
from app.etl.importer import ingest
from app.models.aggregate import AggregateState, DailyAggregate, DimensionalAggregate
from app.models.sync import SyncMeta
from app.models.transaction import InventoryEntry, LedgerEntry, Voucher

ProgressCallback = Callable[[int, int, str], None]
ErrorCallback = Callable[[str], None]
StatusCallback = Callable[["SyncStatus", str], None]

TENANT_TABLES = (LedgerEntry, InventoryEntry, Voucher, DailyAggregate, DimensionalAggregate, AggregateState)


class SyncStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    DOWNLOADING = "downloading"
    UPDATING = "updating"
    READY = "ready"
    ERROR = "error"


@dataclass
class DateChunk:
    from_date: str
    to_date: str


def _compact(value: str) -> str:
    return str(value or "").replace("-", "").strip()


def chunk_dates(from_date: str, to_date: str) -> list[DateChunk]:
    """Split an inclusive YYYYMMDD range into consecutive single-day chunks."""
    start = datetime.strptime(_compact(from_date), "%Y%m%d")
    end = datetime.strptime(_compact(to_date), "%Y%m%d")
    if start > end:
        return []
    return [
        DateChunk(day.strftime("%Y%m%d"), day.strftime("%Y%m%d"))
        for day in rrule(DAILY, dtstart=start, until=end)
    ]


@dataclass
class SyncParams:
    tallyloc_id: Any
    company: str
    guid: str
    fromdate: str = ""
    todate: str = ""
    token: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "SyncParams":
        return cls(
            tallyloc_id=payload.get("tallyloc_id", payload.get("tallylocId", "")),
            company=payload.get("company", ""),
            guid=payload.get("guid", ""),
            fromdate=_compact(payload.get("fromdate", payload.get("fromDate", ""))),
            todate=_compact(payload.get("todate", payload.get("toDate", ""))),
            token=payload.get("token"),
        )


@dataclass
class SyncResult:
    total_records: int = 0
    succeeded_chunks: int = 0
    failed_chunks: int = 0
    errors: list[str] = field(default_factory=list)


class SyncOrchestrator:
    """Sole writer of the base tables and of sync_meta."""

    def __init__(
        self,
        engine: Engine,
        client,
        aggregates: Optional[AggregateMaintainer] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_status: Optional[StatusCallback] = None,
        today: Callable[[], date] = date.today,
    ):
        self.engine = engine
        self.client = client
        self.aggregates = aggregates or AggregateMaintainer(engine)
        self.on_progress = on_progress
        self.on_error = on_error
        self.on_status = on_status
        self.today = today
        self.status = SyncStatus.IDLE
        self._lock = threading.Lock()

    # ── status plumbing ───────────────────────────────────────────────────────

    def _set_status(self, status: SyncStatus, message: str = "") -> None:
        self.status = status
        logger.info(f"Sync status → {status.value}" + (f": {message}" if message else ""))
        if self.on_status:
            self.on_status(status, message)

    def _progress(self, current: int, total: int, message: str) -> None:
        if self.on_progress:
            self.on_progress(current, total, message)

    def _chunk_error(self, result: SyncResult, message: str) -> None:
        logger.warning(message)
        result.failed_chunks += 1
        result.errors.append(message)
        if self.on_error:
            self.on_error(message)

    # ── sync meta ─────────────────────────────────────────────────────────────

    def get_sync_meta(self) -> dict[str, str]:
        table = SyncMeta.__table__
        with self.engine.connect() as conn:
            rows = conn.execute(select(table.c.key, table.c.value)).all()
        return {key: value for key, value in rows}

    def _write_sync_meta(self, values: dict[str, str]) -> None:
        with Session(self.engine) as session:
            for key, value in values.items():
                session.merge(SyncMeta(key=key, value=value))
            session.commit()

    def max_alter_id(self, tenant_guid: str) -> int:
        with self.engine.connect() as conn:
            return int(
                conn.execute(
                    select(func.coalesce(func.max(vouchers.c.alter_id), 0)).where(
                        live_vouchers(tenant_guid)
                    )
                ).scalar_one()
            )

    # ── runs ──────────────────────────────────────────────────────────────────

    def _run_chunks(
        self, params: SyncParams, chunks: list[DateChunk], lastaltid: int, verb: str
    ) -> SyncResult:
        result = SyncResult()
        total = len(chunks)
        for index, chunk in enumerate(chunks, start=1):
            try:
                data = self.client.fetch_ledger_chunk(
                    tallyloc_id=params.tallyloc_id,
                    company=params.company,
                    guid=params.guid,
                    fromdate=chunk.from_date,
                    todate=chunk.to_date,
                    lastaltid=lastaltid,
                    token=params.token,
                )
            except TransportError as exc:
                self._chunk_error(result, f"Failed on chunk {chunk.from_date}: {exc}")
            else:
                batch = (data.get("vouchers") or []) if isinstance(data, dict) else None
                if not isinstance(batch, list):
                    self._chunk_error(result, f"Failed on chunk {chunk.from_date}: malformed payload")
                else:
                    # IngestionError propagates and ends the run
                    result.total_records += ingest(self.engine, batch, params.guid)
                    result.succeeded_chunks += 1
            self._progress(index, total, f"{verb} {chunk.from_date} → {chunk.to_date}")
        return result

    def _guarded(self, status: SyncStatus, run: Callable[[], SyncResult]) -> SyncResult:
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("A download or update is already running")
        try:
            self._set_status(SyncStatus.INITIALIZING)
            self._set_status(status)
            result = run()
            self._set_status(SyncStatus.READY)
            return result
        except (IngestionError, AggregateRebuildError) as exc:
            self._set_status(SyncStatus.ERROR, str(exc))
            raise
        except Exception as exc:
            logger.exception(f"Sync run ({status.value}) failed unexpectedly")
            self._set_status(SyncStatus.ERROR, str(exc))
            raise
        finally:
            self._lock.release()

    def download(self, params: SyncParams) -> SyncResult:
        """Full download of ``[fromdate, todate]`` for one tenant."""

        def run() -> SyncResult:
            chunks = chunk_dates(params.fromdate, params.todate)
            logger.info(f"Starting download for {params.guid}: {len(chunks)} chunks")
            result = self._run_chunks(params, chunks, 0, "Fetching")
            self._write_sync_meta(
                {
                    "last_sync_time": datetime.now(timezone.utc).isoformat(),
                    "last_sync_guid": params.guid,
                    "last_sync_from": params.fromdate,
                    "last_sync_to": params.todate,
                }
            )
            self.aggregates.rebuild(params.guid)
            logger.info(
                f"Download complete for {params.guid}: {result.total_records} vouchers, "
                f"{result.failed_chunks} failed chunk(s)"
            )
            return result

        return self._guarded(SyncStatus.DOWNLOADING, run)

    def update(self, params: SyncParams) -> SyncResult:
        """Incremental sync from the last download start up to today."""

        def run() -> SyncResult:
            lastaltid = self.max_alter_id(params.guid)
            fromdate = self.get_sync_meta().get("last_sync_from") or settings.DEFAULT_SYNC_FROM
            todate = self.today().strftime("%Y%m%d")
            chunks = chunk_dates(fromdate, todate)
            logger.info(f"Fetching updates for {params.guid} since alterid {lastaltid}")
            result = self._run_chunks(params, chunks, lastaltid, "Updating")
            self._write_sync_meta(
                {
                    "last_sync_time": datetime.now(timezone.utc).isoformat(),
                    "last_sync_to": todate,
                }
            )
            self.aggregates.rebuild(params.guid)
            logger.info(f"Update complete for {params.guid}: {result.total_records} vouchers")
            return result

        return self._guarded(SyncStatus.UPDATING, run)

    def clear(self, tenant_guid: str) -> None:
        """Remove every row of one tenant. sync_meta is global and is wiped too."""
        with self._lock:
            with self.engine.begin() as conn:
                for model in TENANT_TABLES:
                    table = model.__table__
                    conn.execute(delete(table).where(table.c.tenant_guid == tenant_guid))
                conn.execute(delete(SyncMeta.__table__))
        logger.info(f"Cleared cache for {tenant_guid}")
