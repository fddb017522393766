"""
Historical backfill over a date range

The range is walked in fixed-size windows, one request at a time. When the
vendor rejects a window because it starts before the earliest date it serves,
the window is retried from that floor and a warning is recorded. Rate-limited
windows are skipped with a warning so the rest of the range still imports.

Each activity is imported in its own transaction: a bad activity is counted as
failed and the batch carries on.

Every run is tracked as a BackfillRequest row. A user runs at most one
backfill per provider at a time; a claim older than STALE_CLAIM_AFTER is
assumed to belong to a crashed run and no longer blocks.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ridelog.ingestion.models import COMPLETED, FAILED, IN_PROGRESS, PARTIAL, BackfillRequest
from ridelog.ingestion.normalize import NormalizedRide
from ridelog.ingestion.pipeline import external_id_exists, ingest_ride
from ridelog.shared.database import transaction
from ridelog.shared.errors import (
    BackfillInProgress,
    ConstraintViolation,
    MalformedPayload,
    VendorRateLimited,
    VendorWindowRejected,
)

logger = logging.getLogger(__name__)

YEAR_TO_DATE = "ytd"
STALE_CLAIM_AFTER = timedelta(minutes=60)

FetchWindow = Callable[[datetime, datetime], Iterable[Dict[str, Any]]]
Normalizer = Callable[[Dict[str, Any]], Optional[NormalizedRide]]
AfterImport = Callable[[str, NormalizedRide], None]


@dataclass
class BackfillResult:
    status: str = COMPLETED
    imported: int = 0
    skipped: int = 0
    total_found: int = 0
    failed: int = 0
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "imported": self.imported,
            "skipped": self.skipped,
            "totalFound": self.total_found,
            "failed": self.failed,
            "warnings": list(self.warnings),
        }


def backfill_range(days: int, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    end = now or datetime.now(timezone.utc)
    return end - timedelta(days=days), end


def year_range(year: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Jan 1 to the end of `year` (or to now for "ytd" and the current year)."""
    now = now or datetime.now(timezone.utc)
    if year == YEAR_TO_DATE:
        return datetime(now.year, 1, 1, tzinfo=timezone.utc), now
    start = datetime(int(year), 1, 1, tzinfo=timezone.utc)
    return start, min(datetime(int(year) + 1, 1, 1, tzinfo=timezone.utc), now)


def backfill_scope(days: Optional[int] = None, year: Optional[str] = None) -> str:
    """Key a backfill request is tracked under."""
    if year:
        return str(year)
    return f"{days}d"


def ceil_to_second(moment: datetime) -> datetime:
    if moment.microsecond:
        return moment.replace(microsecond=0) + timedelta(seconds=1)
    return moment


def _fmt(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _as_utc(moment: datetime) -> datetime:
    # SQLite hands back naive values for timezone-aware columns
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _running_claim(db: Session, user_id: str, provider: str, now: datetime) -> Optional[BackfillRequest]:
    running = (
        db.query(BackfillRequest)
        .filter(
            BackfillRequest.user_id == user_id,
            BackfillRequest.provider == provider,
            BackfillRequest.status == IN_PROGRESS,
        )
        .all()
    )
    for row in running:
        if row.started_at is not None and _as_utc(row.started_at) > now - STALE_CLAIM_AFTER:
            return row
    return None


def start_backfill(
    session_factory: sessionmaker,
    user_id: str,
    provider: str,
    scope: str,
    now: Optional[datetime] = None,
) -> str:
    """
    Claim a backfill for (user, provider) and mark its scope in progress.

    Raises:
        BackfillInProgress: another backfill for this provider is still running
        ConstraintViolation: this calendar year was already imported
    """
    now = now or datetime.now(timezone.utc)
    try:
        with transaction(session_factory) as db:
            running = _running_claim(db, user_id, provider, now)
            if running is not None:
                raise BackfillInProgress(
                    f"A {provider} backfill ({running.year}) is already running for this account"
                )

            row = (
                db.query(BackfillRequest)
                .filter(
                    BackfillRequest.user_id == user_id,
                    BackfillRequest.provider == provider,
                    BackfillRequest.year == scope,
                )
                .first()
            )
            if row is not None and row.status == COMPLETED and scope.isdigit():
                raise ConstraintViolation(f"{scope} has already been imported from {provider}")
            if row is None:
                row = BackfillRequest(user_id=user_id, provider=provider, year=scope)
                db.add(row)

            row.status = IN_PROGRESS
            row.started_at = now
            row.completed_at = None
            row.rides_found = None
            db.flush()
            request_id = row.id
    except IntegrityError:
        # Another request inserted the same scope between the read and the insert
        raise BackfillInProgress(f"A {provider} backfill for {scope} is already running for this account")

    logger.info(f"Claimed {provider} backfill {scope} for user {user_id} ({request_id})")
    return request_id


def finish_backfill(
    session_factory: sessionmaker,
    request_id: str,
    status: str,
    rides_found: Optional[int] = None,
    backfilled_up_to: Optional[datetime] = None,
) -> None:
    now = datetime.now(timezone.utc)
    try:
        with transaction(session_factory) as db:
            row = db.query(BackfillRequest).filter(BackfillRequest.id == request_id).first()
            if row is None:
                logger.warning(f"Backfill request {request_id} vanished before it could be closed")
                return
            row.status = status
            if rides_found is not None:
                row.rides_found = rides_found
            if backfilled_up_to is not None:
                row.backfilled_up_to = backfilled_up_to
            if status != IN_PROGRESS:
                row.completed_at = now
    except SQLAlchemyError as e:
        logger.error(f"Could not record {status} for backfill request {request_id}: {e}", exc_info=True)


def tracked_backfill(
    session_factory: sessionmaker,
    user_id: str,
    provider: str,
    scope: str,
    end: datetime,
    run: Callable[[], BackfillResult],
) -> BackfillResult:
    """
    Run a backfill under a BackfillRequest claim. A claim held by another run
    is reported as an in-progress result rather than an error.
    """
    try:
        request_id = start_backfill(session_factory, user_id, provider, scope)
    except BackfillInProgress as e:
        return BackfillResult(status=IN_PROGRESS, warnings=[e.message])

    try:
        result = run()
    except Exception:
        finish_backfill(session_factory, request_id, FAILED)
        raise

    finish_backfill(session_factory, request_id, result.status, result.imported, end)
    return result


def list_backfill_requests(db: Session, user_id: str, provider: Optional[str] = None) -> List[BackfillRequest]:
    query = db.query(BackfillRequest).filter(BackfillRequest.user_id == user_id)
    if provider:
        query = query.filter(BackfillRequest.provider == provider)
    return query.order_by(BackfillRequest.updated_at.desc(), BackfillRequest.created_at.desc()).all()


def run_backfill(
    session_factory: sessionmaker,
    user_id: str,
    provider: str,
    fetch_window: FetchWindow,
    normalize: Normalizer,
    start: datetime,
    end: datetime,
    chunk: timedelta,
    after_import: Optional[AfterImport] = None,
) -> BackfillResult:
    result = BackfillResult()
    window_start = start
    windows = 0

    logger.info(f"Starting {provider} backfill for user {user_id}: {_fmt(start)} to {_fmt(end)}")

    while window_start < end:
        window_end = min(window_start + chunk, end)
        try:
            activities = list(fetch_window(window_start, window_end))
        except VendorWindowRejected as e:
            if e.floor is not None and e.floor > window_start:
                floor = ceil_to_second(e.floor)
                if floor >= end:
                    result.warnings.append(
                        f"{provider} only has data from {_fmt(floor)}, after the requested range"
                    )
                    break
                result.warnings.append(
                    f"{provider} rejected start {_fmt(window_start)}, retried from its earliest "
                    f"available date {_fmt(floor)}"
                )
                logger.warning(f"{provider} backfill for user {user_id} moved window start to {_fmt(floor)}")
                window_start = floor
                continue
            result.warnings.append(f"{provider} rejected window {_fmt(window_start)} to {_fmt(window_end)}: {e.message}")
            result.status = PARTIAL
            window_start = window_end
            continue
        except VendorRateLimited as e:
            result.warnings.append(
                f"{provider} rate limited window {_fmt(window_start)} to {_fmt(window_end)}: {e.message}"
            )
            result.status = PARTIAL
            logger.warning(f"{provider} backfill for user {user_id} rate limited, skipping window")
            window_start = window_end
            continue
        except BackfillInProgress as e:
            logger.info(f"{provider} backfill for user {user_id} already in progress: {e.message}")
            result.status = IN_PROGRESS
            return result

        windows += 1
        for payload in activities:
            _import_activity(session_factory, user_id, provider, normalize, payload, result, after_import)
        window_start = window_end

    if result.failed and result.status == COMPLETED:
        result.status = PARTIAL

    logger.info(
        f"{provider} backfill for user {user_id} finished over {windows} window(s): "
        f"{result.imported} imported, {result.skipped} skipped, {result.failed} failed, "
        f"{result.total_found} found"
    )
    return result


def _import_activity(
    session_factory: sessionmaker,
    user_id: str,
    provider: str,
    normalize: Normalizer,
    payload: Dict[str, Any],
    result: BackfillResult,
    after_import: Optional[AfterImport] = None,
) -> None:
    try:
        normalized = normalize(payload)
    except MalformedPayload as e:
        result.failed += 1
        logger.warning(f"Dropping malformed {provider} activity during backfill: {e.message}")
        return
    except Exception as e:
        result.failed += 1
        logger.error(f"Could not read {provider} activity during backfill: {e}", exc_info=True)
        return
    if normalized is None:
        return

    result.total_found += 1
    try:
        with transaction(session_factory) as db:
            if external_id_exists(db, provider, normalized.external_id):
                result.skipped += 1
                return
            ride_id = ingest_ride(db, user_id, normalized).ride.id
        result.imported += 1
    except IntegrityError:
        # Inserted concurrently by a webhook between the check and the insert
        result.skipped += 1
        return
    except Exception as e:
        result.failed += 1
        logger.error(
            f"Failed to import {provider} activity {normalized.external_id} for user {user_id}: {e}",
            exc_info=True
        )
        return

    if after_import is not None:
        after_import(ride_id, normalized)
