from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from property_tracker.changes import detect
from property_tracker.config import Settings, get_settings
from property_tracker.errors import (
    BindingConflict,
    InvalidAddress,
    InvalidObservation,
    SchemaInvariantViolation,
    TrackerError,
    TransientStoreConflict,
)
from property_tracker.fields import coerce_fields
from property_tracker.history import HistoryWriter
from property_tracker.identity import PropertyResolver, SourceBinder
from property_tracker.ledger import ScrapeRunLedger
from property_tracker.models import BatchReport, IngestResult, Observation
from property_tracker.normalize import normalize_address_fields, normalize_text, normalize_timestamp
from property_tracker.retry import RetryConfig, run_with_retry
from property_tracker.storage import SQLiteStore

logger = logging.getLogger(__name__)


class IngestEngine:
    """Single entry point for scraped observations.

    resolve -> bind -> detect -> apply run inside one store transaction and the
    whole unit is retried on transient store conflicts.
    """

    def __init__(
        self,
        store: SQLiteStore,
        *,
        retry_config: Optional[RetryConfig] = None,
        settings: Optional[Settings] = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.retry_config = retry_config or RetryConfig.from_settings(self.settings)
        self.sleep_fn = sleep_fn
        self.resolver = PropertyResolver(store)
        self.binder = SourceBinder(store)
        self.writer = HistoryWriter(store)

    def ingest_observation(
        self,
        source_name: str,
        source_listing_id: str,
        address_fields: Mapping[str, Any],
        tracked_fields: Mapping[str, Any],
        observed_at: Any,
        page_url: Optional[str] = None,
        raw_payload: Optional[Dict[str, Any]] = None,
        geocode: Optional[tuple] = None,
    ) -> IngestResult:
        source = normalize_text(source_name).lower()
        listing_id = normalize_text(source_listing_id)
        if not source or not listing_id:
            raise InvalidObservation("source_name and source_listing_id are required")
        try:
            when = normalize_timestamp(observed_at)
        except (TypeError, ValueError) as exc:
            raise InvalidObservation(f"bad observed_at {observed_at!r}: {exc}") from exc
        try:
            fields = coerce_fields(tracked_fields or {}, strict=self.settings.strict_fields)
        except KeyError as exc:
            raise InvalidObservation(f"unknown tracked field {exc.args[0]!r}") from exc
        except ValueError as exc:
            raise InvalidObservation(str(exc)) from exc

        log_extra = {"source_name": source, "source_listing_id": listing_id, "observed_at": when}
        try:
            address = normalize_address_fields(address_fields or {})
        except InvalidAddress as exc:
            logger.warning("rejected observation: %s", exc, extra=log_extra)
            raise

        held: Dict[str, BindingConflict] = {}

        def _unit_of_work() -> IngestResult:
            held.clear()
            with self.store.transaction():
                property_id, created = self.resolver.resolve_or_create(address, when, geocode)
                try:
                    self.binder.bind_source(property_id, source, listing_id, when, page_url)
                except BindingConflict as exc:
                    # Held in the same transaction; the existing binding stays untouched.
                    self.store.hold_binding_conflict(
                        source_name=exc.source_name,
                        source_listing_id=exc.source_listing_id,
                        bound_property_id=exc.bound_property_id,
                        incoming_property_id=exc.incoming_property_id,
                        observed_at=when,
                        page_url=page_url,
                        raw_payload=raw_payload,
                    )
                    held["conflict"] = exc
                    return IngestResult(property_id=property_id, created=created)
                current = self.resolver.current_state(property_id)
                deltas = detect(property_id, current, fields)
                commit = self.writer.apply(
                    property_id, when, deltas, observed=fields, source_name=source
                )
            return IngestResult(
                property_id=property_id,
                created=created,
                fields_changed=commit.fields_changed,
                late_fields=commit.late_fields,
            )

        try:
            result = run_with_retry(_unit_of_work, self.retry_config, sleep_fn=self.sleep_fn)
        except TransientStoreConflict as exc:
            logger.error(
                "giving up on observation after %d attempts: %s",
                exc.attempts,
                exc,
                extra=dict(log_extra, attempts=exc.attempts),
            )
            raise
        except SchemaInvariantViolation as exc:
            self._halt(exc, log_extra)
            raise

        conflict = held.get("conflict")
        if conflict is not None:
            logger.error(
                "binding conflict held for reconciliation: %s",
                conflict,
                extra=dict(log_extra, property_id=conflict.bound_property_id),
            )
            raise conflict

        logger.info(
            "ingested %s:%s -> property %s",
            source,
            listing_id,
            result.property_id,
            extra=dict(
                log_extra,
                property_id=result.property_id,
                created=result.created,
                fields_changed=result.fields_changed,
                late_fields=result.late_fields,
            ),
        )
        return result

    def _halt(self, exc: SchemaInvariantViolation, log_extra: Dict[str, Any]) -> None:
        if exc.property_id is None:
            logger.critical("schema invariant violated: %s", exc, extra=log_extra)
            return
        newly_halted = self.store.halt_property(property_id=exc.property_id, reason=str(exc))
        if newly_halted:
            logger.critical(
                "halting ingestion for property %s: %s",
                exc.property_id,
                exc,
                extra=dict(log_extra, property_id=exc.property_id),
            )
        else:
            logger.error(
                "observation skipped, property %s is halted",
                exc.property_id,
                extra=dict(log_extra, property_id=exc.property_id),
            )

    def ingest(self, observation: Observation) -> IngestResult:
        return self.ingest_observation(
            observation.source_name,
            observation.source_listing_id,
            observation.address_fields,
            observation.tracked_fields,
            observation.observed_at,
            page_url=observation.page_url,
            raw_payload=observation.raw_payload,
            geocode=observation.geocode,
        )

    def ingest_batch(self, observations: Iterable[Observation]) -> BatchReport:
        """Ingest each observation on its own; one failure never undoes another."""

        report = BatchReport()
        for index, observation in enumerate(observations):
            try:
                report.results.append(self.ingest(observation))
            except TrackerError as exc:
                report.failures.append(
                    {
                        "index": index,
                        "source_name": observation.source_name,
                        "source_listing_id": observation.source_listing_id,
                        "error": type(exc).__name__,
                        "message": str(exc),
                        "retryable": bool(exc.retryable),
                    }
                )
            except Exception as exc:
                logger.exception(
                    "unexpected error ingesting %s:%s",
                    observation.source_name,
                    observation.source_listing_id,
                    extra={"source_name": observation.source_name, "error": type(exc).__name__},
                )
                report.failures.append(
                    {
                        "index": index,
                        "source_name": observation.source_name,
                        "source_listing_id": observation.source_listing_id,
                        "error": type(exc).__name__,
                        "message": str(exc),
                        "retryable": False,
                    }
                )
        return report

    def ingest_page(
        self,
        ledger: ScrapeRunLedger,
        run_id: int,
        page_number: int,
        page_url: str,
        observations: Iterable[Observation],
    ) -> BatchReport:
        """Ingest one scraped page and record its outcome in the run ledger.

        The page counts as successful only when nothing on it needs redelivery.
        """

        report = self.ingest_batch(observations)
        ok = report.retryable_failures == 0
        ledger.record_page(run_id, page_number, page_url, ok, report.ingested)
        logger.info(
            "page %s of run %s: %s ingested, %s failed",
            page_number,
            run_id,
            report.ingested,
            len(report.failures),
            extra={"run_id": int(run_id), "page_number": int(page_number)},
        )
        return report
