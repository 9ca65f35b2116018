"""Persist normalized provider payments and system orders.

Redelivered webhooks and re-imported orders are recognised by
``(merchant_id, source, external_id)`` and skipped.
"""

from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ....exceptions import DatabaseError, wrap_exception
from ....storage.session import unit_of_work
from ....utils.logging import LogPerformance, get_logger
from ....utils.retry import DATABASE_RETRY, retry_sync
from ... import metrics
from ...domain.enums import TransactionSource
from ...domain.value_objects import (
    IngestResult,
    NormalizationResult,
    ProviderPaymentRecord,
    SystemOrderRecord,
)
from ...infrastructure.normalizer import TransactionNormalizer
from ...infrastructure.repository import TransactionRepository

logger = get_logger(__name__)


class IngestionService:
    """Normalize and store collaborator records, one unit of work per batch."""

    def __init__(self, session: Session, normalizer: TransactionNormalizer | None = None):
        self.session = session
        self.normalizer = normalizer or TransactionNormalizer()
        self.transactions = TransactionRepository(session)

    def ingest_provider(self, records: Iterable[ProviderPaymentRecord]) -> IngestResult:
        records = list(records)
        with LogPerformance("ingest_provider", logger, records=len(records)):
            return retry_sync(
                lambda: self._store(
                    TransactionSource.PROVIDER,
                    [self.normalizer.normalize_provider(r) for r in records],
                ),
                config=DATABASE_RETRY,
            )

    def ingest_system(self, records: Iterable[SystemOrderRecord]) -> IngestResult:
        records = list(records)
        with LogPerformance("ingest_system", logger, records=len(records)):
            return retry_sync(
                lambda: self._store(
                    TransactionSource.SYSTEM,
                    [self.normalizer.normalize_system(r) for r in records],
                ),
                config=DATABASE_RETRY,
            )

    def _store(self, source: TransactionSource, results: list[NormalizationResult]) -> IngestResult:
        """Store one batch. A concurrent writer inserting the same record
        surfaces as a retryable ``DatabaseError``; the retry re-normalizes
        and skips it as a duplicate."""
        result = IngestResult()
        seen: set[tuple[str, str]] = set()

        try:
            with unit_of_work(self.session):
                for normalized in results:
                    tx = normalized.transaction
                    key = (tx.merchant_id, tx.external_id)
                    if key in seen or self.transactions.find_by_external_id(
                        tx.merchant_id, source, tx.external_id
                    ):
                        result.duplicates += 1
                        continue
                    seen.add(key)

                    self.transactions.add(tx)
                    result.ingested += 1
                    result.transaction_ids.append(tx.id)
                    if not normalized.is_clean:
                        result.with_issues += 1
                        result.issues.extend(
                            f"{tx.external_id}: {issue.message}" for issue in normalized.issues
                        )
        except IntegrityError as e:
            raise wrap_exception(
                e,
                "Concurrent ingestion stored a record first",
                exception_class=DatabaseError,
                source=source.value,
            ) from e

        self._report(source, result)
        return result

    @staticmethod
    def _report(source: TransactionSource, result: IngestResult) -> None:
        metrics.record_ingestion(source.value, "ingested", result.ingested)
        metrics.record_ingestion(source.value, "duplicate", result.duplicates)
        metrics.record_ingestion(source.value, "with_issues", result.with_issues)
        logger.info("transactions_ingested", source=source.value, **result.to_dict())
