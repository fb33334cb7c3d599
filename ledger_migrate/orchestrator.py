"""Migration orchestrator - coordinates the complete migration process."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from .extractors.base import BaseExtractor, ExtractionResult
from .extractors.api_extractor import SourceAPIExtractor
from .loaders.base import TargetStore, StoreError
from .loaders.memory_store import InMemoryTargetStore
from .models.migration import (
    ErrorStage,
    MigrationConfig,
    MigrationRun,
    RunStatus,
)
from .models.record import EntityType, SourceRecord
from .models.schema import ENTITY_ORDER, get_schema
from .services.transformer import TransformEngine
from .services.resolver import EntityIndex, EntityResolver
from .services.upsert import UpsertExecutor
from .services.relationships import RelationshipGraphBuilder
from .services.verifier import MigrationVerifier, VerificationReport
from .services.reversal import ReversalExecutor, ReversalError, DeletionReport
from .storage import RunLock, RunLog

logger = logging.getLogger(__name__)


class MigrationAborted(Exception):
    """The run exceeded its wall-clock timeout."""


# entity type -> external ids to process (None means every record)
RecordFilter = Dict[EntityType, Optional[Set[str]]]


class MigrationOrchestrator:
    """
    Orchestrates the complete migration process.

    Phases:
    - Optional reset of the requested entity types
    - Concurrent extraction (bounded thread pool, shared rate limiter)
    - Per entity type, in dependency order: transform, resolve, upsert
    - Relationship repair
    - Verification and run logging
    """

    def __init__(
        self,
        config: MigrationConfig,
        store: TargetStore,
        extractor: Optional[BaseExtractor] = None,
        source_session=None,
        run_log: Optional[RunLog] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Migration configuration
            store: Target store client
            extractor: Source extractor (defaults to the source API extractor)
            source_session: requests session for the default extractor
            run_log: Audit log (defaults to one under config.output_dir)
        """
        self.config = config
        self.store = store
        self.extractor = extractor or SourceAPIExtractor(config.source, session=source_session)
        self.transformer = TransformEngine()
        self.resolver = EntityResolver(config.fallbacks)
        self.run_log = run_log or RunLog(config.output_dir)
        self.lock = RunLock(config.output_dir)

        # Runtime state
        self.run: Optional[MigrationRun] = None
        self._deadline: Optional[float] = None

    def run_migration(
        self,
        entity_types: Optional[List[EntityType]] = None,
        only: Optional[RecordFilter] = None
    ) -> MigrationRun:
        """
        Run the complete migration.

        Args:
            entity_types: Types to migrate (defaults to config.entity_types)
            only: Restrict processing to these external ids per type

        Returns:
            MigrationRun with results and statistics

        Raises:
            MigrationInProgressError: another run holds the lock
        """
        requested = set(entity_types or self.config.entity_types)
        if only is not None:
            requested &= set(only)
        ordered = [et for et in ENTITY_ORDER if et in requested]

        self.lock.acquire("migrate")
        self.run = run = MigrationRun(entity_types=ordered, dry_run=self.config.dry_run)
        if only is not None:
            run.metadata["retry_of"] = {
                et.value: sorted(ids) if ids is not None else None for et, ids in only.items()
            }
        fatal = False

        timeout = self.config.run_timeout_seconds
        self._deadline = time.monotonic() + timeout if timeout else None

        try:
            store = self.store
            if self.config.dry_run:
                logger.info("Dry run: writing to an in-memory snapshot of the target store")
                store = InMemoryTargetStore.from_store(self.store)

            if self.config.reset_first:
                logger.info("=== PHASE 0: RESET ===")
                deletion = ReversalExecutor(store).delete_all(ordered)
                run.metadata["reset"] = deletion.to_dict()

            logger.info("=== PHASE 1: EXTRACTION ===")
            fetched = self._run_extraction(run, ordered, only)

            logger.info("=== PHASE 2: RESOLVE AND UPSERT ===")
            migrated, id_maps = self._run_upserts(run, store, ordered, fetched)

            logger.info("=== PHASE 3: RELATIONSHIPS ===")
            self._check_deadline()
            self._run_linking(run, store, migrated, id_maps)

        except MigrationAborted as e:
            run.aborted = True
            run.abort_reason = str(e)
            logger.error(f"Migration aborted: {e}")

        except ReversalError as e:
            fatal = True
            run.abort_reason = f"Reset failed: {e}"
            run.metadata["reset"] = e.report.to_dict()
            logger.error(run.abort_reason)

        except Exception as e:
            fatal = True
            run.abort_reason = f"Migration failed: {e}"
            logger.exception(run.abort_reason)

        finally:
            try:
                if not fatal:
                    logger.info("=== PHASE 4: VERIFICATION ===")
                    self._run_verification(run, store)
            finally:
                run.status = self._final_status(run, fatal)
                run.completed_at = datetime.utcnow()
                self.run_log.append(run)
                self.lock.release()

        logger.info(f"=== MIGRATION {run.status.value.upper()} ===")
        return run

    def _remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def _expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def _check_deadline(self):
        if self._expired():
            raise MigrationAborted(
                f"Run timeout of {self.config.run_timeout_seconds}s exceeded"
            )

    def _run_extraction(
        self,
        run: MigrationRun,
        entity_types: List[EntityType],
        only: Optional[RecordFilter]
    ) -> Dict[EntityType, List[SourceRecord]]:
        """Fetch all requested types concurrently. Never writes to the store."""
        stop = threading.Event()
        executor = ThreadPoolExecutor(max_workers=max(1, self.config.source.max_workers))
        futures = {
            executor.submit(self.extractor.extract, et, None, stop): et for et in entity_types
        }

        done, not_done = wait(futures, timeout=self._remaining())
        if not_done:
            # running fetches stop before their next page request
            stop.set()
            for future in not_done:
                future.cancel()
            executor.shutdown(wait=False)
            raise MigrationAborted(
                f"Run timeout exceeded while fetching "
                f"{', '.join(sorted(futures[f].value for f in not_done))}"
            )
        executor.shutdown()

        fetched: Dict[EntityType, List[SourceRecord]] = {}
        for future, entity_type in futures.items():
            result: ExtractionResult = future.result()
            stats = run.stats_for(entity_type)
            stats.duplicates = result.duplicates_skipped

            if result.error is not None:
                stats.fetch_failed = True
                run.add_error(
                    entity_type,
                    ErrorStage.FETCH,
                    str(result.error),
                    retryable=result.error.retryable,
                )
                continue

            records = result.records
            wanted = (only or {}).get(entity_type)
            if wanted is not None:
                records = [r for r in records if r.external_id in wanted]
            stats.fetched = len(records)
            fetched[entity_type] = records

        return fetched

    def _run_upserts(
        self,
        run: MigrationRun,
        store: TargetStore,
        entity_types: List[EntityType],
        fetched: Dict[EntityType, List[SourceRecord]]
    ) -> Tuple[Dict[EntityType, List[SourceRecord]], Dict[Tuple[EntityType, str], str]]:
        """Transform, resolve and upsert each type in dependency order."""
        executor = UpsertExecutor(store)
        migrated: Dict[EntityType, List[SourceRecord]] = {}
        id_maps: Dict[Tuple[EntityType, str], str] = {}

        for entity_type in entity_types:
            if entity_type not in fetched:
                continue
            self._check_deadline()

            records = fetched[entity_type]
            stats = run.stats_for(entity_type)
            schema = get_schema(entity_type)

            own_index = EntityIndex.load(store, entity_type)
            parent_types = {fk.references for fk in schema.foreign_keys}
            parent_indexes = {et: EntityIndex.load(store, et) for et in parent_types}
            pending = {
                et: {r.external_id for r in fetched.get(et, [])}
                for et in parent_types
            }

            transformed = self.transformer.transform_all(records)
            for record, message in transformed["errors"]:
                stats.failed += 1
                run.add_error(entity_type, ErrorStage.UPSERT, message, record.external_id)

            entities = transformed["entities"]
            for entity in entities:
                resolution = self.resolver.adopt(entity, own_index)
                if resolution.row is not None:
                    stats.resolved += 1
                elif resolution.ambiguous:
                    run.add_error(
                        entity_type,
                        ErrorStage.RESOLVE,
                        f"Ambiguous name match against {resolution.candidates}",
                        entity.external_id,
                    )

                refs = self.resolver.resolve_references(entity.source, parent_indexes, pending)
                entity.attributes.update(refs.attributes)
                entity.references.update(refs.references)
                run.unresolved.extend(refs.unresolved)
                stats.unresolved += len(refs.unresolved)
                for ambiguous in refs.ambiguous:
                    run.add_error(
                        entity_type,
                        ErrorStage.RESOLVE,
                        f"Ambiguous {ambiguous.column} match for {ambiguous.value!r}: "
                        f"{ambiguous.candidates}",
                        entity.external_id,
                    )

            result = executor.upsert_batch(entities, should_stop=self._expired)
            stats.inserted += result.inserted
            stats.updated += result.updated
            stats.failed += result.failed
            run.errors.extend(result.errors)
            id_maps.update(result.ids)
            migrated[entity_type] = [
                r for r in records if (entity_type, r.external_id) in result.ids
            ]

            logger.info(
                f"{entity_type.value}: fetched {stats.fetched}, resolved {stats.resolved}, "
                f"upserted {stats.upserted}, failed {stats.failed}, unresolved {stats.unresolved}"
            )

            if result.stopped:
                self._check_deadline()

        return migrated, id_maps

    def _run_linking(
        self,
        run: MigrationRun,
        store: TargetStore,
        migrated: Dict[EntityType, List[SourceRecord]],
        id_maps: Dict[Tuple[EntityType, str], str]
    ):
        builder = RelationshipGraphBuilder(store, self.config.keyword_min_length)
        graph = builder.build(migrated, id_maps)
        report = builder.apply(graph)

        run.errors.extend(report.errors)
        run.unresolved.extend(report.unresolved)
        for unresolved in report.unresolved:
            if unresolved.entity_type in run.entity_stats:
                run.entity_stats[unresolved.entity_type].unresolved += 1

        run.metadata["links"] = {
            "rows_updated": report.rows_updated,
            "columns_written": report.columns_written,
            "unlinked": {et.value: len(ids) for et, ids in report.unlinked.items()},
        }

    def _run_verification(self, run: MigrationRun, store: TargetStore):
        try:
            report = MigrationVerifier(store).verify(run)
        except StoreError as e:
            run.metadata["verification_error"] = str(e)
            logger.error(f"Verification failed: {e}")
            return
        run.verification = report.to_dict()

    def _final_status(self, run: MigrationRun, fatal: bool) -> RunStatus:
        """
        failed: fatal error, or no requested entity type was fetched.
        partial: aborted, any failed type, error, unresolved reference or orphan.
        """
        if fatal:
            return RunStatus.FAILED

        succeeded = [et for et in run.entity_types if run.stats_for(et).succeeded]
        if run.entity_types and not succeeded:
            return RunStatus.FAILED

        has_orphans = bool(run.verification and run.verification.get("has_orphans"))
        if (
            run.aborted
            or len(succeeded) < len(run.entity_types)
            or run.errors
            or run.unresolved
            or has_orphans
        ):
            return RunStatus.PARTIAL

        return RunStatus.COMPLETED

    @staticmethod
    def failed_records(run: MigrationRun) -> RecordFilter:
        """
        Records to re-process for a retry of ``run``.

        Types that failed to fetch are retried whole.
        """
        targets: RecordFilter = {}
        for error in run.errors:
            if error.external_id is None:
                targets[error.entity_type] = None
            elif error.entity_type not in targets:
                targets[error.entity_type] = {error.external_id}
            elif targets[error.entity_type] is not None:
                targets[error.entity_type].add(error.external_id)
        return targets

    def verify(self, run: Optional[MigrationRun] = None) -> VerificationReport:
        """Verify the target store (read-only)."""
        return MigrationVerifier(self.store).verify(run)

    def reset(self, entity_types: Optional[List[EntityType]] = None) -> DeletionReport:
        """
        Delete migrated data in reverse dependency order.

        Raises:
            MigrationInProgressError: another run holds the lock
            ReversalError: rows remained afterwards
        """
        self.lock.acquire("reset")
        run = MigrationRun(command="reset", entity_types=list(entity_types or ENTITY_ORDER))
        try:
            report = ReversalExecutor(self.store).delete_all(entity_types)
            run.metadata["reset"] = report.to_dict()
            run.status = RunStatus.COMPLETED
            return report
        except ReversalError as e:
            run.metadata["reset"] = e.report.to_dict()
            run.abort_reason = str(e)
            run.status = RunStatus.FAILED
            raise
        finally:
            if run.status == RunStatus.IN_PROGRESS:
                run.status = RunStatus.FAILED
            run.completed_at = datetime.utcnow()
            self.run_log.append(run)
            self.lock.release()
