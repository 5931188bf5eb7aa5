"""
Migration engine: moves datasources, folders and dashboards between Grafana instances.

A run goes through four phases:

1. fetch     - list every entity class from the source concurrently, then pull
               dashboard details with the bounded worker pool
2. transform - strip instance metadata and order folders parents first
3. write     - upsert datasources, then folders level by level, then dashboards;
               each class's pool drains before the next class starts
4. report    - every entity ends up created, updated, skipped or failed

A failed entity never stops its siblings. A failed listing only takes out its
own entity class. Credentials rejected by either instance abort the run.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from grafana_migrator.core.api_client import AuthError
from grafana_migrator.core.config import Config
from grafana_migrator.core.logger import LoggerMixin
from grafana_migrator.core.models import (
    ContentSnapshot,
    Dashboard,
    Datasource,
    EntityOutcome,
    Folder,
    MigrationSummary,
    Outcome,
)
from grafana_migrator.services.content_client import ContentClient
from grafana_migrator.services.resolver import CycleError, DependencyResolver, IdentifierMap
from grafana_migrator.services.sanitizer import (
    KEEP,
    sanitize_dashboard,
    sanitize_datasource,
    sanitize_folder,
)

# (result, outcome, detail); outcome is None for tasks that only produce data
TaskResult = Tuple[Any, Optional[Outcome], Optional[str]]


class MigrationEngine(LoggerMixin):
    """
    Export, import and migrate Grafana content with bounded concurrency.

    ``cancel()`` holds for every later run on the same engine. A cancellation
    caused by ``run_timeout_seconds`` is cleared when the next run starts.
    """

    def __init__(self, config: Config, logger: Optional[structlog.stdlib.BoundLogger] = None,
                 max_workers: Optional[int] = None, cancel_event: Optional[threading.Event] = None):
        self.config = config
        self.logger = logger or structlog.get_logger("migration_engine")
        self.max_workers = max_workers or config.max_workers
        self.cancel_event = cancel_event or threading.Event()

        self._deadline: Optional[float] = None
        self._abort_lock = threading.Lock()
        self._auth_error: Optional[AuthError] = None
        self._timed_out = False

    # ---------- run control ----------

    def cancel(self):
        """Stop dispatching new work. In-flight requests are allowed to finish."""
        self.logger.warning("Cancellation requested")
        self.cancel_event.set()

    def _start_run(self):
        with self._abort_lock:
            self._auth_error = None
            if self._timed_out:
                self._timed_out = False
                self.cancel_event.clear()
        timeout = self.config.run_timeout_seconds
        self._deadline = time.monotonic() + timeout if timeout else None

    def _abort(self, error: AuthError):
        with self._abort_lock:
            if self._auth_error is None:
                self._auth_error = error
                self.logger.error("Run aborted, credentials rejected", error=str(error))

    def _stop_reason(self) -> Optional[str]:
        """Why new tasks must not be dispatched, or None to keep going."""
        with self._abort_lock:
            if self._auth_error is not None:
                return f"aborted: {self._auth_error}"
        if self._deadline is not None and time.monotonic() >= self._deadline:
            with self._abort_lock:
                if not self.cancel_event.is_set():
                    self.logger.warning("Run timeout reached", timeout_seconds=self.config.run_timeout_seconds)
                    self._timed_out = True
                    self.cancel_event.set()
        if self.cancel_event.is_set():
            return "cancelled"
        return None

    # ---------- worker pool ----------

    def _run_pool(self, phase: str, entity_type: str, items: List[Any],
                  key_fn: Callable[[Any], str], task_fn: Callable[[Any], TaskResult],
                  record: Callable[[EntityOutcome], None]) -> List[Any]:
        """
        Run ``task_fn`` over ``items`` with at most ``max_workers`` in flight.

        Every item is handled end to end by one worker. Items picked up after
        cancellation or an auth failure are recorded as skipped. Returns the
        task results in input order, None where the task did not succeed.
        """
        results: List[Any] = [None] * len(items)

        def run(index: int, item: Any):
            key = key_fn(item)
            reason = self._stop_reason()
            if reason:
                record(self._outcome(phase, entity_type, key, Outcome.SKIPPED, reason))
                return

            try:
                result, outcome, detail = task_fn(item)
            except AuthError as e:
                self._abort(e)
                record(self._outcome(phase, entity_type, key, Outcome.FAILED, str(e)))
                return
            except Exception as e:
                record(self._outcome(phase, entity_type, key, Outcome.FAILED, f"{type(e).__name__}: {e}"))
                return

            results[index] = result
            if outcome is not None:
                record(self._outcome(phase, entity_type, key, outcome, detail))

        if not items:
            return results

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix=f"{phase}-{entity_type}") as executor:
            futures = [executor.submit(run, index, item) for index, item in enumerate(items)]
            for future in futures:
                future.result()

        return results

    def _outcome(self, phase: str, entity_type: str, key: str, outcome: Outcome,
                 detail: Optional[str] = None) -> EntityOutcome:
        self.log_entity_outcome(phase, entity_type, key, outcome.value, detail)
        return EntityOutcome(entity_type=entity_type, entity_key=key, phase=phase,
                             outcome=outcome, detail=detail)

    # ---------- fetch + transform ----------

    def export(self, source: ContentClient) -> ContentSnapshot:
        """
        Fetch and sanitize the full content of ``source``. Nothing is written.

        Raises:
            AuthError: the source rejected the credential
        """
        self._start_run()
        self.log_migration_start("export", source=source.host)
        snapshot = self._export(source, ContentSnapshot())
        self.log_migration_complete(
            "export",
            not snapshot.fetch_errors and not snapshot.entity_errors,
            len(snapshot.folders) + len(snapshot.dashboards) + len(snapshot.datasources),
            len(snapshot.fetch_errors) + len(snapshot.entity_errors),
        )
        return snapshot

    def _export(self, source: ContentClient, snapshot: ContentSnapshot) -> ContentSnapshot:
        """Fill ``snapshot`` from ``source``. Failures seen before an AuthError stay in it."""
        errors_lock = threading.Lock()

        def record(outcome: EntityOutcome):
            with errors_lock:
                snapshot.entity_errors.append(outcome)

        listers = {
            'datasource': source.list_datasources,
            'folder': source.list_folders,
            'dashboard': source.list_dashboards,
        }
        listed: Dict[str, List[Any]] = {}

        self.logger.info("Phase started", phase="fetch", source=source.host)
        with ThreadPoolExecutor(max_workers=min(len(listers), self.max_workers),
                                thread_name_prefix="fetch-list") as executor:
            futures = {entity_type: executor.submit(lister) for entity_type, lister in listers.items()}

            for entity_type, future in futures.items():
                try:
                    listed[entity_type] = future.result()
                except AuthError as e:
                    self._abort(e)
                    snapshot.fetch_errors[entity_type] = str(e)
                except Exception as e:
                    # Bulkhead: only this entity class is lost
                    snapshot.fetch_errors[entity_type] = f"{type(e).__name__}: {e}"
                    self.logger.error("Listing failed", entity_type=entity_type, error=str(e))

        if self._auth_error is not None:
            raise self._auth_error

        summaries: List[Dashboard] = listed.get('dashboard', [])
        details = self._run_pool(
            'fetch', 'dashboard', summaries,
            lambda dashboard: dashboard.uid,
            lambda dashboard: (source.get_dashboard_detail(dashboard.uid), None, None),
            record,
        )

        if self._auth_error is not None:
            raise self._auth_error

        self.logger.info("Phase started", phase="transform")
        snapshot.datasources = [sanitize_datasource(ds) for ds in listed.get('datasource', [])]
        snapshot.dashboards = [sanitize_dashboard(d, KEEP) for d in details if d is not None]

        folders = [sanitize_folder(folder) for folder in listed.get('folder', [])]
        try:
            snapshot.folders = DependencyResolver().order_folders(folders)
        except CycleError as e:
            snapshot.folders = folders
            self._fail_folder_classes(snapshot.fetch_errors, e)

        self.logger.info(
            "Snapshot ready",
            datasources=len(snapshot.datasources),
            folders=len(snapshot.folders),
            dashboards=len(snapshot.dashboards),
            fetch_errors=snapshot.fetch_errors,
        )
        return snapshot

    def _fail_folder_classes(self, failures: Dict[str, str], error: CycleError):
        self.logger.error("Folder hierarchy is corrupt", error=str(error))
        failures['folder'] = str(error)
        failures.setdefault('dashboard', f"not processed: {error}")

    # ---------- write ----------

    def migrate(self, source: ContentClient, destination: ContentClient) -> MigrationSummary:
        """Fetch everything from ``source`` and upsert it into ``destination``."""
        self._start_run()
        summary = MigrationSummary()
        self.log_migration_start("migrate", source=source.host, destination=destination.host)

        snapshot = ContentSnapshot()
        try:
            self._export(source, snapshot)
        except AuthError as e:
            summary.class_failures.update(snapshot.fetch_errors)
            for outcome in snapshot.entity_errors:
                summary.record(outcome)
            summary.aborted_reason = f"source credentials rejected: {e}"
            return self._finish("migrate", summary)

        return self._import(snapshot, destination, summary, "migrate")

    def import_snapshot(self, snapshot: ContentSnapshot, destination: ContentClient) -> MigrationSummary:
        """Upsert a snapshot already held in memory into ``destination``."""
        self._start_run()
        summary = MigrationSummary()
        self.log_migration_start("import", destination=destination.host)
        return self._import(snapshot, destination, summary, "import")

    def _import(self, snapshot: ContentSnapshot, destination: ContentClient,
                summary: MigrationSummary, operation: str) -> MigrationSummary:
        summary.class_failures.update(snapshot.fetch_errors)
        for outcome in snapshot.entity_errors:
            summary.record(outcome)

        resolver = DependencyResolver(IdentifierMap())
        levels: List[List[Folder]] = []
        if 'folder' not in summary.class_failures:
            try:
                levels = resolver.group_by_depth(snapshot.folders)
            except CycleError as e:
                self._fail_folder_classes(summary.class_failures, e)

        self._record_class_failures(snapshot, summary)

        if 'datasource' not in summary.class_failures:
            self._write_datasources(snapshot.datasources, destination, summary)

        if 'folder' not in summary.class_failures:
            self._write_folders(levels, destination, resolver, summary)

        if 'dashboard' not in summary.class_failures:
            self._write_dashboards(snapshot.dashboards, destination, resolver, summary)

        if self._auth_error is not None:
            summary.aborted_reason = f"credentials rejected: {self._auth_error}"

        return self._finish(operation, summary)

    def _record_class_failures(self, snapshot: ContentSnapshot, summary: MigrationSummary):
        """Mark every entity of a failed class as failed with the class's reason."""
        classes = (
            ('datasource', snapshot.datasources, lambda ds: ds.key),
            ('folder', snapshot.folders, lambda folder: folder.uid),
            ('dashboard', snapshot.dashboards, lambda dashboard: dashboard.uid),
        )
        for entity_type, entities, key_fn in classes:
            reason = summary.class_failures.get(entity_type)
            if reason is None:
                continue
            for entity in entities:
                summary.record(self._outcome('transform', entity_type, key_fn(entity), Outcome.FAILED, reason))

    def _finish(self, operation: str, summary: MigrationSummary) -> MigrationSummary:
        summary.finished_at = datetime.now()
        self.log_migration_complete(operation, summary.succeeded, len(summary.outcomes), len(summary.failed))
        return summary

    def _write_datasources(self, datasources: List[Datasource], destination: ContentClient,
                           summary: MigrationSummary):
        self.logger.info("Phase started", phase="write", entity_type="datasource", count=len(datasources))

        def write(datasource: Datasource) -> TaskResult:
            secrets = self.config.secrets_for(datasource.uid, datasource.name)
            notes = []
            if datasource.secure_fields and not secrets:
                notes.append(f"secrets not migrated: {', '.join(datasource.secure_fields)}")

            written, outcome = destination.upsert_datasource(sanitize_datasource(datasource, secrets))

            if datasource.uid and written.uid and written.uid != datasource.uid:
                summary.remapped_datasources[datasource.uid] = written.uid
                notes.append(f"destination uid is '{written.uid}'")

            return written, outcome, "; ".join(notes) or None

        self._run_pool('write', 'datasource', datasources, lambda ds: ds.key, write, summary.record)

    def _write_folders(self, levels: List[List[Folder]], destination: ContentClient,
                       resolver: DependencyResolver, summary: MigrationSummary):
        self.logger.info("Phase started", phase="write", entity_type="folder",
                         count=sum(len(level) for level in levels), levels=len(levels))

        def write(folder: Folder) -> TaskResult:
            parent_uid, resolved = resolver.resolve(folder.parent_uid)
            detail = None
            if folder.parent_uid and not resolved:
                detail = f"folder_fallback_to_root: parent '{folder.parent_uid}' has no destination folder"

            written, outcome = destination.upsert_folder(sanitize_folder(folder, parent_uid))
            resolver.record(folder.uid, written.uid)
            return written, outcome, detail

        # A level is dispatched only once every parent in the previous level is recorded
        for depth, level in enumerate(levels):
            self.logger.debug("Writing folder level", depth=depth, count=len(level))
            self._run_pool('write', 'folder', level, lambda folder: folder.uid, write, summary.record)

        self.logger.info("Folder write finished", mapped_folders=len(resolver.identifier_map))

    def _write_dashboards(self, dashboards: List[Dashboard], destination: ContentClient,
                          resolver: DependencyResolver, summary: MigrationSummary):
        self.logger.info("Phase started", phase="write", entity_type="dashboard", count=len(dashboards))

        def write(dashboard: Dashboard) -> TaskResult:
            folder_uid, resolved = resolver.resolve(dashboard.folder_uid)
            detail = None
            if dashboard.folder_uid and not resolved:
                detail = f"folder_fallback_to_root: folder '{dashboard.folder_uid}' has no destination folder"

            written, outcome = destination.upsert_dashboard(sanitize_dashboard(dashboard, folder_uid))
            return written, outcome, detail

        self._run_pool('write', 'dashboard', dashboards, lambda dashboard: dashboard.uid, write, summary.record)
