"""Execution engine: runs a template's steps against a source/target org pair."""

import logging
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from ..config import EngineSettings
from ..exceptions import (
    AuthError,
    ConfigurationError,
    DependencyUnresolved,
    PlatformError,
    RecordTransformError,
)
from ..extractors.query_extractor import ExtractionResult, QueryExtractor
from ..loaders.base import LoadedRecord, LoadItem, LoadResult
from ..loaders.platform_loader import PlatformLoader
from ..models.execution import (
    CreatedRecord,
    ExecutionContext,
    ExecutionProgress,
    ExecutionResult,
    ExecutionStatus,
    ExternalIdConfig,
    RecordError,
    RecordMapping,
    StepResult,
    StepStatus,
)
from ..models.template import EXTERNAL_ID_PLACEHOLDER, ETLStep, LoadOperation
from ..utils.soql import chunked, in_clause, validate_object_name
from .external_id import ExternalIdResolver, template_object_types
from .rollback import RollbackService
from .template_registry import resolve_execution_order, validate_template
from .transformer import TransformEngine, get_nested_value

logger = logging.getLogger(__name__)


class _RunState:
    """Mutable state of one run; never shared between runs."""

    def __init__(self, context: ExecutionContext, result: ExecutionResult):
        self.context = context
        self.result = result
        self.mapping: RecordMapping = result.record_mapping
        self.preexisting: Dict[str, str] = {}  # source id -> target id of records already in the target
        self.cancelled = False
        self.auth_error: Optional[AuthError] = None

    def resolve_lookup(self, source_id: str, lookup_object: Optional[str] = None) -> Optional[str]:
        return self.mapping.get(source_id) or self.preexisting.get(source_id)


class ExecutionEngine:
    """
    Runs migration templates.

    Handles:
    - Dependency ordering of steps (cycles rejected before any I/O)
    - External-id resolution once per run
    - Extraction, transformation and batched loading per step
    - Lookup resolution through the run's RecordMapping
    - Retry of transient load failures and partial-success policy
    - Cooperative cancellation between steps and batches
    - Optional rollback of inserted records when a run halts
    - Progress callbacks
    """

    def __init__(
        self,
        client,
        settings: Optional[EngineSettings] = None,
        transformer: Optional[TransformEngine] = None,
        rollback_service: Optional[RollbackService] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the engine.

        Args:
            client: PlatformClient used for both orgs
            settings: Engine settings (bulk threshold)
            transformer: Transform engine (a default one is created)
            rollback_service: Used when ``rollback_on_failure`` is set
            sleep: Sleep function for retry backoff (injected in tests)
        """
        self.client = client
        self.settings = settings or EngineSettings()
        self.transformer = transformer or TransformEngine()
        self.rollback_service = rollback_service or RollbackService(client)
        self.sleep = sleep

    def execute_template(self, context: ExecutionContext) -> ExecutionResult:
        """
        Run every step of a template.

        Args:
            context: Orgs, template, selected ids and run configuration

        Returns:
            ExecutionResult with step results and the final RecordMapping

        Raises:
            ConfigurationError: malformed template (before any I/O)
            SchemaError: an object type has no usable external-id field
        """
        template = context.template
        problems = validate_template(template) + self.transformer.unknown_functions(template)
        if problems:
            raise ConfigurationError(f"Invalid template '{template.id}': " + "; ".join(problems))
        order = resolve_execution_order(template)

        result = ExecutionResult(
            run_id=context.run_id,
            template_id=template.id,
            source_org_id=context.source_org_id,
            target_org_id=context.target_org_id,
        )
        result.started_at = datetime.utcnow()
        logger.info(
            f"Run {context.run_id}: template {template.id} from org {context.source_org_id} "
            f"to org {context.target_org_id} ({context.total_selected} selected record(s))"
        )

        result.external_ids = self._resolve_external_ids(context)
        state = _RunState(context, result)

        for index, step_name in enumerate(order):
            if context.should_stop:
                state.cancelled = True
                result.halted_at = step_name
                result.error = f"Run cancelled before step '{step_name}'"
                break

            step = template.get_step(step_name)
            step_result = self._execute_step(state, step, index, len(order))
            result.step_results.append(step_result)

            if state.auth_error is not None:
                result.requires_reconnect = state.auth_error.requires_reconnect
                result.halted_at = step.name
                result.error = f"Authentication failed during step '{step.name}': {state.auth_error.message}"
                logger.error(result.error)
                break

            if state.cancelled:
                result.halted_at = step.name
                result.error = f"Run cancelled during step '{step.name}'"
                break

            if step_result.status != StepStatus.SUCCESS and not context.config.tolerate_partial_success:
                result.halted_at = step.name
                result.error = (
                    f"Step '{step.name}' finished {step_result.status.value} "
                    f"({step_result.succeeded} succeeded, {step_result.failed} failed); "
                    f"partial success is not tolerated"
                )
                logger.warning(result.error)
                break

        result.cancelled = state.cancelled
        result.status = self._final_status(result, len(order))

        if (
            context.config.rollback_on_failure
            and result.halted_at
            and not result.cancelled
            and result.created_records
        ):
            rollback = self.rollback_service.rollback(context.target_org_id, result.created_records)
            result.rolled_back = rollback.deleted

        result.completed_at = datetime.utcnow()
        logger.info(
            f"Run {context.run_id} finished {result.status.value}: "
            f"{result.successful_records} succeeded, {result.failed_records} failed "
            f"in {result.duration_seconds:.1f}s"
        )
        return result

    def _resolve_external_ids(self, context: ExecutionContext) -> Dict[str, ExternalIdConfig]:
        """Caller-supplied configs win; anything missing is resolved now."""
        resolved = dict(context.external_ids or {})
        resolver = ExternalIdResolver(self.client)
        for object_type in template_object_types(context.template):
            if object_type not in resolved:
                resolved[object_type] = resolver.reconcile(
                    object_type, context.source_org_id, context.target_org_id
                )
        return resolved

    @staticmethod
    def _final_status(result: ExecutionResult, step_count: int) -> ExecutionStatus:
        all_succeeded = (
            len(result.step_results) == step_count
            and not result.halted_at
            and all(s.status == StepStatus.SUCCESS for s in result.step_results)
        )
        if all_succeeded:
            return ExecutionStatus.SUCCESS
        if result.successful_records > 0:
            return ExecutionStatus.PARTIAL
        return ExecutionStatus.FAILED

    @staticmethod
    def step_status(step: ETLStep, succeeded: int, failed: int) -> StepStatus:
        """Failed only when nothing succeeded on a required step."""
        if failed == 0:
            return StepStatus.SUCCESS
        if succeeded == 0 and not step.optional:
            return StepStatus.FAILED
        return StepStatus.PARTIAL

    def _progress(self, state: _RunState, index: int, total: int, step: ETLStep, phase: str,
                  step_result: Optional[StepResult] = None) -> None:
        callback = state.context.on_progress
        if callback is None:
            return
        progress = ExecutionProgress(
            run_id=state.context.run_id,
            step_index=index,
            total_steps=total,
            step_name=step.name,
            phase=phase,
        )
        if step_result is not None:
            progress.records_processed = step_result.succeeded + step_result.failed
            progress.records_succeeded = step_result.succeeded
            progress.records_failed = step_result.failed
        try:
            callback(progress)
        except Exception:
            logger.exception(f"Progress callback failed for step {step.name}")

    # Step execution

    def _execute_step(self, state: _RunState, step: ETLStep, index: int, total: int) -> StepResult:
        """
        Run one step.

        An AuthError halts the step: records that never got an outcome are
        failed with AUTH_ERROR, the partial StepResult is kept and the error
        is left on the run state for the caller.
        """
        step_result = StepResult(step_name=step.name, object_type=step.object_type)
        step_result.started_at = datetime.utcnow()
        logger.info(f"Step {index + 1}/{total}: {step.name} ({step.object_type})")

        try:
            reached_load = self._run_step(state, step, index, total, step_result)
        except AuthError as e:
            state.auth_error = e
            step_result.message = f"Authentication failed: {e.message}"
            return self._finish_step(step, step_result)

        result = self._finish_step(step, step_result)
        if reached_load:
            self._progress(state, index, total, step, "completed", result)
        return result

    def _run_step(self, state: _RunState, step: ETLStep, index: int, total: int, step_result: StepResult) -> bool:
        extract_ids = state.result.external_ids[step.extract.object_type]
        load_ids = state.result.external_ids[step.load.object_type]

        self._progress(state, index, total, step, "extract")
        extraction = self._extract(state, step, extract_ids, step_result)
        if extraction is None:
            return False

        records = extraction.records
        missing = extraction.missing_ids
        step_result.total = len(records) + len(missing)
        for source_id in missing:
            step_result.add_error(RecordError(
                source_id=source_id,
                message=f"Selected {step.extract.object_type} record was not returned by the source org",
                error_code="SOURCE_RECORD_NOT_FOUND",
                attempts=0,
            ))
        if missing:
            logger.warning(f"Step {step.name}: {len(missing)} selected record(s) not found in source org")
        if not records:
            step_result.message = "No records to migrate"
            return False

        self._progress(state, index, total, step, "transform", step_result)
        try:
            self._prefetch_lookups(state, step, records)
        except AuthError as e:
            self._fail_unloaded(step_result, [r.get("Id") for r in records], e)
            raise
        except PlatformError as e:
            logger.warning(f"Step {step.name}: could not look up existing target records: {e.message}")
        items = self._transform(state, step, extract_ids, records, step_result)

        if items and step.load.operation == LoadOperation.UPDATE:
            try:
                items = self._attach_target_ids(state, step, load_ids, items, step_result)
            except AuthError as e:
                self._fail_unloaded(step_result, [i.source_id for i in items], e)
                raise
            except PlatformError as e:
                for item in items:
                    step_result.add_error(RecordError(
                        source_id=item.source_id,
                        message=f"Could not match target records: {e.message}",
                        error_code=e.error_code or e.code,
                    ))
                items = []

        self._progress(state, index, total, step, "load", step_result)
        if items:
            self._load(state, step, load_ids, items, step_result)
        return True

    @staticmethod
    def _fail_unloaded(step_result: StepResult, source_ids: Sequence[Optional[str]], error: AuthError) -> None:
        for source_id in source_ids:
            step_result.add_error(RecordError(
                source_id=source_id,
                message=f"Not loaded: {error.message}",
                error_code=AuthError.code,
                attempts=0,
            ))

    def _finish_step(self, step: ETLStep, step_result: StepResult) -> StepResult:
        step_result.status = self.step_status(step, step_result.succeeded, step_result.failed)
        step_result.completed_at = datetime.utcnow()
        logger.info(
            f"Step {step.name} {step_result.status.value}: "
            f"{step_result.succeeded}/{step_result.total} succeeded, {step_result.failed} failed"
        )
        return step_result

    def _extract(
        self,
        state: _RunState,
        step: ETLStep,
        external_ids: ExternalIdConfig,
        step_result: StepResult,
    ) -> Optional[ExtractionResult]:
        context = state.context
        extractor = QueryExtractor(self.client, context.source_org_id)
        spec = step.extract
        try:
            if spec.parent_step:
                parent_ids = state.mapping.source_ids_for_step(spec.parent_step)
                return extractor.extract_children(spec, external_ids, parent_ids)
            selected = context.selected_ids.get(spec.object_type, [])
            return extractor.extract(spec, external_ids, selected)
        except AuthError as e:
            selected = context.selected_ids.get(spec.object_type, []) if not spec.parent_step else []
            step_result.total = len(selected) or 1
            self._fail_unloaded(step_result, list(selected) or [None], e)
            raise
        except (PlatformError, ConfigurationError) as e:
            selected = context.selected_ids.get(spec.object_type, []) if not spec.parent_step else []
            step_result.total = len(selected) or 1
            step_result.message = f"Extraction failed: {e.message}"
            code = getattr(e, "error_code", None) or e.code
            if selected:
                for source_id in selected:
                    step_result.add_error(RecordError(source_id=source_id, message=step_result.message, error_code=code))
            else:
                step_result.add_error(RecordError(source_id=None, message=step_result.message, error_code=code))
            logger.error(f"Step {step.name}: {step_result.message}")
            return None

    def _prefetch_lookups(self, state: _RunState, step: ETLStep, records: List[Dict]) -> None:
        """Find referenced records that already exist in the target org."""
        wanted: Dict[str, set] = {}
        source_field = state.result.external_ids[step.extract.object_type].source_field
        for mapping in step.transform.lookup_mappings:
            lookup_object = mapping.options.get("lookup_object")
            if not lookup_object:
                continue
            source_path = mapping.source_field.replace(EXTERNAL_ID_PLACEHOLDER, source_field)
            for record in records:
                referenced = get_nested_value(record, source_path)
                if referenced and referenced not in state.mapping and referenced not in state.preexisting:
                    wanted.setdefault(lookup_object, set()).add(str(referenced))

        for lookup_object, source_ids in wanted.items():
            found = self._find_in_target(state, lookup_object, sorted(source_ids))
            state.preexisting.update(found)
            logger.debug(f"{step.name}: {len(found)}/{len(source_ids)} {lookup_object} reference(s) pre-exist in target")

    def _find_in_target(self, state: _RunState, object_type: str, source_ids: Sequence[str]) -> Dict[str, str]:
        """source id -> target id, matching on the target external-id field."""
        target_field = state.result.external_ids[object_type].target_field
        validate_object_name(object_type)
        found: Dict[str, str] = {}
        for chunk in chunked(list(source_ids), 200):
            soql = f"SELECT Id, {target_field} FROM {object_type} WHERE {in_clause(target_field, chunk)}"
            for row in self.client.query(state.context.target_org_id, soql).records:
                if row.get(target_field):
                    found[row[target_field]] = row["Id"]
        return found

    def _transform(
        self,
        state: _RunState,
        step: ETLStep,
        external_ids: ExternalIdConfig,
        records: List[Dict],
        step_result: StepResult,
    ) -> List[LoadItem]:
        items = []
        for record in records:
            source_id = record.get("Id")
            try:
                payload = self.transformer.transform_record(record, step, external_ids, state.resolve_lookup)
            except (DependencyUnresolved, RecordTransformError) as e:
                step_result.add_error(RecordError(
                    source_id=source_id,
                    message=e.message,
                    error_code=e.code,
                    field=e.field,
                ))
                continue
            items.append(LoadItem(source_id=source_id, payload=payload))

        excluded = len(records) - len(items)
        if excluded:
            logger.warning(f"Step {step.name}: {excluded} record(s) excluded from load after transformation")
        return items

    def _attach_target_ids(
        self,
        state: _RunState,
        step: ETLStep,
        external_ids: ExternalIdConfig,
        items: List[LoadItem],
        step_result: StepResult,
    ) -> List[LoadItem]:
        """Updates need the target record Id; match on the external id."""
        existing = self._find_in_target(state, step.load.object_type, [i.source_id for i in items])
        ready = []
        for item in items:
            target_id = existing.get(item.source_id)
            if target_id is None:
                step_result.add_error(RecordError(
                    source_id=item.source_id,
                    message=f"No {step.load.object_type} in target org with {external_ids.target_field} = {item.source_id}",
                    error_code="TARGET_RECORD_NOT_FOUND",
                ))
                continue
            item.payload["Id"] = target_id
            ready.append(item)
        return ready

    def _load(
        self,
        state: _RunState,
        step: ETLStep,
        external_ids: ExternalIdConfig,
        items: List[LoadItem],
        step_result: StepResult,
    ) -> None:
        config = state.context.config
        batch_size = config.batch_size or step.load.batch_size
        bulk_threshold = config.bulk_threshold or self.settings.bulk_threshold
        use_bulk = step.load.use_bulk_api and len(items) >= bulk_threshold
        loader = PlatformLoader(
            self.client,
            state.context.target_org_id,
            step.load.object_type,
            step.load.operation,
            external_ids.target_field,
            use_bulk=use_bulk,
            retry_policy=config.retry_policy or step.load.retry,
            sleep=self.sleep,
        )
        batches = list(chunked(items, batch_size))
        workers = max(1, min(config.concurrency, getattr(self.client, "max_concurrency", 1)))
        logger.info(
            f"Step {step.name}: loading {len(items)} record(s) in {len(batches)} batch(es) "
            f"via {'bulk' if use_bulk else 'collections'} path, {workers} worker(s)"
        )

        if workers == 1:
            for position, batch in enumerate(batches):
                if state.context.should_stop:
                    self._mark_cancelled(state, batches[position:], step_result)
                    return
                try:
                    load_result = self._load_one(loader, batch)
                except AuthError as e:
                    self._fail_unloaded(step_result, [i.source_id for b in batches[position:] for i in b], e)
                    raise
                self._record_batch(state, step, load_result, step_result)
            return

        auth_error: Optional[AuthError] = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"load-{step.name}") as pool:
            in_flight = deque()
            position = 0
            while position < len(batches) or in_flight:
                while auth_error is None and position < len(batches) and len(in_flight) < workers:
                    if state.context.should_stop:
                        break
                    in_flight.append((pool.submit(self._load_one, loader, batches[position]), batches[position]))
                    position += 1
                if not in_flight:
                    break
                # Batches already in flight are drained even after an auth failure
                future, batch = in_flight.popleft()
                try:
                    load_result = future.result()
                except AuthError as e:
                    auth_error = auth_error or e
                    self._fail_unloaded(step_result, [i.source_id for i in batch], e)
                    continue
                self._record_batch(state, step, load_result, step_result)

        if auth_error is not None:
            self._fail_unloaded(step_result, [i.source_id for b in batches[position:] for i in b], auth_error)
            raise auth_error
        if position < len(batches):
            self._mark_cancelled(state, batches[position:], step_result)

    @staticmethod
    def _load_one(loader: PlatformLoader, batch: List[LoadItem]) -> LoadResult:
        try:
            return loader.load_batch(batch)
        except AuthError:
            raise
        except PlatformError as e:
            result = LoadResult(object_type=loader.object_type, total_attempted=len(batch))
            for item in batch:
                result.add(LoadedRecord(
                    source_id=item.source_id,
                    success=False,
                    error=e.message,
                    error_code=e.error_code,
                ))
            return result

    def _record_batch(self, state: _RunState, step: ETLStep, load_result: LoadResult, step_result: StepResult) -> None:
        for loaded in load_result.results:
            if not loaded.success:
                step_result.add_error(RecordError(
                    source_id=loaded.source_id,
                    message=loaded.error or "Load failed",
                    error_code=loaded.error_code or "LOAD_FAILED",
                    attempts=loaded.attempts,
                ))
                continue

            step_result.succeeded += 1
            if not loaded.target_id:
                logger.warning(f"Step {step.name}: {loaded.source_id} loaded but no target id was returned")
                continue
            if not state.mapping.add(loaded.source_id, loaded.target_id, step.name):
                logger.warning(
                    f"Step {step.name}: {loaded.source_id} already mapped to "
                    f"{state.mapping.get(loaded.source_id)}; keeping the first mapping"
                )
            if loaded.created:
                state.result.created_records.append(
                    CreatedRecord(step_name=step.name, object_type=step.load.object_type, target_id=loaded.target_id)
                )

    @staticmethod
    def _mark_cancelled(state: _RunState, remaining: List[List[LoadItem]], step_result: StepResult) -> None:
        state.cancelled = True
        for batch in remaining:
            for item in batch:
                step_result.add_error(RecordError(
                    source_id=item.source_id,
                    message="Not loaded: run cancelled",
                    error_code="CANCELLED",
                    attempts=0,
                ))

