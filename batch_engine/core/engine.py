"""
Batch Execution Engine - Bounded parallel execution with pacing and retries

Runs a declared batch of independent tasks:
- exactly `concurrency` long-lived workers pull from a priority queue
- every dispatch passes a single shared rate-limit gate
- failed or timed-out attempts are retried with jittered backoff
- every finalized task feeds the performance tracker, the cost ledger and
  the progress channel
- individual task failures never abort the batch; they are captured into
  the task's BatchResult

Results are returned in submission order, one per task.
"""
from __future__ import annotations
import asyncio
import heapq
import inspect
import logging
import math
import uuid
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from batch_engine.core.clock import Clock, SYSTEM_CLOCK
from batch_engine.core.errors import (
    ConfigurationError,
    EngineInvariantError,
    TaskTimeoutError,
    classify_error,
)
from batch_engine.core.events import (
    BatchEventType,
    CallbackObserver,
    EventBus,
    ProgressChannel,
    ProgressObserver,
)
from batch_engine.core.rate_limiter import RateLimiter
from batch_engine.core.retry import RetryController, RetryPolicy, TaskLifecycle, TaskState
from batch_engine.models.task import (
    AttemptOutcome,
    BatchReport,
    BatchResult,
    ErrorDescriptor,
    ErrorKind,
    ProgressSnapshot,
    Task,
    TaskAttempt,
)
from batch_engine.schemas.config import EngineConfig, build_config
from batch_engine.tracking.cost_ledger import CostLedger, CostLedgerEntry, UnitUsage, extract_usage
from batch_engine.tracking.performance_tracker import PerformanceTracker, nearest_rank_percentile
from batch_engine.utils.logging_config import clear_context, set_context

WorkFn = Callable[[Any], Any]
UsageExtractor = Callable[[Any], Optional[UnitUsage]]
TaskLike = Union[Task, Mapping[str, Any]]


def coerce_task(item: TaskLike) -> Task:
    """Accept a Task or a mapping with id/payload/priority"""
    if isinstance(item, Task):
        return item
    if isinstance(item, Mapping):
        if 'id' not in item:
            raise ConfigurationError(f"Task mapping has no 'id': {dict(item)}")
        return Task(
            id=str(item['id']),
            payload=item.get('payload'),
            priority=int(item.get('priority') or 0),
        )
    raise ConfigurationError(f"Unsupported task type: {type(item).__name__}")


class TaskQueue:
    """
    Pending-task queue: higher priority first, ties in submission order

    Pops happen on the event loop thread, so each pop is atomic with
    respect to the workers.
    """

    def __init__(self, tasks: Sequence[Task] = ()):
        self._heap: List[Tuple[int, int, Task]] = []
        self._sequence = 0
        for task in tasks:
            self.push(task)

    def push(self, task: Task) -> None:
        heapq.heappush(self._heap, (-task.priority, self._sequence, task))
        self._sequence += 1

    def pop(self) -> Optional[Task]:
        if not self._heap:
            return None
        priority, sequence, task = heapq.heappop(self._heap)
        if not isinstance(task, Task) or -priority != task.priority:
            raise EngineInvariantError(f"Task queue corrupted at sequence {sequence}")
        return task

    def drain(self) -> List[Task]:
        tasks = []
        while self._heap:
            tasks.append(self.pop())
        return tasks

    def __len__(self) -> int:
        return len(self._heap)


class _BatchRun:
    """Mutable bookkeeping for one process_batch call"""

    def __init__(
        self,
        tasks: List[Task],
        config: EngineConfig,
        policy: RetryPolicy,
        clock: Clock,
        sinks: List[PerformanceTracker],
        ledger: CostLedger,
        channel: ProgressChannel,
        usage_extractor: UsageExtractor,
    ):
        self.batch_id = uuid.uuid4().hex[:12]
        self.tasks = tasks
        self.total = len(tasks)
        self.config = config
        self.policy = policy
        self.clock = clock
        self.queue = TaskQueue(tasks)
        self.lifecycles = {task.id: TaskLifecycle(task.id) for task in tasks}
        self.results: Dict[str, BatchResult] = {}
        self.rate_limiter = RateLimiter(config.rate_limit_delay_ms, clock=clock)

        # Run-local tracker: snapshots and the report never read caller history
        self.tracker = PerformanceTracker(clock=clock.now)
        self.sinks = sinks
        self.ledger = ledger
        self.cost_entries: List[CostLedgerEntry] = []
        self.channel = channel
        self.usage_extractor = usage_extractor

        self.started_at = clock.now()
        self.finished_at: Optional[float] = None
        self.in_flight = 0
        self.peak_in_flight = 0
        self.dispatches = 0
        self.cancelled = 0


class BatchExecutionEngine:
    """
    Executes batches of tasks under a bounded concurrency window

    Usage:
        engine = BatchExecutionEngine(EngineConfig(concurrency=4))
        results = await engine.process_batch(tasks, annotate_image)
        report = engine.build_report()
    """

    def __init__(
        self,
        config: Union[EngineConfig, Dict[str, Any], None] = None,
        *,
        clock: Optional[Clock] = None,
        retry_controller: Optional[RetryController] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """
        Initialize engine

        Args:
            config: Default configuration for process_batch calls
            clock: Clock for pacing and backoff (system clock if omitted)
            retry_controller: Retry decisions and jitter source
            event_bus: Optional bus receiving lifecycle events

        Raises:
            ConfigurationError: If config is invalid
        """
        self.config = build_config(config)
        self.clock = clock or SYSTEM_CLOCK
        self.retry_controller = retry_controller or RetryController()
        self.event_bus = event_bus
        self.logger = logging.getLogger("batch_engine.engine")

        self._cancel_requested = False
        self._run: Optional[_BatchRun] = None
        self._last_report: Optional[BatchReport] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """
        Request cooperative cancellation of the running batch

        No new dispatch (first attempt or retry) starts after this call;
        in-flight attempts finish and are recorded.
        """
        if not self._cancel_requested:
            self.logger.info("Cancellation requested, no further tasks will be dispatched")
        self._cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def run_batch(self, tasks: Iterable[TaskLike], work_fn: WorkFn, config=None, **kwargs) -> List[BatchResult]:
        """Synchronous wrapper around process_batch"""
        return asyncio.run(self.process_batch(tasks, work_fn, config, **kwargs))

    async def process_batch(
        self,
        tasks: Iterable[TaskLike],
        work_fn: WorkFn,
        config: Union[EngineConfig, Dict[str, Any], None] = None,
        *,
        tracker: Optional[PerformanceTracker] = None,
        ledger: Optional[CostLedger] = None,
        observers: Sequence[ProgressObserver] = (),
        usage_extractor: Optional[UsageExtractor] = None,
    ) -> List[BatchResult]:
        """
        Run a batch to completion

        Args:
            tasks: Tasks (or id/payload/priority mappings) in submission order
            work_fn: Called with each task's payload; may be sync or async
            config: Overrides the engine's default configuration
            tracker: Caller-owned tracker that receives one sample per task
            ledger: Caller-owned ledger that receives one entry per task
            observers: Progress observers for this batch
            usage_extractor: Maps a result (or error) to UnitUsage

        Returns:
            One BatchResult per task, in submission order

        Raises:
            ConfigurationError: Invalid config or submission, before any dispatch
            EngineInvariantError: Internal bookkeeping corruption
        """
        config = build_config(config if config is not None else self.config)
        task_list = self._validate_submission(tasks, work_fn)
        policy = config.retry_policy()

        channel = ProgressChannel(list(observers))
        if config.on_progress is not None:
            channel.subscribe(CallbackObserver(config.on_progress))

        run = _BatchRun(
            tasks=task_list,
            config=config,
            policy=policy,
            clock=self.clock,
            sinks=[tracker] if tracker is not None else [],
            ledger=ledger if ledger is not None else CostLedger(),
            channel=channel,
            usage_extractor=usage_extractor or extract_usage,
        )
        self._run = run
        self._cancel_requested = False

        set_context(batch_id=run.batch_id)
        try:
            self.logger.info(
                f"Starting batch {run.batch_id}: {run.total} tasks, "
                f"concurrency={config.concurrency}, retry_attempts={config.retry_attempts}"
            )
            await self._emit(BatchEventType.BATCH_STARTED, {
                'batch_id': run.batch_id,
                'total': run.total,
                'concurrency': config.concurrency,
            })

            workers = [
                asyncio.create_task(self._worker(index, run, work_fn))
                for index in range(config.concurrency)
            ]
            await asyncio.gather(*workers)

            self._cancel_remaining(run)
            run.finished_at = self.clock.now()

            results = self._ordered_results(run)
            self._last_report = self._compute_report(run)

            succeeded = sum(1 for r in results if r.succeeded)
            self.logger.info(
                f"Batch {run.batch_id} completed: {succeeded}/{run.total} succeeded, "
                f"{run.total - succeeded - run.cancelled} failed, {run.cancelled} cancelled "
                f"in {self._last_report.total_duration_ms / 1000:.2f}s"
            )
            await self._emit(
                BatchEventType.BATCH_CANCELLED if run.cancelled else BatchEventType.BATCH_COMPLETED,
                {'batch_id': run.batch_id, 'report': self._last_report.to_dict()},
            )
            return results
        finally:
            clear_context()

    def build_report(self) -> BatchReport:
        """
        Report for the most recent batch

        Raises:
            RuntimeError: If no batch has completed yet
        """
        if self._last_report is None:
            raise RuntimeError("No batch has been processed yet")
        return self._last_report

    def get_status(self) -> Dict[str, Any]:
        """Live counters for the current (or last) batch"""
        run = self._run
        if run is None:
            return {'running': False}
        return {
            'running': run.finished_at is None,
            'batch_id': run.batch_id,
            'total': run.total,
            'finalized': len(run.results),
            'queued': len(run.queue),
            'in_flight': run.in_flight,
            'peak_in_flight': run.peak_in_flight,
            'dispatches': run.dispatches,
            'cancel_requested': self._cancel_requested,
        }

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, worker_id: int, run: _BatchRun, work_fn: WorkFn) -> None:
        """Pull tasks until the queue is empty or the batch is cancelled"""
        while not self._cancel_requested:
            task = run.queue.pop()
            if task is None:
                break
            await self._run_task(worker_id, task, run, work_fn)

    async def _run_task(self, worker_id: int, task: Task, run: _BatchRun, work_fn: WorkFn) -> None:
        """Drive one task through its lifecycle until it is finalized"""
        lifecycle = run.lifecycles[task.id]
        policy = run.policy
        first_started: Optional[float] = None
        last_error: Optional[BaseException] = None
        last_retryable = True

        while True:
            if not self._cancel_requested:
                await run.rate_limiter.await_slot()

            if self._cancel_requested:
                if lifecycle.state == TaskState.PENDING:
                    # Not dispatched yet: hand it back for cancellation
                    run.queue.push(task)
                else:
                    lifecycle.fail()
                    await self._finalize_failure(run, task, lifecycle, last_error, last_retryable, first_started)
                return

            attempt_number = lifecycle.begin_attempt()
            started = self.clock.now()
            if first_started is None:
                first_started = started

            set_context(task_id=task.id, attempt=attempt_number)
            run.dispatches += 1
            run.in_flight += 1
            run.peak_in_flight = max(run.peak_in_flight, run.in_flight)
            self.logger.debug(f"Worker {worker_id} dispatching task {task.id} (attempt {attempt_number + 1})")
            await self._emit(BatchEventType.TASK_DISPATCHED, {
                'task_id': task.id, 'attempt': attempt_number, 'worker': worker_id,
            })

            outcome = AttemptOutcome.SUCCESS
            value = None
            error: Optional[BaseException] = None
            finished: Optional[float] = None
            call, blocking = self._start_call(work_fn, task.payload)
            try:
                value = await asyncio.wait_for(
                    asyncio.shield(call) if blocking else call,
                    timeout=policy.per_task_timeout_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                finished = self.clock.now()
                outcome = AttemptOutcome.TIMEOUT
                error = TaskTimeoutError(task.id, policy.per_task_timeout_ms)
                if blocking:
                    # A thread can't be interrupted; the slot stays taken until it returns
                    await self._settle_abandoned(task, call)
            except Exception as e:
                outcome = AttemptOutcome.FAILURE
                error = e
            finally:
                run.in_flight -= 1

            attempt = TaskAttempt(
                task_id=task.id,
                attempt_number=attempt_number,
                started_at=started,
                finished_at=finished if finished is not None else self.clock.now(),
                outcome=outcome,
            )
            run.tracker.record_attempt(attempt)
            for sink in run.sinks:
                sink.record_attempt(attempt)

            if outcome == AttemptOutcome.SUCCESS:
                lifecycle.succeed()
                self._finalize(run, task, lifecycle, True, value, None, first_started, usage_source=value)
                await self._emit(BatchEventType.TASK_SUCCEEDED, {
                    'task_id': task.id, 'retries_used': lifecycle.retries_used,
                })
                return

            last_error = error
            last_retryable = self._is_retryable(error, policy)

            if (
                last_retryable
                and self.retry_controller.should_retry(attempt_number, policy)
                and not self._cancel_requested
            ):
                lifecycle.schedule_retry()
                delay_ms = self.retry_controller.next_delay(attempt_number, policy)
                self.logger.info(
                    f"Retrying task {task.id} after {delay_ms:.0f}ms "
                    f"(attempt {attempt_number + 1}/{policy.max_attempts}): {error}"
                )
                await self._emit(BatchEventType.TASK_RETRYING, {
                    'task_id': task.id,
                    'attempt': attempt_number,
                    'delay_ms': delay_ms,
                    'error': str(error),
                })
                await self.clock.sleep(delay_ms / 1000.0)
                continue

            lifecycle.fail()
            await self._finalize_failure(run, task, lifecycle, error, last_retryable, first_started)
            return

    def _start_call(self, work_fn: WorkFn, payload: Any) -> Tuple[asyncio.Future, bool]:
        """
        Schedule one work_fn invocation

        Returns the running future and whether it occupies a thread.
        Coroutine functions are cancelled on timeout; blocking callables
        can't be, so their future must be left to settle.
        """
        if inspect.iscoroutinefunction(work_fn):
            return asyncio.ensure_future(work_fn(payload)), False
        return asyncio.ensure_future(self._call_blocking(work_fn, payload)), True

    async def _call_blocking(self, work_fn: WorkFn, payload: Any) -> Any:
        result = await asyncio.to_thread(work_fn, payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _settle_abandoned(self, task: Task, call: asyncio.Future) -> None:
        """Wait out a timed-out blocking call; its outcome is already a timeout"""
        if call.done():
            return

        self.logger.warning(f"Task {task.id} timed out in a worker thread, waiting for the call to return")
        try:
            await call
        except Exception as e:
            self.logger.debug(f"Abandoned call for task {task.id} ended with {type(e).__name__}: {e}")

    def _is_retryable(self, error: BaseException, policy: RetryPolicy) -> bool:
        try:
            return self.retry_controller.is_retryable(error, policy)
        except Exception as e:
            self.logger.error(f"Retry predicate failed, treating error as terminal: {e}", exc_info=e)
            return False

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _finalize_failure(
        self,
        run: _BatchRun,
        task: Task,
        lifecycle: TaskLifecycle,
        error: Optional[BaseException],
        retryable: bool,
        first_started: Optional[float],
    ) -> None:
        if error is None:
            raise EngineInvariantError(f"Task {task.id} failed without an error")

        descriptor = ErrorDescriptor.from_exception(
            error,
            kind=classify_error(error, retryable),
            attempt_number=lifecycle.current_attempt,
            retryable=retryable,
        )
        self.logger.warning(
            f"Task {task.id} failed after {lifecycle.attempts_started} attempt(s): "
            f"{descriptor.error_type}: {descriptor.message}"
        )
        self._finalize(run, task, lifecycle, False, None, descriptor, first_started, usage_source=error)
        await self._emit(BatchEventType.TASK_FAILED, {
            'task_id': task.id, 'error': descriptor.to_dict(),
        })

    def _finalize(
        self,
        run: _BatchRun,
        task: Task,
        lifecycle: TaskLifecycle,
        succeeded: bool,
        value: Any,
        error: Optional[ErrorDescriptor],
        first_started: Optional[float],
        usage_source: Any = None,
    ) -> None:
        """Record the terminal outcome of a dispatched task"""
        if task.id in run.results:
            raise EngineInvariantError(f"Task {task.id} finalized twice")

        now = self.clock.now()
        duration_ms = int(round((now - first_started) * 1000)) if first_started is not None else 0
        result = BatchResult(
            task_id=task.id,
            succeeded=succeeded,
            value=value,
            error=error,
            duration_ms=duration_ms,
            retries_used=lifecycle.retries_used,
        )
        run.results[task.id] = result

        failed = not succeeded
        run.tracker.record_task(duration_ms, result.retries_used, failed)
        for sink in run.sinks:
            sink.record_task(duration_ms, result.retries_used, failed)

        run.cost_entries.append(run.ledger.track_usage(self._usage_for(run, usage_source), task_id=task.id))
        snapshot = self._snapshot(run)
        run.channel.publish(snapshot)

        # Progress log line at every 10% of the batch
        step = max(1, run.total // 10)
        if snapshot.completed % step == 0 or snapshot.completed == run.total:
            run.tracker.log_progress(
                snapshot.completed, run.total, run.tracker.get_metrics(run.total, run.config.concurrency)
            )

    def _usage_for(self, run: _BatchRun, source: Any) -> UnitUsage:
        try:
            usage = run.usage_extractor(source)
        except Exception as e:
            self.logger.warning(f"Usage extractor failed, recording zero usage: {e}")
            usage = None
        return usage if isinstance(usage, UnitUsage) else UnitUsage()

    def _snapshot(self, run: _BatchRun) -> ProgressSnapshot:
        metrics = run.tracker.get_metrics(run.total, run.config.concurrency)
        return ProgressSnapshot(
            completed=metrics.completed,
            failed=metrics.failed,
            total=run.total,
            elapsed_ms=metrics.total_duration_ms,
            average_duration_ms=metrics.average_duration_ms,
            throughput_per_sec=metrics.throughput_per_sec,
            success_rate=metrics.success_rate,
            retry_rate=metrics.retry_rate,
            error_rate=metrics.error_rate,
        )

    def _cancel_remaining(self, run: _BatchRun) -> None:
        """Give every never-dispatched task a cancelled result"""
        for task in run.queue.drain():
            lifecycle = run.lifecycles[task.id]
            lifecycle.cancel()
            if task.id in run.results:
                raise EngineInvariantError(f"Cancelled task {task.id} already has a result")
            run.results[task.id] = BatchResult(
                task_id=task.id,
                succeeded=False,
                error=ErrorDescriptor(
                    error_type="BatchCancelled",
                    message="Batch cancelled before the task was dispatched",
                    kind=ErrorKind.CANCELLED,
                    retryable=False,
                ),
            )
            run.cancelled += 1

        if run.cancelled:
            self.logger.info(f"Batch {run.batch_id}: {run.cancelled} task(s) cancelled before dispatch")

    def _ordered_results(self, run: _BatchRun) -> List[BatchResult]:
        missing = [task.id for task in run.tasks if task.id not in run.results]
        if missing or len(run.results) != run.total:
            raise EngineInvariantError(f"Batch finished without results for tasks: {missing}")
        return [run.results[task.id] for task in run.tasks]

    def _compute_report(self, run: _BatchRun) -> BatchReport:
        samples = run.tracker.get_samples()
        completed = len(samples)
        failed = sum(1 for r in run.results.values() if not r.succeeded and r.error.kind != ErrorKind.CANCELLED)
        total_duration_ms = ((run.finished_at or self.clock.now()) - run.started_at) * 1000.0
        retries = sum(r.retries_used for r in run.results.values())

        return BatchReport(
            total_duration_ms=total_duration_ms,
            throughput_per_sec=completed / (total_duration_ms / 1000.0) if total_duration_ms > 0 else 0.0,
            success_rate=(completed - failed) / run.total if run.total > 0 else 0.0,
            retry_rate=retries / completed if completed > 0 else 0.0,
            p50=nearest_rank_percentile(samples, 50),
            p95=nearest_rank_percentile(samples, 95),
            p99=nearest_rank_percentile(samples, 99),
            cumulative_cost=math.fsum(entry.estimated_cost for entry in run.cost_entries),
            metadata={
                'total': run.total,
                'succeeded': completed - failed,
                'failed': failed,
                'cancelled': run.cancelled,
                'concurrency': run.config.concurrency,
            },
        )

    def _validate_submission(self, tasks: Iterable[TaskLike], work_fn: WorkFn) -> List[Task]:
        if not callable(work_fn):
            raise ConfigurationError("work_fn must be callable")
        if tasks is None:
            raise ConfigurationError("tasks must be an iterable of tasks")

        task_list = [coerce_task(item) for item in tasks]
        seen = set()
        duplicates = []
        for task in task_list:
            if task.id in seen:
                duplicates.append(task.id)
            seen.add(task.id)
        if duplicates:
            raise ConfigurationError(f"Duplicate task ids in batch: {sorted(set(duplicates))}")
        return task_list

    async def _emit(self, event_type: BatchEventType, data: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, data, source="batch_engine")
