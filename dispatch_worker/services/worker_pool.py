"""Worker pool: claims jobs from one queue and executes them concurrently."""

import asyncio
import inspect
import time
from typing import Any, Callable, List, Optional, Union

import structlog

from dispatch_core.broker import RedisBroker
from dispatch_core.exceptions import BrokerUnavailable, LeaseLost
from dispatch_core.models import Job, JobOutcome, OutcomeState
from dispatch_core.retry import RetryPolicy
from dispatch_core.timeout import with_timeout
from ..exceptions import HandlerFailure
from ..handlers.base import JobHandler
from ..models.enums import WorkerState
from ..models.schemas import WorkerMetrics

logger = structlog.get_logger(__name__)

Handler = Union[JobHandler, Callable[[Job], Any]]
OutcomeCallback = Callable[[JobOutcome], Any]


def _error_text(error: BaseException) -> str:
    message = str(error)
    return message if message else type(error).__name__


class WorkerPool:
    """Long-lived consumer of one named queue.

    Each claim runs ``claimed -> executing -> completed | failed`` under a
    lease that a heartbeat keeps alive. Handler failures are reported to the
    broker, logged and handed to ``on_outcome``; they never stop the pool.

    The broker is passed in and owned by the caller. Up to ``concurrency``
    claims share it at once.
    """

    def __init__(
        self,
        broker: RedisBroker,
        queue_name: str,
        handler: Handler,
        concurrency: int = 1,
        lease_ms: int = 30000,
        poll_interval: float = 1.0,
        maintenance_interval: float = 15.0,
        handler_timeout_ms: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        on_outcome: Optional[OutcomeCallback] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if lease_ms <= 0:
            raise ValueError("lease_ms must be positive")

        self.broker = broker
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = concurrency
        self.lease_ms = lease_ms
        self.poll_interval = poll_interval
        self.maintenance_interval = maintenance_interval
        self.handler_timeout_ms = handler_timeout_ms
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_outcome = on_outcome

        # State management
        self.state = WorkerState.INITIALIZING
        self._running = False
        self._stopping = asyncio.Event()
        self._cancelling = False
        self._claim_tasks: List[asyncio.Task] = []
        self._maintenance_task: Optional[asyncio.Task] = None

        # Metrics
        self.started_at: Optional[float] = None
        self.in_flight = 0
        self.jobs_completed = 0
        self.jobs_failed = 0
        self.leases_lost = 0
        self.last_error: Optional[str] = None

    async def start(self):
        """Spawn the claim loops and the lease maintenance loop."""
        if self._running:
            logger.warning("worker_pool_already_running", queue=self.queue_name)
            return

        self._running = True
        self._stopping.clear()
        self._cancelling = False
        self.started_at = time.time()

        self._claim_tasks = [
            asyncio.create_task(self._claim_loop(slot)) for slot in range(self.concurrency)
        ]
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        self._change_state(WorkerState.RUNNING)
        logger.info("worker_pool_ready", queue=self.queue_name, concurrency=self.concurrency)

    async def stop(self, drain_timeout: float = 30.0):
        """Stop claiming, let in-flight jobs finish, then cancel stragglers."""
        if not self._running:
            return

        self._change_state(WorkerState.DRAINING)
        self._running = False
        self._stopping.set()

        if self._maintenance_task:
            self._maintenance_task.cancel()
            await asyncio.gather(self._maintenance_task, return_exceptions=True)
            self._maintenance_task = None

        if self._claim_tasks:
            _, pending = await asyncio.wait(self._claim_tasks, timeout=drain_timeout)
            if pending:
                logger.warning("worker_pool_drain_timeout", queue=self.queue_name, abandoned=len(pending))
                self._cancelling = True
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self._claim_tasks = []
        self._change_state(WorkerState.STOPPED)

    async def run_until_stopped(self):
        """Block until ``stop()`` is called."""
        if not self._running:
            await self.start()
        await self._stopping.wait()

    def _change_state(self, new_state: WorkerState):
        old_state = self.state
        self.state = new_state
        logger.info("worker_pool_state_changed", queue=self.queue_name, old=old_state.value, new=new_state.value)

    async def _sleep(self, seconds: float):
        """Sleep that ends early when the pool is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _claim_loop(self, slot: int):
        consecutive_failures = 0

        while self._running:
            try:
                outcome = await self.process_next()
                consecutive_failures = 0
            except BrokerUnavailable as e:
                consecutive_failures += 1
                self.last_error = str(e)
                delay = self.retry_policy.calculate_delay(consecutive_failures) / 1000
                logger.error("claim_failed", queue=self.queue_name, slot=slot, error=str(e), retry_in_s=delay)
                await self._sleep(delay)
                continue
            except Exception as e:
                consecutive_failures += 1
                self.last_error = str(e)
                delay = self.retry_policy.calculate_delay(consecutive_failures) / 1000
                logger.error("claim_loop_error", queue=self.queue_name, slot=slot, error=str(e),
                             retry_in_s=delay, exc_info=True)
                await self._sleep(delay)
                continue

            if outcome is None:
                await self._sleep(self.poll_interval)

    def _cancel_requested(self) -> bool:
        """True when the running task is being cancelled from outside the handler."""
        if self._cancelling:
            return True
        task = asyncio.current_task()
        cancelling = getattr(task, "cancelling", None)
        return bool(cancelling and cancelling())

    async def process_next(self) -> Optional[JobOutcome]:
        """Claim and execute one job. Returns ``None`` when the queue is empty."""
        job = await self.broker.claim(self.queue_name, self.lease_ms)
        if job is None:
            return None

        self.in_flight += 1
        try:
            return await self.execute(job)
        finally:
            self.in_flight -= 1

    async def execute(self, job: Job) -> JobOutcome:
        """Run the handler for a claimed job and report the outcome."""
        logger.debug("job_claimed", queue=self.queue_name, job_id=job.id, attempt=job.attempts_made)
        started = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat(job))

        error: Optional[str] = None
        try:
            await self._invoke(job)
        except HandlerFailure as e:
            error = str(e)
        except asyncio.CancelledError:
            if self._cancel_requested():
                # The lease expires and the job is redelivered
                logger.warning("job_abandoned", queue=self.queue_name, job_id=job.id)
                raise
            # Cancellation raised by the handler itself
            error = "handler cancelled"
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        duration_ms = int((time.monotonic() - started) * 1000)
        if error is None:
            outcome = await self._report_completed(job, duration_ms)
        else:
            outcome = await self._report_failed(job, error, duration_ms)

        await self._emit(outcome)
        return outcome

    async def _invoke(self, job: Job):
        if isinstance(self.handler, JobHandler):
            handle = self.handler.handle
            validate = self.handler.validate_payload
        else:
            handle = self.handler
            validate = None

        try:
            if validate is not None:
                validate(job)

            if asyncio.iscoroutinefunction(handle):
                running = handle(job)
            else:
                running = asyncio.to_thread(handle, job)

            if self.handler_timeout_ms:
                await with_timeout(running, self.handler_timeout_ms, f"job {job.id}")
            else:
                await running
        except Exception as e:
            raise HandlerFailure(job.id, _error_text(e), cause=e) from e

    async def _report_completed(self, job: Job, duration_ms: int) -> JobOutcome:
        try:
            await self.broker.complete(self.queue_name, job.id, job.lease_token)
        except LeaseLost as e:
            self.leases_lost += 1
            logger.warning("job_lease_lost", queue=self.queue_name, job_id=job.id, error=str(e))
        except BrokerUnavailable as e:
            self.last_error = str(e)
            logger.error("job_completion_not_recorded", queue=self.queue_name, job_id=job.id, error=str(e))

        self.jobs_completed += 1
        outcome = JobOutcome(
            job_id=job.id,
            queue_name=self.queue_name,
            state=OutcomeState.COMPLETED,
            duration_ms=duration_ms,
            attempts_made=job.attempts_made,
        )
        logger.info(
            "job_completed",
            queue=self.queue_name,
            job_id=job.id,
            timestamp=outcome.finished_at.isoformat(),
            duration_ms=duration_ms,
            attempts=job.attempts_made,
        )
        return outcome

    async def _report_failed(self, job: Job, error: str, duration_ms: int) -> JobOutcome:
        retry_delay = self.retry_policy.next_delay(job.attempts_made, job.max_attempts)
        try:
            await self.broker.fail(self.queue_name, job.id, job.lease_token, error, retry_delay)
        except LeaseLost as e:
            self.leases_lost += 1
            logger.warning("job_lease_lost", queue=self.queue_name, job_id=job.id, error=str(e))
        except BrokerUnavailable as e:
            self.last_error = str(e)
            logger.error("job_failure_not_recorded", queue=self.queue_name, job_id=job.id, error=str(e))

        self.jobs_failed += 1
        self.last_error = error
        outcome = JobOutcome(
            job_id=job.id,
            queue_name=self.queue_name,
            state=OutcomeState.FAILED,
            duration_ms=duration_ms,
            error=error,
            will_retry=retry_delay is not None,
            attempts_made=job.attempts_made,
        )
        logger.error(
            "job_failed",
            queue=self.queue_name,
            job_id=job.id,
            timestamp=outcome.finished_at.isoformat(),
            duration_ms=duration_ms,
            error=error,
            attempts=job.attempts_made,
            will_retry=outcome.will_retry,
            retry_in_ms=retry_delay,
        )
        return outcome

    async def _emit(self, outcome: JobOutcome):
        if self.on_outcome is None:
            return
        try:
            result = self.on_outcome(outcome)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("outcome_callback_failed", queue=self.queue_name, job_id=outcome.job_id, error=str(e))

    async def _heartbeat(self, job: Job):
        """Extend the job's lease every half lease until cancelled."""
        interval = self.lease_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.broker.extend_lease(self.queue_name, job.id, job.lease_token, self.lease_ms)
            except LeaseLost as e:
                logger.warning("job_lease_lost", queue=self.queue_name, job_id=job.id, error=str(e))
                return
            except BrokerUnavailable as e:
                logger.warning("lease_extension_failed", queue=self.queue_name, job_id=job.id, error=str(e))

    async def run_maintenance(self):
        """Requeue jobs with expired leases and promote due retries."""
        requeued, dead = await self.broker.requeue_expired(self.queue_name)
        promoted = await self.broker.promote_delayed(self.queue_name)

        if requeued:
            logger.warning("lease_expired_requeued", queue=self.queue_name, job_ids=requeued)
        if dead:
            logger.error("lease_expired_dead_lettered", queue=self.queue_name, job_ids=dead)
        if promoted:
            logger.info("delayed_jobs_promoted", queue=self.queue_name, count=promoted)

    async def _maintenance_loop(self):
        while self._running:
            try:
                await self.run_maintenance()
            except asyncio.CancelledError:
                break
            except BrokerUnavailable as e:
                self.last_error = str(e)
                logger.error("maintenance_failed", queue=self.queue_name, error=str(e))
            except Exception as e:
                self.last_error = str(e)
                logger.error("maintenance_loop_error", queue=self.queue_name, error=str(e), exc_info=True)

            await self._sleep(self.maintenance_interval)

    def get_metrics(self) -> WorkerMetrics:
        """Get pool metrics for observability."""
        uptime = time.time() - self.started_at if self.started_at else 0.0
        return WorkerMetrics(
            queue_name=self.queue_name,
            state=self.state.value,
            concurrency=self.concurrency,
            in_flight=self.in_flight,
            jobs_completed=self.jobs_completed,
            jobs_failed=self.jobs_failed,
            leases_lost=self.leases_lost,
            uptime_seconds=uptime,
            last_error=self.last_error,
        )
