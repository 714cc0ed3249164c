"""Task engine: drives accepted tasks forward until a terminal state."""

from __future__ import annotations

import logging
import random
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial

from task_relay.engine.backend.base import ExecutionRequest, ExecutionResult, ToolExecutor
from task_relay.engine.claims import ClaimDetector
from task_relay.engine.completion import evaluate_completion
from task_relay.engine.errors import (
    ExecutionError,
    InvalidTransition,
    NotFound,
    ProviderTransportError,
    StalledLoop,
    StorageError,
    TaskRelayError,
)
from task_relay.engine.failure_classifier import FailureClassification, classify_error_message
from task_relay.engine.milestones import LoggingMilestoneSink, Milestone, MilestoneSink
from task_relay.engine.models import (
    Complete,
    CompletionDecision,
    ExecutionEvidence,
    Failed,
    FailureReason,
    MilestoneKind,
    NotComplete,
    RoundRecord,
    Stalled,
    StepOutcome,
    TaskRunView,
    TaskStatus,
)
from task_relay.engine.registry import SenderLockRegistry
from task_relay.engine.repository import TaskStore
from task_relay.engine.scheduler import ContinuationQueue
from task_relay.engine.stall import StalledLoopDetector, text_materially_differs

logger = logging.getLogger(__name__)

CompletionEvaluator = Callable[[str, ExecutionEvidence], CompletionDecision]

_FAILURE_TEXT: dict[str, str] = {
    FailureReason.PROVIDER_RETRIES_EXHAUSTED.value: (
        "The model provider could not be reached after repeated attempts."
    ),
    FailureReason.STALLED_LOOP.value: "The task stopped making progress and was abandoned.",
    FailureReason.EXECUTION_ERROR.value: "The task could not be executed.",
    FailureReason.MAX_CONTINUATION_ROUNDS_EXHAUSTED.value: (
        "The task did not finish within the allowed number of rounds."
    ),
}


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    continued: int = 0
    retried: int = 0
    deferred: int = 0
    errors: int = 0
    idle_polls: int = 0

    def record(self, outcome: StepOutcome) -> None:
        self.processed += 1
        if outcome is StepOutcome.COMPLETED:
            self.completed += 1
        elif outcome is StepOutcome.FAILED:
            self.failed += 1
        elif outcome is StepOutcome.CONTINUED:
            self.continued += 1
        elif outcome is StepOutcome.RETRY_SCHEDULED:
            self.retried += 1
        elif outcome is StepOutcome.DEFERRED:
            self.deferred += 1
        elif outcome in (StepOutcome.STORAGE_FAULT, StepOutcome.STEP_ERROR):
            self.errors += 1


class TaskEngine:
    """Accepts tasks and runs their continuation rounds until they finish."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        executor: ToolExecutor,
        milestone_sink: MilestoneSink | None = None,
        sender_registry: SenderLockRegistry | None = None,
        queue: ContinuationQueue | None = None,
        stall_threshold: int = 3,
        max_provider_retries: int = 3,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 60.0,
        sender_busy_delay_seconds: float = 1.0,
        max_continuation_rounds: int = 4,
        detect_progress_updates: bool = True,
        claim_detector: ClaimDetector | None = None,
        completion_evaluator: CompletionEvaluator | None = None,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.store = store
        self.executor = executor
        self.milestone_sink = milestone_sink or LoggingMilestoneSink()
        self.sender_registry = sender_registry or SenderLockRegistry()
        self.queue = queue or ContinuationQueue()
        self.stall_detector = StalledLoopDetector(threshold=stall_threshold)
        self.max_provider_retries = max_provider_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.sender_busy_delay_seconds = sender_busy_delay_seconds
        self.max_continuation_rounds = max_continuation_rounds
        self.completion_evaluator = completion_evaluator or partial(
            evaluate_completion,
            claim_detector=claim_detector,
            detect_progress_updates=detect_progress_updates,
        )
        self.poll_interval_seconds = poll_interval_seconds
        self._random = random.Random()  # noqa: S311
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    # -- public operations -----------------------------------------------------

    def accept(
        self,
        channel: str,
        sender_key: str,
        reply_target: str,
        request_text: str,
    ) -> str:
        """Persist a new queued task, notify the requester and schedule its first step."""

        task = self.store.insert(
            channel=channel,
            sender_key=sender_key,
            reply_target=reply_target,
            original_request=request_text,
        )
        logger.info("Accepted task %s from %s/%s", task.task_id, channel, sender_key)
        self._emit(task, MilestoneKind.ACCEPTED, "Task accepted.")
        self.queue.enqueue(task.task_id)
        return task.task_id

    def run_step(self, task_id: str) -> StepOutcome:
        """Run one continuation round of a task.

        Storage faults abort the step without advancing state; the signal is
        re-enqueued after a backoff. A concurrent status change (cancel) makes
        the step discard its work.
        """

        try:
            return self._run_step(task_id)
        except StorageError:
            logger.exception("Storage fault while stepping task %s", task_id)
            self._schedule(task_id, delay_seconds=self._compute_retry_delay(retry_number=1))
            return StepOutcome.STORAGE_FAULT
        except InvalidTransition as error:
            logger.info("Discarding step for task %s: %s", task_id, error)
            return StepOutcome.SKIPPED
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error while stepping task %s", task_id)
            self._schedule(task_id, delay_seconds=self._compute_retry_delay(retry_number=1))
            return StepOutcome.STEP_ERROR

    def recover_pending(self) -> list[str]:
        """Re-enqueue queued and running tasks after a restart.

        Blocked tasks are not resumed; they only get a ``blocked_notice`` event.
        Repeated calls return the same ids and do not duplicate queue signals.
        """

        requeued: list[str] = []
        for task in self.store.list_recoverable():
            if task.status is TaskStatus.BLOCKED:
                self.store.append_event(
                    task.task_id,
                    "blocked_notice",
                    {"reason": "blocked tasks are not resumed automatically"},
                )
                continue
            self.store.append_event(task.task_id, "recovered", {"status": task.status.value})
            self.queue.enqueue(task.task_id)
            requeued.append(task.task_id)
        if requeued:
            logger.info("Recovered %d pending task(s)", len(requeued))
        return requeued

    def cancel(self, task_id: str, reason: str | None = None) -> TaskRunView:
        """Cancel a non-terminal task and send the final acknowledgment."""

        payload: dict[str, object] = {"reason": reason} if reason else {}
        task = self.store.update_status(task_id, TaskStatus.CANCELLED, payload=payload)
        self.queue.discard(task_id)
        text = f"Task cancelled: {reason}" if reason else "Task cancelled."
        self._emit(task, MilestoneKind.CANCELLED, text)
        return task

    def resume(self, task_id: str) -> TaskRunView:
        """Move a blocked task back to running and schedule its next round."""

        task = self.store.update_status(task_id, TaskStatus.RUNNING, event_type="resumed")
        self.queue.enqueue(task_id)
        return task

    # -- worker control --------------------------------------------------------

    def run_once(self, *, timeout: float = 0.0) -> StepOutcome | None:
        """Process at most one ready continuation signal."""

        if self._stop_event.is_set():
            return None
        task_id = self.queue.take(timeout=timeout)
        if task_id is None:
            return None
        try:
            return self.run_step(task_id)
        finally:
            self.queue.done(task_id)

    def run_loop(
        self,
        *,
        max_steps: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run steps until the queue is drained or ``max_steps`` is reached.

        Args:
            max_steps: Stop after this many steps (None = unlimited).
            max_idle_polls: How many consecutive polls with an empty queue before
                exiting. Signals waiting on a backoff, and steps still running on
                background workers, keep the loop alive.
        """

        summary = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_event.is_set():
                if max_steps is not None and summary.processed >= max_steps:
                    break
                try:
                    outcome = self.run_once()
                except Exception:
                    logger.exception("Worker step error")
                    summary.errors += 1
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                if outcome is not None:
                    consecutive_idle = 0
                    summary.record(outcome)
                    continue
                if len(self.queue) or self.queue.in_flight_count():
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                summary.idle_polls += 1
                consecutive_idle += 1
                if consecutive_idle >= max_idle_polls:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        return summary

    def start(self, workers: int = 1) -> None:
        """Start background worker threads."""

        if self._threads:
            raise RuntimeError("Workers are already running.")
        self._stop_event.clear()
        for index in range(max(1, workers)):
            thread = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"task-relay-worker-{index}",
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d worker thread(s)", len(self._threads))

    def stop(self, *, timeout: float = 15.0) -> None:
        """Signal worker threads to stop and wait for them."""

        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Worker threads stopped")

    # -- step internals --------------------------------------------------------

    def _run_step(self, task_id: str) -> StepOutcome:
        try:
            task = self.store.get(task_id)
        except NotFound:
            logger.warning("Dropping continuation for unknown task %s", task_id)
            return StepOutcome.SKIPPED
        if task.status.is_terminal or task.status is TaskStatus.BLOCKED:
            return StepOutcome.SKIPPED

        with self.sender_registry.guard(task.channel, task.sender_key, task_id) as acquired:
            if not acquired or (
                task.status is TaskStatus.QUEUED
                and self.store.has_running_task_for_sender(
                    channel=task.channel,
                    sender_key=task.sender_key,
                    exclude_task_id=task_id,
                )
            ):
                if not self._already_deferred(task_id):
                    self.store.append_event(
                        task_id,
                        "sender_busy",
                        {
                            "sender_key": task.sender_key,
                            "delay_seconds": self.sender_busy_delay_seconds,
                        },
                    )
                self._schedule(task_id, delay_seconds=self.sender_busy_delay_seconds)
                return StepOutcome.DEFERRED

            if task.status is TaskStatus.QUEUED:
                task = self.store.update_status(task_id, TaskStatus.RUNNING, event_type="started")
                self._emit(task, MilestoneKind.STARTED, "Working on it.")
            return self._execute_round(task)

    def _execute_round(self, task: TaskRunView) -> StepOutcome:
        if self.max_continuation_rounds and task.attempt_count >= self.max_continuation_rounds:
            return self._fail(
                task.task_id,
                FailureReason.MAX_CONTINUATION_ROUNDS_EXHAUSTED.value,
                payload={"attempt_count": task.attempt_count},
            )

        request = ExecutionRequest(
            task_id=task.task_id,
            channel=task.channel,
            sender_key=task.sender_key,
            original_request=task.original_request,
            last_response=task.last_response,
            round_number=task.attempt_count + 1,
        )
        try:
            result = self.executor.execute(request)
        except ProviderTransportError as error:
            if not self._still_running(task.task_id):
                return StepOutcome.SKIPPED
            return self._handle_transport_error(task.task_id, error, classification=None)
        except ExecutionError as error:
            if not self._still_running(task.task_id):
                return StepOutcome.SKIPPED
            logger.warning("Execution error for task %s: %s", task.task_id, error)
            return self._handle_execution_error(task.task_id, error, detail=str(error))
        except TaskRelayError:
            raise
        except Exception as error:  # noqa: BLE001
            if not self._still_running(task.task_id):
                return StepOutcome.SKIPPED
            logger.exception("Executor raised for task %s", task.task_id)
            return self._handle_execution_error(
                task.task_id,
                error,
                detail=f"Unexpected executor error: {type(error).__name__}: {error}",
            )

        current = self.store.get(task.task_id)
        if current.status is not TaskStatus.RUNNING:
            logger.info(
                "Task %s changed to %s during execution; discarding result",
                task.task_id,
                current.status.value,
            )
            return StepOutcome.SKIPPED
        if current.provider_retry_count:
            self.store.reset_provider_retry_count(task.task_id)
        return self._settle_round(current, result)

    def _settle_round(self, task: TaskRunView, result: ExecutionResult) -> StepOutcome:
        task_id = task.task_id
        if result.blocked_reason:
            self.store.set_last_response(task_id, result.response_text)
            self.store.update_status(
                task_id,
                TaskStatus.BLOCKED,
                payload={"reason": result.blocked_reason},
            )
            logger.info("Task %s blocked: %s", task_id, result.blocked_reason)
            return StepOutcome.BLOCKED

        record = RoundRecord(
            executed_new_tool=result.evidence.tool_calls > 0,
            text_changed=text_materially_differs(task.last_response, result.response_text),
        )
        try:
            self._check_stall(task_id, record)
        except StalledLoop as error:
            self.store.set_last_response(task_id, result.response_text)
            return self._fail(task_id, FailureReason.STALLED_LOOP.value, detail=str(error))

        decision = self.completion_evaluator(result.response_text, result.evidence)
        if isinstance(decision, Complete):
            return self._complete(task, result)
        if isinstance(decision, NotComplete):
            self.store.set_last_response(task_id, result.response_text)
            attempt_count = self.store.increment_attempt_count(task_id)
            self.store.append_event(
                task_id,
                "continue",
                {
                    "reason": decision.reason,
                    "round": attempt_count,
                    "executed_new_tool": record.executed_new_tool,
                    "text_changed": record.text_changed,
                },
            )
            self._schedule(task_id)
            return StepOutcome.CONTINUED
        if isinstance(decision, Failed):
            self.store.set_last_response(task_id, result.response_text)
            return self._fail(task_id, decision.reason)
        raise TypeError(f"Unsupported completion decision: {decision!r}")

    def _check_stall(self, task_id: str, record: RoundRecord) -> None:
        history = self.store.list_events(
            task_id,
            event_types=("continue",),
            limit=self.stall_detector.window_size - 1,
        )
        rounds = [
            RoundRecord(
                executed_new_tool=bool(event.payload.get("executed_new_tool", True)),
                text_changed=bool(event.payload.get("text_changed", True)),
            )
            for event in history
        ]
        rounds.append(record)
        if isinstance(self.stall_detector.evaluate(rounds), Stalled):
            raise StalledLoop(
                f"Task {task_id} made no progress in {self.stall_detector.threshold} rounds",
            )

    def _complete(self, task: TaskRunView, result: ExecutionResult) -> StepOutcome:
        task_id = task.task_id
        evidence = result.evidence
        if evidence.write_verified:
            for artifact in evidence.verified_artifacts:
                self.store.upsert_artifact(
                    task_id,
                    artifact.path,
                    verified=True,
                    checksum=artifact.checksum,
                )
            paths = [artifact.path for artifact in evidence.verified_artifacts]
            self.store.append_event(task_id, "tool_write_verified", {"paths": paths})
            self._emit(task, MilestoneKind.TOOL_WRITE_VERIFIED, f"Verified: {', '.join(paths)}")
        self.store.set_last_response(task_id, result.response_text)
        completed = self.store.update_status(
            task_id,
            TaskStatus.COMPLETED,
            payload={"attempt_count": task.attempt_count},
        )
        logger.info("Task %s completed", task_id)
        self._emit(completed, MilestoneKind.COMPLETED, result.response_text or "Task completed.")
        return StepOutcome.COMPLETED

    def _handle_transport_error(
        self,
        task_id: str,
        error: Exception,
        classification: FailureClassification | None,
    ) -> StepOutcome:
        retries = self.store.increment_provider_retry_count(task_id)
        payload: dict[str, object] = {"provider_retry_count": retries, "error": str(error)}
        if classification is not None:
            payload.update(classification.to_event_payload())
        if retries >= self.max_provider_retries:
            logger.warning("Task %s exhausted %d provider retries", task_id, retries)
            return self._fail(
                task_id,
                FailureReason.PROVIDER_RETRIES_EXHAUSTED.value,
                detail=str(error),
                payload=payload,
            )
        delay = self._compute_retry_delay(retry_number=retries)
        payload["delay_seconds"] = round(delay, 3)
        self.store.append_event(task_id, "retry", payload)
        logger.info("Task %s transport error, retry %d in %.2fs", task_id, retries, delay)
        self._schedule(task_id, delay_seconds=delay)
        return StepOutcome.RETRY_SCHEDULED

    def _handle_execution_error(self, task_id: str, error: Exception, *, detail: str) -> StepOutcome:
        classification = classify_error_message(str(error))
        if classification.is_transport:
            return self._handle_transport_error(task_id, error, classification)
        return self._fail(
            task_id,
            FailureReason.EXECUTION_ERROR.value,
            detail=detail,
            payload=classification.to_event_payload(),
        )

    def _fail(
        self,
        task_id: str,
        reason: str,
        *,
        detail: str | None = None,
        payload: dict[str, object] | None = None,
    ) -> StepOutcome:
        event_payload: dict[str, object] = dict(payload or {})
        event_payload["reason"] = reason
        if detail:
            event_payload["detail"] = detail
        task = self.store.update_status(task_id, TaskStatus.FAILED, payload=event_payload)
        logger.warning("Task %s failed: %s", task_id, reason)
        self._emit(task, MilestoneKind.FAILED, _FAILURE_TEXT.get(reason, f"Task failed: {reason}"))
        return StepOutcome.FAILED

    def _already_deferred(self, task_id: str) -> bool:
        latest = self.store.list_events(task_id, limit=1)
        return bool(latest) and latest[0].event_type == "sender_busy"

    def _still_running(self, task_id: str) -> bool:
        return self.store.get(task_id).status is TaskStatus.RUNNING

    def _schedule(self, task_id: str, *, delay_seconds: float = 0.0) -> None:
        self.queue.enqueue(task_id, delay_seconds=delay_seconds)

    def _emit(self, task: TaskRunView, kind: MilestoneKind, text: str | None = None) -> None:
        try:
            self.milestone_sink.emit(
                Milestone(
                    task_id=task.task_id,
                    reply_target=task.reply_target,
                    kind=kind,
                    text=text,
                ),
            )
        except Exception:
            logger.exception("Milestone sink failed for task %s (%s)", task.task_id, kind.value)

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    # -- loop plumbing ---------------------------------------------------------

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once(timeout=self.poll_interval_seconds)
            except Exception:
                logger.exception("Embedded worker error")
                self._stop_event.wait(timeout=self.poll_interval_seconds)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_event.is_set() and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after the current step", name)
            self._stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
