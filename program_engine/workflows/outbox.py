"""
Automation outbox.

Services enqueue triggers after their transaction commits; the outbox
runs the evaluator for each job through a scheduler so that automation
side effects never block or abort the mutation that caused them.
Jobs that fail on every allowed attempt are moved to ``dead_letters``.
"""

import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional

if TYPE_CHECKING:
    from .automations import AutomationEvaluator

logger = logging.getLogger(__name__)


def run_immediately(drain: Callable[[], int]):
    """Default scheduler: drain the outbox inline."""
    drain()


class AutomationJob:
    """A pending automation evaluation."""

    def __init__(
        self,
        trigger: str,
        program_id: str,
        user_id: str,
        process_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.trigger = trigger
        self.program_id = program_id
        self.user_id = user_id
        self.process_id = process_id
        self.data = data or {}
        self.attempts = 0
        self.last_error: Optional[str] = None
        self.enqueued_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for serialization."""
        return {
            "id": self.id,
            "trigger": self.trigger,
            "program_id": self.program_id,
            "user_id": self.user_id,
            "process_id": self.process_id,
            "data": self.data,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at.isoformat(),
        }


class AutomationOutbox:
    """
    Queue of automation jobs awaiting evaluation.

    Args:
        evaluator: AutomationEvaluator that runs each job
        scheduler: Callable receiving ``drain``; None leaves jobs pending
                   until ``drain()`` is called explicitly
        max_attempts: Attempts per job before it is dead-lettered
    """

    def __init__(
        self,
        evaluator: "AutomationEvaluator",
        scheduler: Optional[Callable[[Callable[[], int]], Any]] = run_immediately,
        max_attempts: int = 1,
    ):
        self.evaluator = evaluator
        self.scheduler = scheduler
        self.max_attempts = max(1, max_attempts)
        self.pending: Deque[AutomationJob] = deque()
        self.dead_letters: List[AutomationJob] = []
        self.completed = 0
        self._lock = threading.Lock()

    def enqueue(
        self,
        trigger: str,
        program_id: str,
        user_id: str,
        process_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> AutomationJob:
        """
        Queue a trigger for evaluation and hand the drain to the scheduler.

        Returns:
            The queued job
        """
        job = AutomationJob(trigger, program_id, user_id, process_id=process_id, data=data)
        with self._lock:
            self.pending.append(job)
        logger.debug(f"Enqueued automation job {job.id} ({trigger}) for program {program_id}")

        if self.scheduler is not None:
            try:
                self.scheduler(self.drain)
            except Exception as e:
                logger.error(f"Automation scheduler failed for job {job.id}: {e}")
        return job

    def drain(self) -> int:
        """
        Run every pending job.

        Returns:
            Number of jobs that completed successfully
        """
        succeeded = 0
        while True:
            with self._lock:
                if not self.pending:
                    break
                job = self.pending.popleft()
            if self._run(job):
                succeeded += 1
        return succeeded

    def _run(self, job: AutomationJob) -> bool:
        while job.attempts < self.max_attempts:
            job.attempts += 1
            try:
                self.evaluator.evaluate(
                    job.trigger,
                    job.program_id,
                    job.user_id,
                    process_id=job.process_id,
                    data=job.data,
                )
                with self._lock:
                    self.completed += 1
                return True
            except Exception as e:
                job.last_error = str(e)
                logger.error(
                    f"Automation job {job.id} ({job.trigger}) failed on attempt "
                    f"{job.attempts}/{self.max_attempts}: {e}"
                )

        with self._lock:
            self.dead_letters.append(job)
        logger.warning(f"Automation job {job.id} moved to dead letters")
        return False

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "pending": len(self.pending),
                "completed": self.completed,
                "dead_letters": len(self.dead_letters),
            }
