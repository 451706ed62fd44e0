"""
Staged change queue - holds pending changes and executes them in order.

Execution is sequential: changes in insertion order, statements in
statement order. The first failing statement stops the whole pass.
Successful changes leave the queue; failed and unattempted ones stay
for retry or removal. Every attempted change is audited exactly once.
"""

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional

from .config import get_default_actor
from .errors import QueueBusyError
from .schema import ChangeExecutionResult, PendingChange
from .transport import Transport
from ..util.logging import logger


@dataclass
class ExecutionSummary:
    succeeded: int
    attempted: int
    total: int
    failed_change_id: Optional[str] = None
    failed_statement: Optional[str] = None
    error: Optional[str] = None

    @property
    def all_succeeded(self) -> bool:
        return self.succeeded == self.total

    @property
    def message(self) -> str:
        if self.total == 0:
            return "No pending changes to execute"
        if self.all_succeeded:
            return f"Successfully executed {self.succeeded} change(s)"
        message = f"Executed {self.succeeded} of {self.total} changes."
        if self.error:
            message += f" Failed: {self.error}"
        return message

    def to_dict(self):
        return {
            "succeeded": self.succeeded,
            "attempted": self.attempted,
            "total": self.total,
            "failed_change_id": self.failed_change_id,
            "failed_statement": self.failed_statement,
            "error": self.error,
            "message": self.message,
        }


def summarize_results(results: List[ChangeExecutionResult], total: int) -> ExecutionSummary:
    """Counts plus the first failure's statement and verbatim error text."""
    summary = ExecutionSummary(
        succeeded=sum(1 for r in results if r.success),
        attempted=len(results),
        total=total,
    )
    for result in results:
        if not result.success:
            summary.failed_change_id = result.change_id
            summary.failed_statement = result.failed_statement
            summary.error = result.error
            break
    return summary


class StagedChangeQueue:
    """Queue of pending changes with a single in-flight execution pass."""

    def __init__(self, transport: Transport, recorder=None, actor: str = None):
        self.transport = transport
        self.recorder = recorder
        self.actor = actor
        self._changes: List[PendingChange] = []
        self._lock = threading.Lock()
        self._executing = False
        self.last_results: List[ChangeExecutionResult] = []

    @property
    def is_executing(self) -> bool:
        return self._executing

    @property
    def pending(self) -> List[PendingChange]:
        with self._lock:
            return list(self._changes)

    def __len__(self) -> int:
        return len(self._changes)

    def _ensure_idle(self):
        # Caller holds the lock
        if self._executing:
            raise QueueBusyError("Queue is executing; try again when the pass completes")

    def add(self, change: PendingChange) -> str:
        """Stage a change; returns its assigned id."""
        staged = replace(
            change,
            id=f"change-{uuid.uuid4()}",
            created_at=datetime.now(),
            statements=list(change.statements),
        )
        with self._lock:
            self._ensure_idle()
            self._changes.append(staged)

        logger.log_change_staged(staged.id, staged.change_type.value, staged.entity_type.value,
                                 staged.entity_name, len(staged.statements))
        return staged.id

    def remove(self, change_id: str) -> bool:
        """Remove a staged change; absent ids are a no-op."""
        with self._lock:
            self._ensure_idle()
            before = len(self._changes)
            self._changes = [c for c in self._changes if c.id != change_id]
            found = len(self._changes) != before

        logger.log_change_removed(change_id, found)
        return found

    def clear(self) -> int:
        with self._lock:
            self._ensure_idle()
            count = len(self._changes)
            self._changes = []

        logger.log_queue_cleared(count)
        return count

    def get(self, change_id: str) -> Optional[PendingChange]:
        with self._lock:
            for change in self._changes:
                if change.id == change_id:
                    return change
        return None

    def _begin(self, change_ids: Optional[List[str]] = None) -> List[PendingChange]:
        with self._lock:
            if self._executing:
                raise QueueBusyError("An execution pass is already in flight")
            self._executing = True
            if change_ids is None:
                return list(self._changes)
            return [c for c in self._changes if c.id in change_ids]

    def _finish(self, results: List[ChangeExecutionResult]):
        succeeded = {r.change_id for r in results if r.success}
        with self._lock:
            self._changes = [c for c in self._changes if c.id not in succeeded]
            self.last_results = list(results)
            self._executing = False

    def _run_change(self, change: PendingChange) -> ChangeExecutionResult:
        executed = 0
        for statement in change.statements:
            try:
                self.transport.execute(statement)
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.log_statement_failed(change.id, statement, error)
                return ChangeExecutionResult(
                    change_id=change.id,
                    success=False,
                    error=error,
                    failed_statement=statement,
                    statements_executed=executed,
                )
            executed += 1
        return ChangeExecutionResult(change_id=change.id, success=True, statements_executed=executed)

    def _record(self, change: PendingChange, result: ChangeExecutionResult, actor: str):
        logger.log_change_executed(change.id, change.entity_name, result.success,
                                   result.statements_executed, result.error)
        if self.recorder is not None:
            self.recorder.record(change, result, actor)

    def execute_all(self, actor: str = None) -> List[ChangeExecutionResult]:
        """Run every staged change in order, stopping at the first failure."""
        changes = self._begin()
        actor = actor or self.actor or get_default_actor()
        results: List[ChangeExecutionResult] = []
        try:
            logger.log_execution_started(len(changes), actor)
            for change in changes:
                result = self._run_change(change)
                results.append(result)
                self._record(change, result, actor)
                if not result.success:
                    break
        finally:
            self._finish(results)

        logger.log_execution_finished(sum(1 for r in results if r.success), len(results), len(changes))
        return results

    def execute_change(self, change_id: str, actor: str = None) -> Optional[ChangeExecutionResult]:
        """Run a single staged change; None when the id is not queued."""
        changes = self._begin([change_id])
        if not changes:
            with self._lock:
                self._executing = False
            return None

        actor = actor or self.actor or get_default_actor()
        results: List[ChangeExecutionResult] = []
        try:
            change = changes[0]
            result = self._run_change(change)
            results.append(result)
            self._record(change, result, actor)
        finally:
            self._finish(results)
        return result
