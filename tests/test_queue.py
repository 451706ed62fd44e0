"""
Staged change queue tests - ordering, stop-on-failure, busy state and audit hand-off.
"""

import threading

import pytest
from unittest.mock import MagicMock

from conftest import FakeTransport
from grantstage.core.errors import QueueBusyError
from grantstage.core.queue import ExecutionSummary, StagedChangeQueue, summarize_results
from grantstage.core.schema import ChangeExecutionResult, ChangeType, EntityType, PendingChange


def make_change(name, statements):
    return PendingChange(
        change_type=ChangeType.ALTER,
        entity_type=EntityType.ROLE,
        entity_name=name,
        description=f"Update role {name}",
        statements=list(statements),
    )


class TestQueueMutations:
    def test_add_assigns_id_and_timestamp(self, transport):
        queue = StagedChangeQueue(transport)
        original = make_change("r1", ["GRANT SHOW ON *.* TO r1"])
        change_id = queue.add(original)

        staged = queue.get(change_id)
        assert change_id.startswith("change-")
        assert staged.created_at is not None
        assert original.id == ""
        assert len(queue) == 1

    def test_ids_are_unique(self, transport):
        queue = StagedChangeQueue(transport)
        ids = {queue.add(make_change("r", ["X"])) for _ in range(5)}
        assert len(ids) == 5

    def test_remove(self, transport):
        queue = StagedChangeQueue(transport)
        change_id = queue.add(make_change("r1", ["X"]))
        assert queue.remove("change-missing") is False
        assert queue.remove(change_id) is True
        assert queue.pending == []

    def test_clear(self, transport):
        queue = StagedChangeQueue(transport)
        queue.add(make_change("r1", ["X"]))
        queue.add(make_change("r2", ["Y"]))
        assert queue.clear() == 2
        assert len(queue) == 0

    def test_mutations_rejected_while_executing(self, transport):
        queue = StagedChangeQueue(transport)
        queue._executing = True
        with pytest.raises(QueueBusyError):
            queue.add(make_change("r1", ["X"]))
        with pytest.raises(QueueBusyError):
            queue.clear()
        with pytest.raises(QueueBusyError):
            queue.execute_all()


class TestExecuteAll:
    def test_stops_at_first_failure(self):
        transport = FakeTransport(fail_markers=["BROKEN"])
        recorder = MagicMock()
        queue = StagedChangeQueue(transport, recorder=recorder)
        c1 = queue.add(make_change("r1", ["GRANT SHOW ON *.* TO r1"]))
        c2 = queue.add(make_change("r2", ["GRANT SHOW ON *.* TO r2", "GRANT BROKEN ON *.* TO r2", "NEVER"]))
        queue.add(make_change("r3", ["GRANT SHOW ON *.* TO r3"]))

        results = queue.execute_all(actor="admin")

        assert [r.success for r in results] == [True, False]
        assert results[1].change_id == c2
        assert results[1].failed_statement == "GRANT BROKEN ON *.* TO r2"
        assert results[1].statements_executed == 1
        assert "BROKEN denied" in results[1].error
        assert transport.executed == ["GRANT SHOW ON *.* TO r1", "GRANT SHOW ON *.* TO r2"]

        remaining = [c.entity_name for c in queue.pending]
        assert remaining == ["r2", "r3"]
        assert queue.get(c1) is None
        assert not queue.is_executing

    def test_every_attempted_change_is_recorded_once(self):
        recorder = MagicMock()
        queue = StagedChangeQueue(FakeTransport(fail_markers=["BROKEN"]), recorder=recorder)
        queue.add(make_change("r1", ["OK"]))
        queue.add(make_change("r2", ["BROKEN"]))
        queue.add(make_change("r3", ["OK"]))

        queue.execute_all(actor="admin")

        assert recorder.record.call_count == 2
        recorded = [(c.args[0].entity_name, c.args[1].success, c.args[2]) for c in recorder.record.call_args_list]
        assert recorded == [("r1", True, "admin"), ("r2", False, "admin")]

    def test_all_succeed_empties_queue(self, transport):
        queue = StagedChangeQueue(transport)
        queue.add(make_change("r1", ["A", "B"]))
        queue.add(make_change("r2", ["C"]))
        results = queue.execute_all()
        assert all(r.success for r in results)
        assert transport.executed == ["A", "B", "C"]
        assert len(queue) == 0
        assert queue.last_results == results

    def test_empty_queue(self, transport):
        queue = StagedChangeQueue(transport)
        assert queue.execute_all() == []
        assert not queue.is_executing

    def test_default_actor(self, transport, monkeypatch):
        monkeypatch.setenv("DEFAULT_ACTOR", "ops-bot")
        recorder = MagicMock()
        queue = StagedChangeQueue(transport, recorder=recorder)
        queue.add(make_change("r1", ["A"]))
        queue.execute_all()
        assert recorder.record.call_args.args[2] == "ops-bot"

    def test_retry_after_fix(self):
        transport = FakeTransport(fail_markers=["BROKEN"])
        queue = StagedChangeQueue(transport)
        queue.add(make_change("r1", ["BROKEN"]))
        assert queue.execute_all()[0].success is False
        transport.fail_markers = []
        assert queue.execute_all()[0].success is True
        assert len(queue) == 0

    def test_busy_flag_set_during_execution(self):
        queue = None
        observed = []

        class ObservingTransport(FakeTransport):
            def execute(self, statement):
                observed.append(queue.is_executing)
                with pytest.raises(QueueBusyError):
                    queue.remove("anything")
                super().execute(statement)

        queue = StagedChangeQueue(ObservingTransport())
        queue.add(make_change("r1", ["A"]))
        queue.execute_all()
        assert observed == [True]

    def test_concurrent_execute_rejected(self):
        release = threading.Event()
        entered = threading.Event()

        class BlockingTransport(FakeTransport):
            def execute(self, statement):
                entered.set()
                release.wait(timeout=5)
                super().execute(statement)

        queue = StagedChangeQueue(BlockingTransport())
        queue.add(make_change("r1", ["A"]))
        worker = threading.Thread(target=queue.execute_all)
        worker.start()
        try:
            assert entered.wait(timeout=5)
            with pytest.raises(QueueBusyError):
                queue.execute_all()
        finally:
            release.set()
            worker.join(timeout=5)
        assert len(queue) == 0


class TestExecuteChange:
    def test_single_change(self, transport):
        queue = StagedChangeQueue(transport)
        queue.add(make_change("r1", ["A"]))
        c2 = queue.add(make_change("r2", ["B"]))

        result = queue.execute_change(c2)

        assert result.success
        assert transport.executed == ["B"]
        assert [c.entity_name for c in queue.pending] == ["r1"]

    def test_unknown_id(self, transport):
        queue = StagedChangeQueue(transport)
        assert queue.execute_change("change-missing") is None
        assert not queue.is_executing


class TestExecutionSummary:
    def test_all_succeeded_message(self):
        results = [ChangeExecutionResult("c1", True), ChangeExecutionResult("c2", True)]
        assert summarize_results(results, 2).message == "Successfully executed 2 change(s)"

    def test_partial_message_carries_error_verbatim(self):
        results = [
            ChangeExecutionResult("c1", True),
            ChangeExecutionResult("c2", False, error="Code: 497. Not enough privileges",
                                  failed_statement="GRANT X"),
        ]
        summary = summarize_results(results, 3)
        assert summary.message == "Executed 1 of 3 changes. Failed: Code: 497. Not enough privileges"
        assert summary.failed_change_id == "c2"
        assert summary.failed_statement == "GRANT X"
        assert summary.attempted == 2

    def test_nothing_to_execute(self):
        assert ExecutionSummary(0, 0, 0).message == "No pending changes to execute"
