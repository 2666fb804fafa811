"""
Tests for the execution record manager: optimistic merges, logs, views.
"""

import asyncio

import pytest

from services.execution.errors import ExecutionNotFoundError


@pytest.fixture
async def execution(records):
    return await records.create_execution(
        workflow_id="wf-1",
        org_id="org-1",
        version=1,
        trigger={
            "type": "api",
            "payload": {"email": "ada@example.com", "apiKey": "secret"},
            "source": {"ip": "10.0.0.1", "userAgent": "curl", "actor": "public"},
        },
    )


class TestProgress:
    async def test_concurrent_appends_are_merged(self, records, execution):
        """Concurrent writers never lose each other's completed nodes."""
        node_ids = [f"node-{i}" for i in range(8)]

        await asyncio.gather(*[
            records.update_progress(execution.id, append={"completed_nodes": [node_id]})
            for node_id in node_ids
        ])

        fresh = await records.get_execution(execution.id)
        assert sorted(fresh.completed_nodes) == sorted(node_ids)
        assert fresh.revision == 8

    async def test_append_does_not_duplicate(self, records, execution):
        await records.update_progress(execution.id, append={"completed_nodes": ["a", "b"]})
        updated = await records.update_progress(execution.id, append={"completed_nodes": ["b", "c"]})
        assert updated.completed_nodes == ["a", "b", "c"]

    async def test_unknown_field_rejected(self, records, execution):
        with pytest.raises(ValueError):
            await records.update_progress(execution.id, {"org_id": "other"})

    async def test_missing_execution(self, records):
        with pytest.raises(ExecutionNotFoundError):
            await records.update_progress("does-not-exist", {"current_node_id": "x"})

    async def test_terminal_record_is_frozen(self, records, execution):
        await records.mark_running(execution.id)
        done = await records.finalize(execution.id, success=True, output={"ok": True})
        assert done.status == "completed"
        assert done.result == {"success": True, "output": {"ok": True}}

        after = await records.update_progress(execution.id, {"current_node_id": "late"},
                                              append={"completed_nodes": ["late"]})

        assert after.status == "completed"
        assert after.current_node_id is None
        assert "late" not in (after.completed_nodes or [])

    async def test_cancel_is_terminal(self, records, execution):
        await records.mark_running(execution.id)

        cancelled = await records.cancel(execution.id, "Stopped by user")

        assert cancelled.status == "cancelled"
        assert cancelled.result["error"]["code"] == "CANCELLED"
        assert await records.is_cancelled(execution.id)
        # Cancelling again is a no-op
        again = await records.cancel(execution.id)
        assert again.result["error"]["message"] == "Stopped by user"


class TestLogs:
    async def test_logs_are_ordered(self, records, execution):
        for index in range(5):
            await records.append_log(execution.id, "node_complete", f"step {index}", node_id=f"n{index}")

        logs = await records.get_logs(execution.id)

        assert [entry.message for entry in logs] == [f"step {i}" for i in range(5)]
        sequences = [records.log_to_dict(entry)["sequence"] for entry in logs]
        assert sequences == sorted(sequences)

    async def test_log_limit(self, records, execution):
        for index in range(3):
            await records.append_log(execution.id, "info", f"m{index}")
        assert len(await records.get_logs(execution.id, limit=2)) == 2


class TestViews:
    async def test_public_view_is_sanitized(self, records, execution):
        await records.append_log(execution.id, "execution_start", "started", data={"rootNodeId": "t"})
        fresh = await records.get_execution(execution.id)

        view = records.public_view(fresh, await records.get_logs(execution.id))

        assert set(view) == {
            "executionId", "workflowId", "status", "startedAt", "completedAt", "currentNodeId",
            "completedNodes", "failedNodes", "result", "metrics", "logs",
        }
        assert "secret" not in str(view)
        assert "10.0.0.1" not in str(view)
        assert view["logs"][0] == {
            "nodeId": None,
            "timestamp": view["logs"][0]["timestamp"],
            "level": "info",
            "event": "execution_start",
            "message": "started",
            "data": {"rootNodeId": "t"},
        }

    async def test_full_view_keeps_trigger(self, records, execution):
        data = records.to_dict(execution)
        assert data["trigger"]["source"]["ip"] == "10.0.0.1"
        assert data["status"] == "pending"
        assert data["context"]["nodeOutputs"] == {}
