import asyncio
from datetime import datetime, timedelta

import pytest

from scriptvault.models.approval import ApprovalStatus, HistoryAction
from scriptvault.services.history_service import HistoryService


class _FailingSession:
    def __init__(self):
        self.added = []

    def add(self, row):
        self.added.append(row)

    async def flush(self):
        raise RuntimeError("disk full")


def test_query_orders_newest_first_and_breaks_ties_by_insertion(session_factory):
    service = HistoryService()
    stamp = datetime(2024, 5, 1, 12, 0, 0)

    async def scenario():
        async with session_factory() as session:
            await service.append(
                session, "req_1", "orders", HistoryAction.SUBMIT, "u_dev", "dev@example.com",
                ApprovalStatus.DRAFT, ApprovalStatus.PENDING, action_at=stamp,
            )
            await service.append(
                session, "req_1", "orders", HistoryAction.APPROVE, "u_manager", "manager@example.com",
                ApprovalStatus.PENDING, ApprovalStatus.APPROVED, comment="ok", action_at=stamp,
            )
            await service.append(
                session, "req_2", "orders", HistoryAction.SUBMIT, "u_dev", "dev@example.com",
                ApprovalStatus.DRAFT, ApprovalStatus.PENDING,
                metadata={"priority": "high"}, action_at=stamp + timedelta(minutes=5),
                commit=True,
            )
            by_script = await service.query_by_script(session, "orders")
            by_request = await service.query_by_request(session, "req_1")
            everything = await service.query(session)
        return by_script, by_request, everything

    by_script, by_request, everything = asyncio.run(scenario())

    assert [(row.request_id, row.action) for row in by_script] == [
        ("req_2", "submit"),
        ("req_1", "approve"),
        ("req_1", "submit"),
    ]
    assert [row.action for row in by_request] == ["approve", "submit"]
    assert len(everything) == 3
    assert all(row.history_id.startswith("hist_") for row in everything)
    assert HistoryService().parse_metadata(by_script[0]) == {"priority": "high"}


def test_append_surfaces_storage_errors():
    session = _FailingSession()

    with pytest.raises(RuntimeError):
        asyncio.run(
            HistoryService().append(
                session, "req_1", "orders", HistoryAction.SUBMIT, "u_dev", "dev@example.com",
                ApprovalStatus.DRAFT, ApprovalStatus.PENDING,
            )
        )

    assert len(session.added) == 1


def test_append_rejects_unknown_actions():
    with pytest.raises(ValueError):
        asyncio.run(
            HistoryService().append(
                _FailingSession(), "req_1", "orders", "escalate", "u_dev", "dev@example.com",
                ApprovalStatus.DRAFT, ApprovalStatus.PENDING,
            )
        )


def test_parse_metadata_tolerates_bad_json():
    class _Row:
        metadata_json = "{not json"

    assert HistoryService().parse_metadata(_Row()) == {}
