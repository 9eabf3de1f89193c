"""
Tests for the Celery maintenance tasks (taxibot/workers/tasks.py)

- expiração de conversas paradas
- refresh das corridas sem callback recente
- limpeza da tabela de idempotência
- event loop por task
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from taxibot.db.models.conversation import Conversation
from taxibot.db.models.ride import Ride, RideStatus
from taxibot.db.models.webhook_event import WebhookEvent
from taxibot.domain.services.dispatch.base_provider import ProviderCallback
from taxibot.domain.services.ride_service import RideService
from taxibot.state_machine.states import ConversationState
from taxibot.workers import tasks
from taxibot.workers.celery_app import celery_app
from tests.conftest import quoted_context


@pytest.fixture
def task_session(db_session, monkeypatch):
    """As tasks usam a sessão do teste em vez de abrir engine próprio"""

    @asynccontextmanager
    async def _session():
        yield db_session

    monkeypatch.setattr(tasks, "get_task_session", _session)
    return db_session


@pytest.fixture
def task_ride_service(monkeypatch, channel, dispatch):
    monkeypatch.setattr(
        "taxibot.domain.services.conversation_service.build_ride_service",
        lambda db: RideService(db, channel, dispatch),
    )


async def _age_ride(db, ride: Ride, minutes: int) -> None:
    await db.execute(
        update(Ride).where(Ride.id == ride.id).values(updated_at=datetime.utcnow() - timedelta(minutes=minutes))
    )
    await db.commit()


class TestExpireIdleConversations:

    @pytest.mark.integration
    async def test_expires_only_idle(self, task_session, customer_factory, conversation_factory):
        idle_customer = await customer_factory("5519990000001")
        fresh_customer = await customer_factory("5519990000002")
        idle = await conversation_factory(
            idle_customer, ConversationState.AWAITING_DESTINATION, last_message_at=datetime.utcnow() - timedelta(hours=1)
        )
        fresh = await conversation_factory(fresh_customer, ConversationState.AWAITING_DESTINATION)

        result = await tasks._expire_idle_conversations()

        assert result == {"expired": 1}
        rows = (await task_session.execute(
            select(Conversation.id, Conversation.is_active).execution_options(populate_existing=True)
        )).all()
        assert dict(rows) == {idle.id: False, fresh.id: True}

    @pytest.mark.integration
    async def test_nothing_to_expire(self, task_session):
        assert await tasks._expire_idle_conversations() == {"expired": 0}


class TestRefreshActiveRides:

    @pytest.mark.integration
    async def test_refreshes_stale_rides(
        self, task_session, task_ride_service, dispatch, channel, customer_factory, conversation_factory, ride_factory
    ):
        customer = await customer_factory()
        conversation = await conversation_factory(customer, ConversationState.RIDE_CREATED, quoted_context())
        stale = await ride_factory(customer, conversation, provider_ride_id="MG-900")
        await _age_ride(task_session, stale, minutes=10)
        dispatch.status_result = ProviderCallback(provider_ride_id="MG-900", status_code="E")

        result = await tasks._refresh_active_rides()

        assert result == {"candidates": 1, "refreshed": 1, "failed": 0}
        await task_session.refresh(stale)
        assert stale.status == RideStatus.IN_PROGRESS

    @pytest.mark.integration
    async def test_recent_and_finished_rides_are_skipped(
        self, task_session, task_ride_service, customer_factory, ride_factory
    ):
        customer = await customer_factory()
        await ride_factory(customer, provider_ride_id="MG-1")
        finished = await ride_factory(customer, status=RideStatus.COMPLETED, provider_ride_id="MG-2")
        await _age_ride(task_session, finished, minutes=30)

        result = await tasks._refresh_active_rides()

        assert result["candidates"] == 0

    @pytest.mark.integration
    async def test_provider_failure_is_counted(
        self, task_session, task_ride_service, customer_factory, conversation_factory, ride_factory
    ):
        customer = await customer_factory()
        conversation = await conversation_factory(customer, ConversationState.RIDE_CREATED, quoted_context())
        ride = await ride_factory(customer, conversation)
        await _age_ride(task_session, ride, minutes=10)

        result = await tasks._refresh_active_rides()

        assert result == {"candidates": 1, "refreshed": 0, "failed": 1}


class TestCleanupWebhookEvents:

    @pytest.mark.integration
    async def test_deletes_old_events(self, task_session):
        task_session.add_all([
            WebhookEvent(message_id="wamid.old", source="whatsapp_cloud", status="completed",
                         created_at=datetime.utcnow() - timedelta(days=8)),
            WebhookEvent(message_id="wamid.old.stuck", source="whatsapp_cloud", status="processing",
                         created_at=datetime.utcnow() - timedelta(days=10)),
            WebhookEvent(message_id="wamid.new", source="whatsapp_cloud", status="completed",
                         created_at=datetime.utcnow() - timedelta(days=1)),
        ])
        await task_session.commit()

        result = await tasks._cleanup_old_webhook_events()

        assert result == {"deleted": 2}
        remaining = (await task_session.execute(select(WebhookEvent.message_id))).scalars().all()
        assert remaining == ["wamid.new"]


class TestTaskPlumbing:

    @pytest.mark.unit
    def test_run_async_uses_fresh_loop(self):
        async def answer():
            return 42

        assert tasks.run_async(answer()) == 42

    @pytest.mark.unit
    def test_beat_schedule(self):
        scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert scheduled == {
            "taxibot.workers.tasks.expire_idle_conversations",
            "taxibot.workers.tasks.refresh_active_rides",
            "taxibot.workers.tasks.cleanup_old_webhook_events",
        }
        assert set(scheduled) <= set(celery_app.tasks.keys())

    @pytest.mark.unit
    def test_inbound_retry_task_is_registered(self):
        assert tasks.process_inbound_message.name in celery_app.tasks
