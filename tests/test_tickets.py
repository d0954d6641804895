import pytest

from packages.core.database.models import TicketStatus
from packages.core.db import queries
from packages.core.memory import ExpiringCache
from packages.core.services import MetricsRecorder, TicketOutcome, TicketService

from conftest import CONTACT_PHONE, USER_ID


@pytest.fixture
def history_cache():
    return ExpiringCache(ttl=300.0, name="history")


@pytest.fixture
def tickets(session_factory, history_cache):
    return TicketService(session_factory, history_cache, history_limit=10)


async def _set_status(session_factory, status: str, bot_paused: bool) -> None:
    async with session_factory() as session:
        ticket = await queries.get_ticket(session, USER_ID, CONTACT_PHONE)
        ticket.status = status
        ticket.bot_paused = bot_paused
        await session.commit()


async def test_first_message_creates_pending_ticket(tickets):
    ticket, outcome = await tickets.create_or_update_ticket(
        USER_ID, CONTACT_PHONE, "Maria", "oi", is_contact_message=True
    )

    assert outcome == TicketOutcome.CREATED
    assert ticket.status == TicketStatus.PENDING
    assert ticket.bot_paused is False
    assert ticket.message_preview == "oi"
    assert ticket.last_contact_message_at is not None


async def test_update_keeps_contact_name_and_refreshes_preview(tickets):
    await tickets.create_or_update_ticket(USER_ID, CONTACT_PHONE, "Maria", "oi", is_contact_message=True)
    ticket, outcome = await tickets.create_or_update_ticket(
        USER_ID, CONTACT_PHONE, "Someone Else", "Olá! Como posso ajudar?"
    )

    assert outcome == TicketOutcome.UPDATED
    assert ticket.contact_name == "Maria"
    assert ticket.message_preview == "Olá! Como posso ajudar?"


async def test_outbound_message_does_not_set_contact_marker(tickets):
    ticket, _ = await tickets.create_or_update_ticket(USER_ID, CONTACT_PHONE, CONTACT_PHONE, "hello")
    assert ticket.last_contact_message_at is None


async def test_completed_ticket_reopens_on_inbound(tickets, session_factory):
    """Закрытый тикет при входящем сообщении возвращается в pending без паузы."""
    await tickets.create_or_update_ticket(USER_ID, CONTACT_PHONE, "Maria", "oi", is_contact_message=True)
    await _set_status(session_factory, TicketStatus.COMPLETED, bot_paused=True)

    ticket, outcome = await tickets.create_or_update_ticket(
        USER_ID, CONTACT_PHONE, "Maria", "voltei", is_contact_message=True
    )

    assert outcome == TicketOutcome.REOPENED
    assert ticket.status == TicketStatus.PENDING
    assert ticket.bot_paused is False


async def test_completed_ticket_stays_closed_on_outbound(tickets, session_factory):
    await tickets.create_or_update_ticket(USER_ID, CONTACT_PHONE, "Maria", "oi", is_contact_message=True)
    await _set_status(session_factory, TicketStatus.COMPLETED, bot_paused=False)

    ticket, outcome = await tickets.create_or_update_ticket(USER_ID, CONTACT_PHONE, CONTACT_PHONE, "follow-up")

    assert outcome == TicketOutcome.UPDATED
    assert ticket.status == TicketStatus.COMPLETED


async def test_in_progress_ticket_keeps_status_on_inbound(tickets, session_factory):
    await tickets.create_or_update_ticket(USER_ID, CONTACT_PHONE, "Maria", "oi", is_contact_message=True)
    await _set_status(session_factory, TicketStatus.IN_PROGRESS, bot_paused=True)

    ticket, outcome = await tickets.create_or_update_ticket(
        USER_ID, CONTACT_PHONE, "Maria", "still there?", is_contact_message=True
    )

    assert outcome == TicketOutcome.UPDATED
    assert ticket.status == TicketStatus.IN_PROGRESS
    assert ticket.bot_paused is True


async def test_set_bot_paused(tickets):
    assert await tickets.set_bot_paused(USER_ID, CONTACT_PHONE) is False

    await tickets.create_or_update_ticket(USER_ID, CONTACT_PHONE, "Maria", "oi", is_contact_message=True)
    assert await tickets.set_bot_paused(USER_ID, CONTACT_PHONE) is True

    ticket = await tickets.get_ticket(USER_ID, CONTACT_PHONE)
    assert ticket.bot_paused is True


async def test_message_history_is_chronological_and_limited(tickets, session_factory, history_cache):
    recorder = MetricsRecorder(session_factory, history_cache)
    for i in range(12):
        sender = "contact" if i % 2 == 0 else "user"
        await recorder.log_message_to_ticket(USER_ID, CONTACT_PHONE, "text", f"m{i}", sender)

    history = await tickets.get_message_history(USER_ID, CONTACT_PHONE)

    assert [item["text"] for item in history] == [f"m{i}" for i in range(2, 12)]
    assert history[-1]["sender"] == "user"


async def test_message_history_is_cached_until_next_log(tickets, session_factory, history_cache):
    recorder = MetricsRecorder(session_factory, history_cache)
    await recorder.log_message_to_ticket(USER_ID, CONTACT_PHONE, "text", "first", "contact")

    assert len(await tickets.get_message_history(USER_ID, CONTACT_PHONE)) == 1
    assert (USER_ID, CONTACT_PHONE) in history_cache

    await recorder.log_message_to_ticket(USER_ID, CONTACT_PHONE, "text", "second", "contact")
    history = await tickets.get_message_history(USER_ID, CONTACT_PHONE)
    assert [item["text"] for item in history] == ["first", "second"]
