import asyncio
from datetime import datetime

import pytest
from sqlalchemy import func, select

from config import Settings
from models import Contact, Conversation, Message
from services.inbound_processor import InboundEventProcessor
from tests.factories import PHONE_NUMBER_ID_B, TENANT_A, TENANT_B, text_message, webhook_payload


async def _conversation(session, tenant_id, phone):
    result = await session.execute(
        select(Conversation)
        .join(Contact, Contact.id == Conversation.contact_id)
        .where(Contact.tenant_id == tenant_id, Contact.phone_e164 == phone)
    )
    return result.scalar_one()


async def _count(session, model, *where):
    return (await session.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


@pytest.mark.asyncio
async def test_first_inbound_message_creates_contact_conversation_and_message(db_session, settings):
    """
    1. Webhook from a new number on channel PN1.
    2. Contact/conversation/message land in tenant A.
    3. Unread counter starts at 1.
    """
    result = await InboundEventProcessor(db_session, settings).handle(
        webhook_payload(messages=[text_message(wa_id="wamid.IN1", body="Hola, quiero info")])
    )

    assert result.summary() == {"stored": 1}
    assert result.entries[0].tenant_id == TENANT_A

    contact = (await db_session.execute(select(Contact))).scalar_one()
    assert contact.phone_e164 == "+5491122334455"
    assert contact.tenant_id == TENANT_A
    assert contact.last_seen_at == datetime(2024, 5, 29, 16, 26, 40)

    conv = await _conversation(db_session, TENANT_A, "+5491122334455")
    assert conv.unread_count == 1
    assert conv.status == "open"
    assert conv.last_message_at == datetime(2024, 5, 29, 16, 26, 40)

    msg = (await db_session.execute(select(Message))).scalar_one()
    assert msg.direction == "in"
    assert msg.status == "delivered"
    assert msg.text_body == "Hola, quiero info"
    assert msg.wa_message_id == "wamid.IN1"
    assert msg.conversation_id == conv.id
    assert msg.payload["id"] == "wamid.IN1"


@pytest.mark.asyncio
async def test_redelivery_is_idempotent(db_session, settings):
    """At-least-once delivery: the same wamid twice must not double-count unread."""
    payload = webhook_payload(messages=[text_message(wa_id="wamid.DUP")])
    processor = InboundEventProcessor(db_session, settings)

    first = await processor.handle(payload)
    second = await processor.handle(payload)

    assert first.summary() == {"stored": 1}
    assert second.summary() == {"duplicate": 1}

    assert await _count(db_session, Message) == 1
    conv = await _conversation(db_session, TENANT_A, "+5491122334455")
    await db_session.refresh(conv)
    assert conv.unread_count == 1


@pytest.mark.asyncio
async def test_unread_increments_and_last_message_at_never_moves_back(db_session, settings):
    processor = InboundEventProcessor(db_session, settings)

    await processor.handle(webhook_payload(messages=[text_message(wa_id="wamid.1", ts="1717000100")]))
    # Older message delivered late
    await processor.handle(webhook_payload(messages=[text_message(wa_id="wamid.2", ts="1717000000")]))

    conv = await _conversation(db_session, TENANT_A, "+5491122334455")
    await db_session.refresh(conv)
    assert conv.unread_count == 2
    assert conv.last_message_at == datetime(2024, 5, 29, 16, 28, 20)

    contact = (await db_session.execute(select(Contact))).scalar_one()
    await db_session.refresh(contact)
    assert contact.last_seen_at == datetime(2024, 5, 29, 16, 28, 20)


@pytest.mark.asyncio
@pytest.mark.parametrize("parked", ["closed", "snoozed"])
async def test_inbound_message_reopens_parked_conversation(db_session, settings, parked):
    processor = InboundEventProcessor(db_session, settings)
    await processor.handle(webhook_payload(messages=[text_message(wa_id="wamid.1", ts="1717000000")]))

    conv = await _conversation(db_session, TENANT_A, "+5491122334455")
    conv.status = parked
    await db_session.commit()

    await processor.handle(webhook_payload(messages=[text_message(wa_id="wamid.2", ts="1717000100")]))

    await db_session.refresh(conv)
    assert conv.status == "open"
    assert conv.unread_count == 2


@pytest.mark.asyncio
async def test_concurrent_redeliveries_store_exactly_once(seeded, session_factory, settings):
    """The same wamid racing with itself: one stored, the rest duplicates, unread counted once."""
    payload = webhook_payload(messages=[text_message(wa_id="wamid.RACE")])

    async def deliver():
        async with session_factory() as session:
            return await InboundEventProcessor(session, settings).handle(payload)

    results = await asyncio.gather(*(deliver() for _ in range(5)))

    outcomes = sorted(r.entries[0].outcome for r in results)
    assert outcomes == ["duplicate"] * 4 + ["stored"]

    async with session_factory() as session:
        assert await _count(session, Message) == 1
        conv = await _conversation(session, TENANT_A, "+5491122334455")
        assert conv.unread_count == 1


@pytest.mark.asyncio
async def test_batched_delivery_failures_are_isolated(db_session, settings):
    """An entry for an unmapped channel fails alone; the rest of the batch is stored."""
    payload = webhook_payload(messages=[text_message(wa_id="wamid.OK", sender="5491100000001")])
    payload["entry"].append(
        webhook_payload(messages=[text_message(wa_id="wamid.LOST", sender="5491100000002")],
                        phone_number_id="UNMAPPED")["entry"][0]
    )
    payload["entry"][0]["changes"][0]["value"]["messages"].append({"id": "wamid.NOFROM", "type": "text"})

    result = await InboundEventProcessor(db_session, settings).handle(payload)

    assert result.count("stored") == 1
    assert result.count("failed") == 1
    assert result.count("skipped") == 1
    failed = [e for e in result.entries if e.outcome == "failed"][0]
    assert failed.key == "wamid.LOST"
    assert failed.error == "missing_tenant_mapping"

    assert await _count(db_session, Message) == 1
    assert await _count(db_session, Contact) == 1


@pytest.mark.asyncio
async def test_unmapped_channel_falls_back_to_default_tenant(db_session):
    settings = Settings(DEFAULT_TENANT_ID=TENANT_B)
    result = await InboundEventProcessor(db_session, settings).handle(
        webhook_payload(messages=[text_message()], phone_number_id="UNMAPPED")
    )

    assert result.summary() == {"stored": 1}
    assert result.entries[0].tenant_id == TENANT_B


@pytest.mark.asyncio
async def test_mapped_channel_wins_over_default_tenant(db_session):
    settings = Settings(DEFAULT_TENANT_ID=TENANT_B)
    result = await InboundEventProcessor(db_session, settings).handle(
        webhook_payload(messages=[text_message()])
    )

    assert result.entries[0].tenant_id == TENANT_A


@pytest.mark.asyncio
async def test_same_phone_in_two_tenants_stays_separate(db_session, settings):
    processor = InboundEventProcessor(db_session, settings)

    await processor.handle(webhook_payload(messages=[text_message(wa_id="wamid.A")]))
    await processor.handle(webhook_payload(messages=[text_message(wa_id="wamid.B")], phone_number_id=PHONE_NUMBER_ID_B))

    assert await _count(db_session, Contact) == 2
    assert await _count(db_session, Conversation) == 2
    assert await _count(db_session, Contact, Contact.tenant_id == TENANT_B) == 1


@pytest.mark.asyncio
async def test_same_wamid_in_two_tenants_is_not_a_duplicate(db_session, settings):
    processor = InboundEventProcessor(db_session, settings)

    first = await processor.handle(webhook_payload(messages=[text_message(wa_id="wamid.SHARED")]))
    second = await processor.handle(
        webhook_payload(messages=[text_message(wa_id="wamid.SHARED")], phone_number_id=PHONE_NUMBER_ID_B)
    )

    assert first.summary() == second.summary() == {"stored": 1}


@pytest.mark.asyncio
async def test_concurrent_first_messages_converge_on_one_conversation(seeded, session_factory, settings):
    """Parallel deliveries from a brand-new number: one contact, one conversation, exact unread."""
    async def deliver(i):
        async with session_factory() as session:
            return await InboundEventProcessor(session, settings).handle(
                webhook_payload(messages=[text_message(wa_id=f"wamid.C{i}", ts=str(1717000000 + i))])
            )

    results = await asyncio.gather(*(deliver(i) for i in range(5)))

    assert all(r.summary() == {"stored": 1} for r in results)

    async with session_factory() as session:
        assert await _count(session, Contact) == 1
        assert await _count(session, Conversation) == 1
        conv = await _conversation(session, TENANT_A, "+5491122334455")
        assert conv.unread_count == 5
        assert conv.last_message_at == datetime(2024, 5, 29, 16, 26, 44)


@pytest.mark.asyncio
async def test_non_text_message_is_stored_without_body(db_session, settings):
    image = {"from": "5491122334455", "id": "wamid.IMG", "timestamp": "1717000000",
             "type": "image", "image": {"id": "media-1", "mime_type": "image/jpeg"}}

    result = await InboundEventProcessor(db_session, settings).handle(webhook_payload(messages=[image]))

    assert result.summary() == {"stored": 1}
    msg = (await db_session.execute(select(Message))).scalar_one()
    assert msg.type == "image"
    assert msg.text_body is None
    assert msg.payload["image"]["id"] == "media-1"


@pytest.mark.asyncio
async def test_empty_payload_yields_no_entries(db_session, settings):
    result = await InboundEventProcessor(db_session, settings).handle({"object": "whatsapp_business_account"})
    assert result.entries == []


@pytest.mark.asyncio
async def test_reference_scenario_delivered_twice(db_session, settings):
    payload = {"entry": [{"changes": [{"value": {
        "metadata": {"phone_number_id": "PN1"},
        "messages": [{"from": "5491122334455", "id": "wamid.A", "type": "text",
                      "text": {"body": "hola"}, "timestamp": "1700000000"}],
    }}]}]}
    processor = InboundEventProcessor(db_session, settings)

    await processor.handle(payload)
    await processor.handle(payload)

    contacts = (await db_session.execute(select(Contact))).scalars().all()
    assert [c.phone_e164 for c in contacts] == ["+5491122334455"]

    conv = (await db_session.execute(select(Conversation))).scalar_one()
    await db_session.refresh(conv)
    assert conv.status == "open"
    assert conv.unread_count == 1

    msg = (await db_session.execute(select(Message))).scalar_one()
    assert (msg.direction, msg.status, msg.wa_message_id) == ("in", "delivered", "wamid.A")
