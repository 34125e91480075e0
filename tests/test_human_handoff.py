from datetime import datetime, timezone

import pytest

from fakes import FAST_POLICY, FakeMessaging
from shopbot.application.human_handoff import HumanReplyUseCase
from shopbot.domain.exceptions import CustomerNotFoundError, MessagingServiceError, ValidationError
from shopbot.domain.models import Customer


async def test_human_reply_pauses_ai_and_forwards_text(store, unit_of_work, messaging):
    use_case = HumanReplyUseCase(unit_of_work, messaging, pause_minutes=30, policy=FAST_POLICY)

    until = await use_case("cust-1", "Hi, this is Anu from the shop. Your parcel leaves today.")

    assert store.customers["cust-1"].ai_paused_until == until
    assert store.customers["cust-1"].is_ai_paused(datetime.now(timezone.utc))
    assert messaging.sent == [{
        "recipient_id": "psid-1",
        "text": "Hi, this is Anu from the shop. Your parcel leaves today.",
        "tag": None,
        "token": "page-token",
    }]
    assert store.chat[-1].role == "assistant"


async def test_repeated_reply_extends_pause(store, unit_of_work, messaging):
    use_case = HumanReplyUseCase(unit_of_work, messaging, policy=FAST_POLICY)

    first = await use_case("cust-1", "one")
    second = await use_case("cust-1", "two")

    assert second >= first
    assert store.customers["cust-1"].ai_paused_until == second


async def test_unknown_customer(unit_of_work, messaging):
    with pytest.raises(CustomerNotFoundError):
        await HumanReplyUseCase(unit_of_work, messaging)("missing", "hello")


async def test_unreachable_customer_is_not_paused(store, unit_of_work, messaging):
    store.add_customer(Customer(id="cust-web", shop_id="shop-1", platform_id=None))

    with pytest.raises(ValidationError):
        await HumanReplyUseCase(unit_of_work, messaging)("cust-web", "hello")

    assert store.customers["cust-web"].ai_paused_until is None
    assert store.chat == []


async def test_messenger_outage_is_reported(store, unit_of_work):
    messaging = FakeMessaging(fail_times=10)

    with pytest.raises(MessagingServiceError):
        await HumanReplyUseCase(unit_of_work, messaging, policy=FAST_POLICY)("cust-1", "hello")


async def test_transient_messenger_error_is_retried(store, unit_of_work):
    messaging = FakeMessaging(fail_times=1)

    await HumanReplyUseCase(unit_of_work, messaging, policy=FAST_POLICY)("cust-1", "hello")

    assert len(messaging.sent) == 1
