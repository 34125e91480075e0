import pytest

from fakes import (
    FAST_POLICY, PLACEHOLDER, FakeMessaging, FakePaymentGateway, FakeShopNotifications, FakeStore, FakeUnitOfWork,
    make_product
)
from shopbot.application.background import BackgroundTasks
from shopbot.application.notifications import OrderNotifier
from shopbot.application.order_state_machine import OrderStateMachine
from shopbot.application.payments import IssueInvoiceUseCase
from shopbot.application.process_payment import PaymentReconciler
from shopbot.application.tool_executor import create_tool_executor
from shopbot.domain.models import Customer, Shop


@pytest.fixture
def store():
    store = FakeStore()
    store.add_shop(Shop(id="shop-1", name="Test Shop", page_access_token="page-token"))
    store.add_customer(Customer(id="cust-1", shop_id="shop-1", platform_id="psid-1", name="Bat"))
    return store


@pytest.fixture
def unit_of_work(store):
    return FakeUnitOfWork(store)


@pytest.fixture
def product(store):
    return store.add_product(make_product())


@pytest.fixture
def background():
    return BackgroundTasks()


@pytest.fixture
def messaging():
    return FakeMessaging()


@pytest.fixture
def shop_notifications():
    return FakeShopNotifications()


@pytest.fixture
def notifier(messaging, shop_notifications, background):
    return OrderNotifier(messaging, shop_notifications, background, policy=FAST_POLICY)


@pytest.fixture
def state_machine(notifier):
    return OrderStateMachine(notifier)


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def issue_invoice(unit_of_work, gateway):
    return IssueInvoiceUseCase(unit_of_work, gateway, "https://shop.test", expiry_minutes=30, policy=FAST_POLICY)


@pytest.fixture
def reconciler(unit_of_work, gateway, state_machine, notifier):
    return PaymentReconciler(unit_of_work, gateway, state_machine, notifier, policy=FAST_POLICY)


@pytest.fixture
def executor(unit_of_work, state_machine, issue_invoice, reconciler, notifier):
    return create_tool_executor(
        unit_of_work,
        state_machine,
        issue_invoice,
        reconciler,
        notifier,
        expiry_minutes=30,
        pause_minutes=30,
        placeholder_image_url=PLACEHOLDER
    )
