from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopbot.application.interfaces import UnitOfWork as AbstractUnitOfWork
from shopbot.infrastructure.repositories import (
    SQLAlchemyCartRepository,
    SQLAlchemyChatHistoryRepository,
    SQLAlchemyCustomerRepository,
    SQLAlchemyOrderRepository,
    SQLAlchemyPaymentRepository,
    SQLAlchemyProductRepository,
    SQLAlchemyShopRepository
)


class UnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                uow_impl = _UnitOfWorkImpl(session)
                yield uow_impl
                # без commit изменения откатываются
                await session.rollback()
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImpl(AbstractUnitOfWork):
    def __init__(self, session: AsyncSession):
        self._session = session
        self._shops = SQLAlchemyShopRepository(session)
        self._products = SQLAlchemyProductRepository(session)
        self._carts = SQLAlchemyCartRepository(session)
        self._orders = SQLAlchemyOrderRepository(session)
        self._payments = SQLAlchemyPaymentRepository(session)
        self._customers = SQLAlchemyCustomerRepository(session)
        self._chat_history = SQLAlchemyChatHistoryRepository(session)

    @property
    def shops(self):
        return self._shops

    @property
    def products(self):
        return self._products

    @property
    def carts(self):
        return self._carts

    @property
    def orders(self):
        return self._orders

    @property
    def payments(self):
        return self._payments

    @property
    def customers(self):
        return self._customers

    @property
    def chat_history(self):
        return self._chat_history

    async def commit(self):
        await self._session.commit()

    async def rollback(self):
        await self._session.rollback()
