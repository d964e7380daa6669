from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, delete

from marketplace.enums import ProductType
from marketplace.models import Order, OrderItem, Outbox, Product, User
from marketplace.services.catalog import SqlCatalog
from marketplace.services.purchase_service import PurchaseService


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeStore:
    """In-memory document store; can be told to fail."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.create_calls: list[tuple[str, str, dict[str, Any]]] = []
        self.deleted: list[str] = []
        self.fail_with: Exception | None = None
        self.fail_on_template: str | None = None
        self.closed = False

    def create_user_record(
        self, user_id: str, template_id: str, template_structure: dict[str, Any]
    ) -> str:
        self.create_calls.append((user_id, template_id, template_structure))
        if self.fail_with is not None and self.fail_on_template in (None, template_id):
            raise self.fail_with
        record_id = f"rec_{len(self.create_calls)}"
        self.records[record_id] = {
            "user_id": user_id,
            "product_id": template_id,
            "template_structure": template_structure,
        }
        return record_id

    def delete_user_record(self, record_id: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.deleted.append(record_id)
        self.records.pop(record_id, None)

    def close(self) -> None:
        self.closed = True


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()
        # Clean tables after each test (children first).
        session.exec(delete(OrderItem))
        session.exec(delete(Outbox))
        session.exec(delete(Order))
        session.exec(delete(Product))
        session.exec(delete(User))
        session.commit()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def user(db) -> User:
    user = User(email="buyer@example.com", name="Buyer")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def make_product(db):
    def _make(
        *,
        product_type: ProductType,
        price: str,
        name_ar: str = "قالب",
        sale_price: str | None = None,
        template_structure: dict | None = None,
        is_active: bool = True,
    ) -> Product:
        product = Product(
            name_ar=name_ar,
            name_en="Template",
            price=Decimal(price),
            sale_price=Decimal(sale_price) if sale_price is not None else None,
            type=product_type,
            template_structure=template_structure,
            is_active=is_active,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def purchase_service(db, clock) -> PurchaseService:
    return PurchaseService(session=db, catalog=SqlCatalog(db), clock=clock, outbox_max_attempts=3)
