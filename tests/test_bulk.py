from datetime import date
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base, build_engine
from models import CurrencyCode, Tag, Transaction, TransactionType
from periods import Period
from reconciliation import BudgetStatus
from schemas import TagBudgetIn, TransactionIn
from services import BudgetService, BulkTransactionService, CSVService, TransactionService


def _engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    return engine


def _item(**overrides) -> dict:
    item = {
        "amount": "12.50",
        "type": "EXPENSE",
        "description": "Coffee",
        "date": "2024-03-01",
        "tags": [],
    }
    item.update(overrides)
    return item


def _count(session: Session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_import_reports_failures_and_keeps_the_rest() -> None:
    items = [_item(description=f"Row {i}") for i in range(12)]
    items[2] = _item(description="")
    items[4] = _item(amount="-5")
    items[7] = _item(currency="XYZ")
    items[10] = "not an object"
    items[11] = _item(amount=0, type="income", currency="eur")

    with Session(_engine()) as session:
        result = BulkTransactionService(session).import_transactions(items)

        assert result.success is True
        assert result.total == 12
        assert result.created == 8
        assert len(result.errors) == 4
        assert result.errors[0] == "Transaction 3: Missing required fields"
        assert result.errors[1].startswith("Transaction 5: ")
        assert result.errors[2].startswith("Transaction 8: ")
        assert result.errors[3] == "Transaction 11: Missing required fields"
        assert _count(session) == 8

        last = session.scalars(select(Transaction).order_by(Transaction.id.desc())).first()
        assert last.amount_cents == 0
        assert last.type == TransactionType.income
        assert last.currency == CurrencyCode.eur


def test_import_defaults_currency_and_merges_extra_tags() -> None:
    items = [
        _item(tags=["Food", "Food"], date="2024-03-01T08:30:00Z"),
        _item(tags=["Food"]),
    ]
    with Session(_engine()) as session:
        result = BulkTransactionService(session).import_transactions(
            items, {0: ["Trip", "Food"], 1: ["Trip"]}
        )

        assert result.created == 2
        first, second = session.scalars(select(Transaction).order_by(Transaction.id)).all()
        assert first.tags == ["Food", "Trip"]
        assert second.tags == ["Food", "Trip"]
        assert first.currency == CurrencyCode.usd
        assert first.date == date(2024, 3, 1)
        assert session.scalar(select(func.count(Tag.id))) == 2


def test_bulk_delete_only_touches_owned_rows() -> None:
    with Session(_engine()) as session:
        imported = BulkTransactionService(session).import_transactions(
            [_item(), _item(), _item()]
        )
        assert imported.created == 3
        own_ids = list(session.scalars(select(Transaction.id)).all())
        foreign = TransactionService(session, user_id=2).create(
            TransactionIn(
                date=date(2024, 3, 1),
                type=TransactionType.expense,
                amount=Decimal("9.99"),
                description="Someone else",
            )
        )

        result = BulkTransactionService(session).delete_transactions(
            [own_ids[0], own_ids[1], foreign.id, 9999, "abc", None, 1.5]
        )

        assert result.success is True
        assert result.deleted == 2
        assert result.total == 7
        assert result.errors == []
        remaining = set(session.scalars(select(Transaction.id)).all())
        assert remaining == {own_ids[2], foreign.id}


def test_bulk_delete_failed_batch_does_not_block_later_batches(monkeypatch) -> None:
    with Session(_engine()) as session:
        BulkTransactionService(session).import_transactions([_item() for _ in range(4)])
        ids = list(session.scalars(select(Transaction.id).order_by(Transaction.id)).all())

        service = BulkTransactionService(session)
        service.settings = SimpleNamespace(delete_batch_size=2)

        real_execute = session.execute
        calls = {"count": 0}

        def flaky_execute(statement, *args, **kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                raise OperationalError("DELETE", {}, Exception("database is locked"))
            return real_execute(statement, *args, **kwargs)

        monkeypatch.setattr(session, "execute", flaky_execute)
        result = service.delete_transactions(ids)
        monkeypatch.undo()

        assert result.deleted == 2
        assert result.errors == ["Failed to delete batch 1"]
        assert set(session.scalars(select(Transaction.id)).all()) == set(ids[:2])


def test_csv_import_through_budget_progress() -> None:
    content = (
        "amount,description,date,type,currency\n"
        "100.50,Groceries,2024-03-01,EXPENSE,USD\n"
        "50,Refund,2024-03-05,INCOME,USD\n"
        "-,Broken,2024-03-06,EXPENSE,USD\n"
    )
    with Session(_engine()) as session:
        imported = CSVService(session).commit(content, tags=["Food"])

        assert imported.created == 2
        assert imported.total == 3
        assert imported.skipped == ['Row 4: Invalid amount "-"']

        budget = BudgetService(session).create(
            TagBudgetIn(name="Groceries", items=[{"tag": "Food", "amount": "80"}])
        )
        march = Period("custom", date(2024, 3, 1), date(2024, 3, 31))
        report = BudgetService(session).progress(budget.id, march)

        line = report.lines[0]
        assert line.outstanding_cents == 5050
        assert line.percentage == 63.125
        assert line.status == BudgetStatus.ok


def test_csv_row_tags_apply_to_their_source_row() -> None:
    content = "amount,description,date\n10,Taxi,2024-03-01\n20,Hotel,2024-03-02\n"
    with Session(_engine()) as session:
        CSVService(session).commit(content, tags=["Trip"], row_tags={3: ["Lodging"]})
        taxi, hotel = session.scalars(select(Transaction).order_by(Transaction.id)).all()
        assert taxi.tags == ["Trip"]
        assert hotel.tags == ["Trip", "Lodging"]
