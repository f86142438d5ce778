import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from database import Base, build_engine
from models import Tag, TransactionType
from schemas import TagBudgetIn, TransactionIn
from services import (
    TAG_PALETTE,
    BudgetService,
    RecordNotFound,
    TagService,
    TransactionService,
    tag_color,
)


def _engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    return engine


def _expense(tags, amount="12.50", day=5) -> TransactionIn:
    return TransactionIn(
        date=date(2024, 3, day),
        type=TransactionType.expense,
        amount=Decimal(amount),
        description="Card purchase",
        tags=tags,
    )


def test_tag_color_is_deterministic() -> None:
    assert tag_color("") == TAG_PALETTE[0]
    assert tag_color("a") == TAG_PALETTE[97 % len(TAG_PALETTE)]
    assert tag_color("Groceries") == tag_color("Groceries")
    assert tag_color("A very long tag name that overflows") in TAG_PALETTE


def test_tag_color_palette_and_utf16_hash() -> None:
    assert len(TAG_PALETTE) == 16
    assert tag_color("H") == "#06b6d4"
    # Surrogate pair 0xD83D 0xDE00 hashes to 1772899.
    assert tag_color("\U0001F600") == TAG_PALETTE[1772899 % 16]


def test_resolve_creates_once_and_trims() -> None:
    with Session(_engine()) as session:
        service = TagService(session)
        first = service.resolve("  Food ")
        second = service.resolve("Food")
        session.commit()

        assert first.id == second.id
        assert first.name == "Food"
        assert first.color == tag_color("Food")
        assert session.scalar(select(func.count(Tag.id))) == 1

        with pytest.raises(ValueError):
            service.resolve("   ")


def test_tag_names_are_case_sensitive() -> None:
    with Session(_engine()) as session:
        service = TagService(session)
        assert service.resolve("food").id != service.resolve("Food").id


def test_resolve_returns_winner_after_concurrent_insert(monkeypatch) -> None:
    with Session(_engine()) as session:
        service = TagService(session)
        winner = service.resolve("Food")
        session.commit()

        real_find = TagService._find
        calls = {"count": 0}

        def stale_find(self, name):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return real_find(self, name)

        monkeypatch.setattr(TagService, "_find", stale_find)

        loser = service.resolve("Food")
        session.commit()

        assert loser.id == winner.id
        assert calls["count"] == 2
        assert session.scalar(select(func.count(Tag.id))) == 1


def test_concurrent_resolve_on_file_database_creates_one_tag(tmp_path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'tags.db'}")
    Base.metadata.create_all(engine)
    barrier = threading.Barrier(2)
    ids: list[int] = []
    errors: list[Exception] = []

    def worker() -> None:
        with Session(engine) as session:
            try:
                barrier.wait()
                tag = TagService(session).resolve("Food")
                session.commit()
                ids.append(tag.id)
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(ids) == 2
    assert ids[0] == ids[1]
    with Session(engine) as session:
        assert session.scalar(select(func.count(Tag.id))) == 1
    engine.dispose()


def test_transaction_tags_are_canonical_and_deduplicated() -> None:
    with Session(_engine()) as session:
        txn = TransactionService(session).create(
            _expense(["Food", " Food ", "", "Travel", "Food"])
        )
        assert txn.tags == ["Food", "Travel"]
        names = [tag.name for tag in TagService(session).list_all()]
        assert names == ["Food", "Travel"]


def test_delete_sweeps_transactions_of_the_owner_only() -> None:
    with Session(_engine()) as session:
        mine = TransactionService(session)
        both = mine.create(_expense(["Food", "Travel"]))
        food_only = mine.create(_expense(["Food"]))
        travel_only = mine.create(_expense(["Travel"]))
        theirs = TransactionService(session, user_id=2).create(_expense(["Food"]))
        BudgetService(session).create(
            TagBudgetIn(name="Monthly", items=[{"tag": "Food", "amount": "80"}])
        )

        food = next(t for t in TagService(session).list_all() if t.name == "Food")
        swept = TagService(session).delete(food.id)

        assert swept == 2
        assert mine.get(both.id).tags == ["Travel"]
        assert mine.get(food_only.id).tags == []
        assert mine.get(travel_only.id).tags == ["Travel"]
        assert TransactionService(session, user_id=2).get(theirs.id).tags == ["Food"]
        # Budget items keep their reference to the deleted name.
        assert BudgetService(session).active().items[0].tag == "Food"


def test_foreign_tags_are_not_found() -> None:
    with Session(_engine()) as session:
        foreign = TagService(session, user_id=2).create("Food")
        with pytest.raises(RecordNotFound):
            TagService(session).delete(foreign.id)
        with pytest.raises(RecordNotFound):
            TagService(session).rename(foreign.id, "Dining")


def test_rename_keeps_transaction_history() -> None:
    with Session(_engine()) as session:
        txn = TransactionService(session).create(_expense(["Food"]))
        service = TagService(session)
        food = service.list_all()[0]
        service.create("Travel")

        renamed = service.rename(food.id, "Dining")

        assert renamed.name == "Dining"
        assert TransactionService(session).get(txn.id).tags == ["Food"]
        with pytest.raises(ValueError):
            service.rename(food.id, "Travel")
        with pytest.raises(ValueError):
            service.rename(food.id, "  ")


def test_create_is_idempotent() -> None:
    with Session(_engine()) as session:
        service = TagService(session)
        assert service.create("Food").id == service.create("Food").id


def test_list_all_filters_case_insensitively() -> None:
    with Session(_engine()) as session:
        service = TagService(session)
        for name in ["Groceries", "Gym", "Travel"]:
            service.create(name)
        assert [t.name for t in service.list_all("G")] == ["Groceries", "Gym"]
        assert [t.name for t in service.list_all("ravel")] == ["Travel"]


def test_color_override_takes_precedence_until_cleared() -> None:
    with Session(_engine()) as session:
        service = TagService(session)
        service.create("Food")
        assert service.display_color("Food") == tag_color("Food")

        service.set_color("Food", "#123456")
        service.set_color("Food", "#abcdef")
        assert service.display_color("Food") == "#abcdef"
        assert service.display_colors() == {"Food": "#abcdef"}

        service.clear_color("Food")
        assert service.display_color("Food") == tag_color("Food")
        assert service.display_color("Unknown") == tag_color("Unknown")
