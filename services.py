from __future__ import annotations

import logging
from datetime import datetime, time
from typing import Any, Iterable, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from config import get_settings
from csv_utils import CSVParseResult, amount_to_cents, parse_csv
from models import (
    CurrencyCode,
    Tag,
    TagBudget,
    TagBudgetItem,
    TagColorOverride,
    Transaction,
    TransactionType,
)
from periods import Period, local_today, previous_period
from reconciliation import (
    BudgetReport,
    TagSummary,
    reconcile,
    suggested_values,
    summarize_by_tag,
)
from schemas import (
    BulkDeleteResult,
    BulkImportResult,
    BulkTransactionIn,
    CSVImportResult,
    TagBudgetIn,
    TransactionIn,
)

logger = logging.getLogger(__name__)

# Default tag colors; a tag name always maps to the same entry.
TAG_PALETTE: tuple[str, ...] = (
    "#6366f1",
    "#06b6d4",
    "#10b981",
    "#f59e0b",
    "#8b5cf6",
    "#ef4444",
    "#84cc16",
    "#f97316",
    "#06b6d4",
    "#ec4899",
    "#14b8a6",
    "#f43f5e",
    "#a855f7",
    "#22c55e",
    "#eab308",
    "#3b82f6",
)

BULK_REQUIRED_FIELDS = ("amount", "type", "description", "date")


class RecordNotFound(ValueError):
    pass


def get_current_user_id() -> int:
    return 1


def cents_to_units(cents: int) -> float:
    return cents / 100


def tag_color(name: str) -> str:
    """Palette color for ``name`` from a 31-multiplier hash over 32-bit ints.

    The hash runs over UTF-16 code units so colors agree with browser clients.
    """
    units = name.encode("utf-16-le")
    value = 0
    for offset in range(0, len(units), 2):
        code_unit = int.from_bytes(units[offset : offset + 2], "little")
        value = (value * 31 + code_unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return TAG_PALETTE[abs(value) % len(TAG_PALETTE)]


def _coerce_ids(raw_ids: Iterable[object]) -> list[int]:
    ids: list[int] = []
    for raw in raw_ids:
        if isinstance(raw, bool):
            continue
        if isinstance(raw, int):
            ids.append(raw)
        elif isinstance(raw, str) and raw.strip().isdigit():
            ids.append(int(raw.strip()))
    return ids


def _missing_fields(raw: object) -> list[str]:
    if not isinstance(raw, dict):
        return list(BULK_REQUIRED_FIELDS)
    missing = []
    for name in BULK_REQUIRED_FIELDS:
        value = raw.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


class TagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, query: Optional[str] = None) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        if query and query.strip():
            stmt = stmt.where(
                func.lower(Tag.name).contains(query.strip().lower(), autoescape=True)
            )
        return list(self.session.scalars(stmt).all())

    def get(self, tag_id: int) -> Tag:
        tag = self.session.get(Tag, tag_id)
        if not tag or tag.user_id != self.user_id:
            raise RecordNotFound("Tag not found")
        return tag

    def _find(self, name: str) -> Optional[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id, Tag.name == name)
        return self.session.scalar(stmt)

    def resolve(self, name: str) -> Tag:
        """Return the owner's tag called ``name``, creating it on first use.

        On SQLite concurrent writers are serialized by ``BEGIN IMMEDIATE`` so
        the second caller simply finds the first caller's row. Where inserts
        do race, the losing insert hits ``uq_tag_user_name``, only its savepoint
        is rolled back, and the row written by the winner is returned instead.
        """
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        existing = self._find(clean_name)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name, color=tag_color(clean_name))
        try:
            with self.session.begin_nested():
                self.session.add(tag)
        except IntegrityError:
            winner = self._find(clean_name)
            if winner is None:
                raise
            logger.info(f"tag_resolve_conflict: name={clean_name!r} id={winner.id}")
            return winner
        return tag

    def canonical_names(self, names: Iterable[str]) -> list[str]:
        """Resolve ``names`` to stored tag names, first-seen order, no repeats."""
        resolved: list[str] = []
        for name in names:
            if not isinstance(name, str) or not name.strip():
                continue
            tag = self.resolve(name)
            if tag.name not in resolved:
                resolved.append(tag.name)
        return resolved

    def create(self, name: str) -> Tag:
        tag = self.resolve(name)
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def rename(self, tag_id: int, name: str) -> Tag:
        """Rename the tag only.

        Transactions keep the name they were tagged with; history is treated
        as a snapshot and is not rewritten.
        """
        tag = self.get(tag_id)
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, Tag.name == clean_name, Tag.id != tag_id
        )
        if self.session.scalar(stmt):
            raise ValueError("A tag with this name already exists")

        tag.name = clean_name
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def delete(self, tag_id: int) -> int:
        """Delete the tag and strip its name from the owner's transactions.

        Returns the number of transactions rewritten. Budget items naming the
        tag are left alone.
        """
        tag = self.get(tag_id)
        name = tag.name

        rows = self.session.execute(
            select(Transaction.id, Transaction.tags).where(
                Transaction.user_id == self.user_id
            )
        ).all()
        swept = 0
        for row in rows:
            current = row.tags or []
            if name not in current:
                continue
            self.session.execute(
                update(Transaction)
                .where(Transaction.id == row.id)
                .values(tags=[t for t in current if t != name])
            )
            swept += 1

        self.session.delete(tag)
        self.session.commit()
        logger.info(f"tag_delete: name={name!r} swept_transactions={swept}")
        return swept

    def set_color(self, name: str, color: str) -> TagColorOverride:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")
        override = self.session.scalar(
            select(TagColorOverride).where(
                TagColorOverride.user_id == self.user_id,
                TagColorOverride.tag_name == clean_name,
            )
        )
        if override:
            override.color = color
        else:
            override = TagColorOverride(
                user_id=self.user_id, tag_name=clean_name, color=color
            )
            self.session.add(override)
        self.session.commit()
        self.session.refresh(override)
        return override

    def clear_color(self, name: str) -> None:
        self.session.execute(
            delete(TagColorOverride).where(
                TagColorOverride.user_id == self.user_id,
                TagColorOverride.tag_name == name.strip(),
            )
        )
        self.session.commit()

    def display_colors(self) -> dict[str, str]:
        colors = {tag.name: tag.color or tag_color(tag.name) for tag in self.list_all()}
        overrides = self.session.scalars(
            select(TagColorOverride).where(TagColorOverride.user_id == self.user_id)
        ).all()
        for override in overrides:
            colors[override.tag_name] = override.color
        return colors

    def display_color(self, name: str) -> str:
        override = self.session.scalar(
            select(TagColorOverride.color).where(
                TagColorOverride.user_id == self.user_id,
                TagColorOverride.tag_name == name,
            )
        )
        if override:
            return override
        tag = self._find(name)
        if tag and tag.color:
            return tag.color
        return tag_color(name)


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _currency(self, currency: Optional[CurrencyCode]) -> CurrencyCode:
        return currency or CurrencyCode(get_settings().default_currency)

    def create(self, data: TransactionIn) -> Transaction:
        tags = TagService(self.session, self.user_id).canonical_names(data.tags)
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            occurred_at=data.occurred_at or datetime.combine(data.date, time(12, 0)),
            type=data.type,
            amount_cents=amount_to_cents(data.amount),
            currency=self._currency(data.currency),
            description=data.description or None,
            tags=tags,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise RecordNotFound("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        txn.tags = TagService(self.session, self.user_id).canonical_names(data.tags)
        txn.date = data.date
        txn.occurred_at = data.occurred_at or datetime.combine(data.date, time(12, 0))
        txn.type = data.type
        txn.amount_cents = amount_to_cents(data.amount)
        txn.currency = self._currency(data.currency)
        txn.description = data.description or None
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def list(
        self,
        period: Optional[Period] = None,
        *,
        txn_type: Optional[TransactionType] = None,
        tag: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if period:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if txn_type:
            stmt = stmt.where(Transaction.type == txn_type)
        items = list(self.session.scalars(stmt).all())
        if tag:
            items = [txn for txn in items if tag in (txn.tags or [])]
        return items[offset : offset + limit]

    def count(self) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def all_for_period(self, period: Period) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())


class BulkTransactionService:
    """Partial-failure tolerant batch create and delete of transactions."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.settings = get_settings()

    def import_transactions(
        self,
        items: Sequence[Any],
        extra_tags: Optional[dict[int, list[str]]] = None,
    ) -> BulkImportResult:
        extra_tags = extra_tags or {}
        batch_size = self.settings.import_batch_size
        tag_service = TagService(self.session, self.user_id)
        created = 0
        errors: list[str] = []

        for start in range(0, len(items), batch_size):
            chunk = items[start : start + batch_size]
            for offset, raw in enumerate(chunk):
                index = start + offset
                error = self._import_one(
                    index, raw, extra_tags.get(index, []), tag_service
                )
                if error:
                    errors.append(error)
                else:
                    created += 1
            self.session.commit()

        logger.info(
            f"bulk_import: total={len(items)} created={created} errors={len(errors)}"
        )
        return BulkImportResult(
            success=True, created=created, errors=errors, total=len(items)
        )

    def _import_one(
        self,
        index: int,
        raw: Any,
        extra_tags: list[str],
        tag_service: TagService,
    ) -> Optional[str]:
        label = f"Transaction {index + 1}"
        if _missing_fields(raw):
            return f"{label}: Missing required fields"
        try:
            data = BulkTransactionIn.model_validate(raw)
        except ValidationError as exc:
            return f"{label}: {_validation_message(exc)}"

        try:
            with self.session.begin_nested():
                tags = tag_service.canonical_names([*data.tags, *extra_tags])
                self.session.add(
                    Transaction(
                        user_id=self.user_id,
                        date=data.date,
                        occurred_at=datetime.combine(data.date, time(12, 0)),
                        type=data.type,
                        amount_cents=amount_to_cents(data.amount),
                        currency=data.currency
                        or CurrencyCode(self.settings.default_currency),
                        description=data.description,
                        tags=tags,
                    )
                )
        except Exception as exc:
            logger.warning(f"bulk_import_failed: index={index + 1} error={exc}")
            return f"{label}: {exc}"
        return None

    def delete_transactions(self, transaction_ids: Sequence[object]) -> BulkDeleteResult:
        batch_size = self.settings.delete_batch_size
        deleted = 0
        errors: list[str] = []

        for batch_no, start in enumerate(
            range(0, len(transaction_ids), batch_size), start=1
        ):
            batch = _coerce_ids(transaction_ids[start : start + batch_size])
            if not batch:
                continue
            try:
                result = self.session.execute(
                    delete(Transaction).where(
                        Transaction.user_id == self.user_id,
                        Transaction.id.in_(batch),
                    )
                )
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.warning(f"bulk_delete_failed: batch={batch_no} error={exc}")
                errors.append(f"Failed to delete batch {batch_no}")
                continue
            deleted += result.rowcount or 0

        logger.info(
            f"bulk_delete: total={len(transaction_ids)} deleted={deleted} "
            f"errors={len(errors)}"
        )
        return BulkDeleteResult(
            success=True, deleted=deleted, errors=errors, total=len(transaction_ids)
        )


class CSVService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.settings = get_settings()

    def preview(self, content: str) -> CSVParseResult:
        size = len(content.encode("utf-8"))
        if size > self.settings.csv_max_bytes:
            raise ValueError(
                f"CSV file too large (max {self.settings.csv_max_bytes} bytes)"
            )
        return parse_csv(
            content,
            default_currency=self.settings.default_currency,
            max_rows=self.settings.csv_max_rows,
            today=local_today(),
        )

    def commit(
        self,
        content: str,
        *,
        tags: Sequence[str] = (),
        row_tags: Optional[dict[int, list[str]]] = None,
    ) -> CSVImportResult:
        """Import every parseable row; rows with errors are reported as skipped.

        ``tags`` apply to all rows, ``row_tags`` to single source row numbers.
        """
        parsed = self.preview(content)
        row_tags = row_tags or {}
        payloads = []
        extra: dict[int, list[str]] = {}
        for index, candidate in enumerate(parsed.candidates):
            payloads.append(candidate.to_payload())
            extra[index] = [*tags, *row_tags.get(candidate.row_number, [])]

        result = BulkTransactionService(self.session, self.user_id).import_transactions(
            payloads, extra
        )
        return CSVImportResult(
            success=True,
            created=result.created,
            skipped=[*parsed.errors, *result.errors],
            warnings=parsed.warnings,
            total=len(parsed.candidates) + len(parsed.errors),
        )


class TagSummaryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def for_period(self, period: Period) -> TagSummary:
        transactions = TransactionService(self.session, self.user_id).all_for_period(
            period
        )
        return summarize_by_tag(transactions)


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _owned(self) -> list[TagBudget]:
        stmt = (
            select(TagBudget)
            .options(selectinload(TagBudget.items))
            .where(TagBudget.user_id == self.user_id)
            .order_by(TagBudget.order.asc(), TagBudget.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def list_all(self) -> list[TagBudget]:
        return self._owned()

    def get(self, budget_id: int) -> TagBudget:
        budget = self.session.get(TagBudget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise RecordNotFound("Budget not found")
        return budget

    def active(self) -> Optional[TagBudget]:
        stmt = (
            select(TagBudget)
            .options(selectinload(TagBudget.items))
            .where(TagBudget.user_id == self.user_id, TagBudget.order == 0)
            .order_by(TagBudget.id.asc())
        )
        return self.session.scalars(stmt).first()

    @staticmethod
    def _build_items(data: TagBudgetIn) -> list[TagBudgetItem]:
        return [
            TagBudgetItem(
                position=position,
                tag=item.tag,
                amount_cents=amount_to_cents(item.amount),
            )
            for position, item in enumerate(data.items)
        ]

    def create(self, data: TagBudgetIn) -> TagBudget:
        highest = self.session.execute(
            select(func.max(TagBudget.order)).where(TagBudget.user_id == self.user_id)
        ).scalar_one()
        budget = TagBudget(
            user_id=self.user_id,
            name=data.name,
            order=0 if highest is None else highest + 1,
            items=self._build_items(data),
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(f"budget_create: id={budget.id} order={budget.order}")
        return budget

    def update(self, budget_id: int, data: TagBudgetIn) -> TagBudget:
        budget = self.get(budget_id)
        budget.name = data.name
        budget.items = self._build_items(data)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        try:
            self.session.delete(budget)
            self.session.flush()
            for position, remaining in enumerate(self._owned()):
                remaining.order = position
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.info(f"budget_delete: id={budget_id}")

    def reorder(self, budget_ids: Sequence[object]) -> None:
        """Give the listed budgets orders 0..n-1 in one transaction.

        Unknown and foreign ids are ignored. Owned budgets missing from the
        list follow the listed ones in their previous order.
        """
        owned = self._owned()
        by_id = {budget.id: budget for budget in owned}
        listed: list[int] = []
        for budget_id in _coerce_ids(budget_ids):
            if budget_id in by_id and budget_id not in listed:
                listed.append(budget_id)
        remaining = [budget.id for budget in owned if budget.id not in listed]

        try:
            for position, budget_id in enumerate([*listed, *remaining]):
                by_id[budget_id].order = position
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.info(f"budget_reorder: order={[*listed, *remaining]}")

    def set_active(self, budget_id: int) -> TagBudget:
        budget = self.get(budget_id)
        others = [b.id for b in self._owned() if b.id != budget.id]
        self.reorder([budget.id, *others])
        return budget

    def progress(self, budget_id: int, period: Period) -> BudgetReport:
        budget = self.get(budget_id)
        transactions = TransactionService(self.session, self.user_id).all_for_period(
            period
        )
        return reconcile(budget.items, transactions)

    def suggestions(self, period: Period) -> dict[str, int]:
        prior = previous_period(period)
        transactions = TransactionService(self.session, self.user_id).all_for_period(
            prior
        )
        return suggested_values(transactions)
