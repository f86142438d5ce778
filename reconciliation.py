"""Tag budget reconciliation.

Pure functions over transactions that were already fetched for one owner and
one date window. Nothing here touches the database.

Netting rule: income carrying the same tag as an expense is treated as a
reimbursement and reduces what is outstanding under that tag, floored at zero.
All money values are integer cents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Protocol, Sequence

from models import TransactionType


class _TaggedTransaction(Protocol):
    amount_cents: int
    type: TransactionType
    tags: list[str]


class _BudgetItem(Protocol):
    tag: str
    amount_cents: int


class BudgetStatus(str, Enum):
    nominal = "nominal"
    ok = "ok"
    warn = "warn"
    critical = "critical"


# Lower bounds (inclusive) of each status bucket, highest first.
STATUS_THRESHOLDS: tuple[tuple[float, BudgetStatus], ...] = (
    (90.0, BudgetStatus.critical),
    (75.0, BudgetStatus.warn),
    (60.0, BudgetStatus.ok),
)


@dataclass
class TagTotals:
    expense_cents: int = 0
    income_cents: int = 0
    count: int = 0


@dataclass(frozen=True)
class BudgetLine:
    tag: str
    limit_cents: int
    expense_cents: int
    income_cents: int
    outstanding_cents: int
    percentage: float
    status: BudgetStatus


@dataclass(frozen=True)
class BudgetReport:
    lines: list[BudgetLine]
    total_limit_cents: int
    total_outstanding_cents: int
    overall_percentage: float
    status: BudgetStatus


@dataclass
class TagGroup:
    tag: str
    total_spent_cents: int = 0
    total_income_cents: int = 0
    transactions: list = field(default_factory=list)

    @property
    def transaction_count(self) -> int:
        return len(self.transactions)


@dataclass(frozen=True)
class TagSummary:
    groups: list[TagGroup]
    total_spent_cents: int
    total_income_cents: int


def spend_by_tag(transactions: Iterable[_TaggedTransaction]) -> dict[str, TagTotals]:
    totals: dict[str, TagTotals] = {}
    for txn in transactions:
        for tag in dict.fromkeys(txn.tags or []):
            bucket = totals.setdefault(tag, TagTotals())
            if txn.type == TransactionType.expense:
                bucket.expense_cents += txn.amount_cents
            else:
                bucket.income_cents += txn.amount_cents
            bucket.count += 1
    return totals


def outstanding(expense_cents: int, income_cents: int) -> int:
    return max(0, abs(expense_cents) - abs(income_cents))


def percentage(outstanding_cents: int, limit_cents: int) -> float:
    if limit_cents > 0:
        return min(100.0, outstanding_cents * 100 / limit_cents)
    return 100.0 if outstanding_cents > 0 else 0.0


def status_for(pct: float) -> BudgetStatus:
    for lower_bound, status in STATUS_THRESHOLDS:
        if pct >= lower_bound:
            return status
    return BudgetStatus.nominal


def reconcile(
    items: Sequence[_BudgetItem], transactions: Iterable[_TaggedTransaction]
) -> BudgetReport:
    """Roll ``transactions`` up against the per-tag limits in ``items``.

    Items naming a tag that no transaction carries report zero spend.
    """
    totals = spend_by_tag(transactions)
    lines: list[BudgetLine] = []
    for item in items:
        tag_totals = totals.get(item.tag, TagTotals())
        owed = outstanding(tag_totals.expense_cents, tag_totals.income_cents)
        pct = percentage(owed, item.amount_cents)
        lines.append(
            BudgetLine(
                tag=item.tag,
                limit_cents=item.amount_cents,
                expense_cents=tag_totals.expense_cents,
                income_cents=tag_totals.income_cents,
                outstanding_cents=owed,
                percentage=pct,
                status=status_for(pct),
            )
        )

    total_limit = sum(line.limit_cents for line in lines)
    total_outstanding = sum(line.outstanding_cents for line in lines)
    overall = percentage(total_outstanding, total_limit)
    return BudgetReport(
        lines=lines,
        total_limit_cents=total_limit,
        total_outstanding_cents=total_outstanding,
        overall_percentage=overall,
        status=status_for(overall),
    )


def suggested_values(
    transactions: Iterable[_TaggedTransaction],
) -> dict[str, int]:
    """Gross expense per tag, without income netting, for pre-filling limits."""
    return {
        tag: abs(totals.expense_cents)
        for tag, totals in spend_by_tag(transactions).items()
        if totals.expense_cents
    }


def summarize_by_tag(transactions: Iterable[_TaggedTransaction]) -> TagSummary:
    groups: dict[str, TagGroup] = {}
    total_spent = 0
    total_income = 0
    for txn in transactions:
        if txn.type == TransactionType.expense:
            total_spent += txn.amount_cents
        else:
            total_income += txn.amount_cents
        for tag in dict.fromkeys(txn.tags or []):
            group = groups.setdefault(tag, TagGroup(tag=tag))
            if txn.type == TransactionType.expense:
                group.total_spent_cents += txn.amount_cents
            else:
                group.total_income_cents += txn.amount_cents
            group.transactions.append(txn)

    ordered = sorted(
        groups.values(), key=lambda g: (-g.total_spent_cents, g.tag)
    )
    return TagSummary(
        groups=ordered,
        total_spent_cents=total_spent,
        total_income_cents=total_income,
    )
