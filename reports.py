"""Read-side aggregations: dashboard figures and the expense reports.

Nothing here writes to the database.
"""
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Optional

import pandas as pd
from sqlalchemy import case, func

from models import db, BalanceSheet, Category, Item, Transaction

MONTH_NAMES = ('JANUARI', 'FEBRUARI', 'MARET', 'APRIL', 'MEI', 'JUNI', 'JULI',
               'AGUSTUS', 'SEPTEMBER', 'OKTOBER', 'NOVEMBER', 'DESEMBER')
PREFERRED_SHEETS = ('BANK', 'Petty Cash')


class NoReportData(Exception):
    pass


# ---------------------- Balance sheet ordering ----------------------
def order_balance_sheets(sheets):
    """BANK first, Petty Cash second, the rest in their given order.

    Entries repeating an earlier (id, name) pair, name compared case-insensitively,
    are dropped.
    """
    unique = []
    seen = set()
    for sheet in sheets:
        key = (sheet['id'], str(sheet['name']).lower())
        if key in seen:
            continue
        seen.add(key)
        unique.append(sheet)

    def rank(sheet):
        name = sheet['name']
        return PREFERRED_SHEETS.index(name) if name in PREFERRED_SHEETS else len(PREFERRED_SHEETS)

    # sorted() is stable, so non-preferred sheets keep their order
    return sorted(unique, key=rank)


# ---------------------- Dashboard ----------------------
def balance_sheet_totals():
    rows = db.session.query(
        BalanceSheet,
        func.coalesce(func.sum(case((Transaction.amount > 0, Transaction.amount), else_=0)), 0).label('income'),
        func.coalesce(func.sum(case((Transaction.amount < 0, Transaction.amount), else_=0)), 0).label('expense'),
    ).outerjoin(Transaction, Transaction.balance_sheet_id == BalanceSheet.id) \
        .group_by(BalanceSheet.id).order_by(BalanceSheet.id).all()
    sheets = [{
        'id': sheet.id,
        'name': sheet.name,
        'balance': sheet.balance,
        'createdAt': sheet.created_at.isoformat(),
        'totalIncome': int(income or 0),
        'totalExpense': int(expense or 0),
    } for sheet, income, expense in rows]
    return order_balance_sheets(sheets)


def transaction_history(since: datetime):
    rows = db.session.query(Transaction.date, Transaction.amount) \
        .filter(Transaction.date >= since).order_by(Transaction.date).all()
    return [{'date': d.isoformat(), 'amount': amount} for d, amount in rows]


def rkap_item_expenses(since: datetime, excluded_category: Optional[str] = None):
    """Expenses since ``since`` summed per item, grouped under their category."""
    total = func.sum(Transaction.amount)
    q = db.session.query(Category.name, Category.budget, Item.name, total) \
        .join(Item, Transaction.item_id == Item.id) \
        .join(Category, Transaction.category_id == Category.id) \
        .filter(Transaction.date >= since, Transaction.amount < 0)
    if excluded_category:
        q = q.filter(Category.name != excluded_category)
    rows = q.group_by(Category.name, Category.budget, Item.name).order_by(Category.name, total).all()

    grouped = {}
    for category_name, budget, item_name, spent in rows:
        entry = grouped.setdefault(category_name, {'rkapName': category_name, 'budget': budget, 'items': []})
        entry['items'].append({'name': item_name, 'value': abs(int(spent))})
    return list(grouped.values())


# ---------------------- Expense reports ----------------------
@dataclass
class QuarterBlock:
    label: str
    months: list


@dataclass
class ReportRow:
    label: str
    months: list
    quarter_totals: list
    total: int
    budget: Optional[int] = None
    realization: Optional[float] = None


@dataclass
class ExpenseReport:
    title: str
    period: str
    quarters: list
    budget_header: Optional[str] = None
    organization: str = ''
    rows: list = field(default_factory=list)

    @property
    def column_count(self):
        # label + (months + JUMLAH) per quarter + TOTAL [+ budget + % realization]
        count = 1 + sum(len(block.months) + 1 for block in self.quarters) + 1
        return count + 2 if self.budget_header else count


def _inclusive_end(end: datetime) -> datetime:
    return datetime.combine(end.date(), time.max) if end.time() == time.min else end


def months_in_range(start: datetime, end: datetime):
    return list(pd.period_range(start=pd.Period(start, 'M'), end=pd.Period(end, 'M'), freq='M'))


def _quarter_blocks(months):
    multi_year = len({p.year for p in months}) > 1
    blocks = {}
    for p in months:
        month_label = MONTH_NAMES[p.month - 1] + (f' {p.year}' if multi_year else '')
        block_label = f'REALISASI TRIWULAN {p.quarter}' + (f' {p.year}' if multi_year else '')
        blocks.setdefault((p.year, p.quarter), QuarterBlock(block_label, [])).months.append(month_label)
    return list(blocks.values())


def _period_label(start, end, with_day=False):
    def fmt(d, year):
        text = f'{MONTH_NAMES[d.month - 1].title()}'
        if with_day:
            text = f'{d.day} {text}'
        return f'{text} {d.year}' if year else text
    return f'Untuk Periode {fmt(start, start.year != end.year)} s.d. {fmt(end, True)}'


def _expense_frame(start, end, item_ids=None):
    q = db.session.query(Transaction.item_id, Item.name, Category.budget, Transaction.amount, Transaction.date) \
        .join(Item, Transaction.item_id == Item.id) \
        .join(Category, Transaction.category_id == Category.id) \
        .filter(Transaction.date >= start, Transaction.date <= end, Transaction.amount < 0)
    if item_ids is not None:
        q = q.filter(Transaction.item_id.in_(item_ids))
    df = pd.DataFrame([tuple(r) for r in q.all()], columns=['item_id', 'item', 'budget', 'amount', 'date'])
    if not df.empty:
        df['period'] = pd.to_datetime(df['date']).dt.to_period('M')
        df['spent'] = df['amount'].abs()
    return df


def _monthly_matrix(df, months, index):
    if df.empty:
        return pd.DataFrame(0, index=index, columns=months)
    pivot = df.pivot_table(index='item_id', columns='period', values='spent', aggfunc='sum', fill_value=0)
    return pivot.reindex(index=index, columns=months, fill_value=0).fillna(0)


def _report_row(label, values, quarter_sizes, budget=None, with_budget=False):
    values = [int(v) for v in values]
    quarter_totals = []
    offset = 0
    for size in quarter_sizes:
        quarter_totals.append(sum(values[offset:offset + size]))
        offset += size
    total = sum(quarter_totals)
    row = ReportRow(label=label, months=values, quarter_totals=quarter_totals, total=total)
    if with_budget:
        row.budget = int(budget or 0)
        row.realization = total / row.budget if row.budget > 0 else 0
    return row


def expense_report(start: datetime, end: datetime, organization: str = '') -> ExpenseReport:
    """Expenses per item per month with quarter subtotals and budget realization."""
    end = _inclusive_end(end)
    months = months_in_range(start, end)
    quarters = _quarter_blocks(months)
    df = _expense_frame(start, end)

    if df.empty:
        labels, budgets, index = {}, {}, []
    else:
        firsts = df.drop_duplicates('item_id').sort_values(['item', 'item_id'])
        index = list(firsts['item_id'])
        labels = dict(zip(firsts['item_id'], firsts['item']))
        budgets = dict(zip(firsts['item_id'], firsts['budget']))
    matrix = _monthly_matrix(df, months, index)

    report = ExpenseReport(
        title='LAPORAN PENGELUARAN',
        period=_period_label(start, end),
        quarters=quarters,
        budget_header=f'ANGGARAN {start.year}',
        organization=organization,
    )
    sizes = [len(block.months) for block in quarters]
    for item_id in index:
        report.rows.append(_report_row(labels[item_id], matrix.loc[item_id].tolist(), sizes,
                                       budget=budgets[item_id], with_budget=True))
    return report


def item_expense_report(item_ids, start: datetime, end: datetime, organization: str = '') -> ExpenseReport:
    """Monthly expenses for the selected items; every selected item gets a row."""
    end = _inclusive_end(end)
    df = _expense_frame(start, end, item_ids=item_ids)
    if df.empty:
        raise NoReportData('No expense data to export for the selected items.')

    selected = Item.query.filter(Item.id.in_(item_ids)).order_by(Item.id.desc()).all()
    months = months_in_range(start, end)
    quarters = _quarter_blocks(months)
    matrix = _monthly_matrix(df, months, [item.id for item in selected])

    report = ExpenseReport(
        title='LAPORAN PENGELUARAN BERDASARKAN ITEM',
        period=_period_label(start, end, with_day=True),
        quarters=quarters,
        organization=organization,
    )
    sizes = [len(block.months) for block in quarters]
    for item in selected:
        report.rows.append(_report_row(item.name, matrix.loc[item.id].tolist(), sizes))
    return report
