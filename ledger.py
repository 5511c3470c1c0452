"""Balance-sheet ledger maintenance.

Every write that touches a transaction row also moves the balance of the
balance sheet it points at, inside the same database transaction:

* create  -> balance + amount
* update  -> old sheet: balance - old amount, new sheet: balance + new amount
* delete  -> balance - amount
* import  -> create, once per accepted row, all rows in one unit

Balances are always changed with a relative ``UPDATE ... SET balance = balance + :delta``
so concurrent requests against the same sheet never overwrite each other.
A transaction without a balance sheet has no effect and needs no reversal.
"""
import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import update

import storage
from models import db, BalanceSheet, Category, Item, Transaction, INT_MAX, INT_MIN

logger = logging.getLogger(__name__)

# slash and dash dates are read month-first (03/04/2025 is 4 March)
DATE_FORMATS = ('%m/%d/%Y', '%Y/%m/%d', '%m-%d-%Y')


class LedgerError(Exception):
    pass


class NotFoundError(LedgerError):
    pass


@contextmanager
def atomic():
    """Commit everything done inside the block, or nothing."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _apply_delta(sheet_id, delta):
    if sheet_id is None:
        return
    result = db.session.execute(
        update(BalanceSheet)
        .where(BalanceSheet.id == sheet_id)
        .values(balance=BalanceSheet.balance + delta)
    )
    if result.rowcount == 0:
        raise NotFoundError('Balance sheet not found.')


def _resolve_refs(item_id, category_id=None):
    item = db.session.get(Item, item_id)
    if item is None:
        raise NotFoundError('Item not found.')
    category_id = category_id or item.category_id
    if db.session.get(Category, category_id) is None:
        raise NotFoundError('Category not found.')
    return item.id, category_id


def _record(*, date, item_id, category_id, payee, amount, balance_sheet_id, attachment_url=None):
    txn = Transaction(date=date, item_id=item_id, category_id=category_id, payee=payee,
                      amount=amount, balance_sheet_id=balance_sheet_id, attachment_url=attachment_url)
    db.session.add(txn)
    _apply_delta(balance_sheet_id, amount)
    return txn


# ---------------------- Single transaction ----------------------
def create_transaction(payload):
    """Insert a transaction and credit/debit its balance sheet."""
    with atomic():
        item_id, category_id = _resolve_refs(payload.item, payload.rkap_name)
        txn = _record(date=payload.date, item_id=item_id, category_id=category_id,
                      payee=payload.payee, amount=payload.amount,
                      balance_sheet_id=payload.balance_sheet_id,
                      attachment_url=payload.attachment_url)
        db.session.flush()
        txn_id = txn.id
    logger.info('Created transaction %s (amount=%s, balance_sheet=%s)',
                txn_id, payload.amount, payload.balance_sheet_id)
    return txn


def update_transaction(txn_id, payload):
    """Reverse the stored effect, apply the new one and overwrite the row."""
    with atomic():
        txn = db.session.get(Transaction, txn_id)
        if txn is None:
            raise NotFoundError('Transaction not found.')
        item_id, category_id = _resolve_refs(payload.item, payload.rkap_name)

        # moving between sheets is a debit on the old one and a credit on the new one
        _apply_delta(txn.balance_sheet_id, -txn.amount)
        _apply_delta(payload.balance_sheet_id, payload.amount)

        txn.date = payload.date
        txn.item_id = item_id
        txn.category_id = category_id
        txn.payee = payload.payee
        txn.amount = payload.amount
        txn.balance_sheet_id = payload.balance_sheet_id
        if payload.attachment_url is not None:
            txn.attachment_url = payload.attachment_url
    logger.info('Updated transaction %s (amount=%s, balance_sheet=%s)',
                txn_id, payload.amount, payload.balance_sheet_id)
    return txn


def set_attachment(txn_id, attachment_url):
    """Replace the attachment reference only; the ledger is untouched."""
    with atomic():
        txn = db.session.get(Transaction, txn_id)
        if txn is None:
            raise NotFoundError('Transaction not found.')
        txn.attachment_url = attachment_url or None
    return txn


def delete_transactions(ids):
    """Reverse and remove the given transactions. Any unknown id aborts the whole request."""
    wanted = set(ids)
    with atomic():
        rows = Transaction.query.filter(Transaction.id.in_(wanted)).all()
        missing = wanted - {txn.id for txn in rows}
        if missing:
            raise NotFoundError(f"Transaction not found: {', '.join(str(i) for i in sorted(missing))}.")
        attachments = [txn.attachment_url for txn in rows if txn.attachment_url]
        for txn in rows:
            _apply_delta(txn.balance_sheet_id, -txn.amount)
            db.session.delete(txn)
    logger.info('Deleted %d transactions', len(rows))

    for url in attachments:
        storage.remove_file(url)
    return len(rows)


# ---------------------- Bulk import ----------------------
@dataclass
class SkippedRow:
    row: int
    reason: str

    def as_dict(self):
        return {'row': self.row, 'reason': self.reason}


@dataclass
class ImportResult:
    success_count: int = 0
    skipped_rows: list = field(default_factory=list)

    def as_dict(self):
        return {
            'successCount': self.success_count,
            'skippedRows': [skipped.as_dict() for skipped in self.skipped_rows],
        }


class _Rejected(Exception):
    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


def _text(value) -> str:
    if value is None:
        return ''
    return str(value).strip()


def parse_date(value):
    """Parse an import date cell. Returns None when it cannot be read."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    else:
        text = _text(value)
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            for fmt in DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            else:
                return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_amount(value):
    """Parse a whole, non-zero amount that fits the column. Returns None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        amount = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        amount = int(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            amount = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return None
            if not math.isfinite(number) or not number.is_integer():
                return None
            amount = int(number)
    else:
        return None
    if not INT_MIN <= amount <= INT_MAX:
        return None
    return amount or None


def _name_index(rows):
    index = {}
    for row in rows:
        index.setdefault(row.name.strip().lower(), row)
    return index


def _check_row(row, items, sheets):
    if not isinstance(row, dict):
        row = {}

    raw_date = row.get('date')
    if not _text(raw_date):
        raise _Rejected('Date is missing.')
    when = parse_date(raw_date)
    if when is None:
        raise _Rejected(f'Date "{_text(raw_date)}" is not a valid date.')

    payee = _text(row.get('payee'))
    if not payee:
        raise _Rejected('Payee is missing.')

    item_name = _text(row.get('itemName'))
    if not item_name:
        raise _Rejected('Item Name is missing.')
    item = items.get(item_name.lower())
    if item is None:
        raise _Rejected(f'Item "{item_name}" not found.')

    sheet_name = _text(row.get('balanceSheetName'))
    if not sheet_name:
        raise _Rejected('Balance Sheet Name is missing.')
    sheet = sheets.get(sheet_name.lower())
    if sheet is None:
        raise _Rejected(f'Balance Sheet "{sheet_name}" not found.')

    amount = parse_amount(row.get('amount'))
    if amount is None:
        raise _Rejected('Amount is not a valid number.')

    return dict(date=when, item_id=item.id, category_id=item.category_id, payee=payee,
                amount=amount, balance_sheet_id=sheet.id)


def import_transactions(rows):
    """Resolve, validate and record CSV rows.

    Rows failing a check are reported with their CSV line number (header is
    line 1) and the first failing reason; the others are recorded together.
    """
    result = ImportResult()
    items = _name_index(Item.query.order_by(Item.id).all())
    sheets = _name_index(BalanceSheet.query.order_by(BalanceSheet.id).all())

    with atomic():
        for index, row in enumerate(rows):
            line = index + 2
            try:
                values = _check_row(row, items, sheets)
            except _Rejected as rejected:
                logger.warning('Skipping CSV line %d: %s', line, rejected.reason)
                result.skipped_rows.append(SkippedRow(line, rejected.reason))
                continue
            _record(**values)
            result.success_count += 1

    logger.info('Imported %d transactions, skipped %d rows',
                result.success_count, len(result.skipped_rows))
    return result
