from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

ROLES = ('admin', 'assistant_admin', 'member')
LEDGER_ROLES = ('admin', 'assistant_admin')

# bounds of an SQL INTEGER column (amount, balance, budget)
INT_MIN = -2 ** 31
INT_MAX = 2 ** 31 - 1


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(256))
    email = db.Column(db.String(256), unique=True, nullable=False, index=True)
    password = db.Column(db.Text, nullable=False)  # werkzeug hash
    role = db.Column(db.String(32), nullable=False, default='member')
    avatar_url = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    drive_items = db.relationship('DriveItem', backref='user', lazy=True, cascade="all, delete-orphan")


class Category(db.Model):
    """A budget line (RKAP). The budget is descriptive, spend is not capped."""
    __tablename__ = 'categories'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(256), nullable=False)
    budget = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    edited_at = db.Column(db.DateTime, onupdate=datetime.utcnow)
    items = db.relationship('Item', backref='category', lazy=True, cascade="all, delete-orphan")
    # deleting a category destroys its transactions without reversing their ledger effect
    transactions = db.relationship('Transaction', backref='category', lazy=True, cascade="all, delete-orphan")


class Item(db.Model):
    __tablename__ = 'items'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(256), nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey('categories.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    edited_at = db.Column(db.DateTime, onupdate=datetime.utcnow)
    transactions = db.relationship('Transaction', backref='item', lazy=True, cascade="all, delete-orphan")


class BalanceSheet(db.Model):
    """A named account. ``balance`` is only ever changed by relative increments in ``ledger``."""
    __tablename__ = 'balance_sheet'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(256), nullable=False)
    balance = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    edited_at = db.Column(db.DateTime, onupdate=datetime.utcnow)
    # no delete cascade: the ORM nulls balance_sheet_id on referencing transactions
    transactions = db.relationship('Transaction', backref='balance_sheet', lazy=True)


class Transaction(db.Model):
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.DateTime, nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey('categories.id', ondelete='CASCADE'), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey('items.id', ondelete='CASCADE'), nullable=False, index=True)
    payee = db.Column(db.String(256), nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # positive income, negative expense
    balance_sheet_id = db.Column(db.Integer, db.ForeignKey('balance_sheet.id', ondelete='SET NULL'), nullable=True, index=True)
    attachment_url = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def ttype(self):
        return 'income' if self.amount > 0 else 'expense'


class DriveItem(db.Model):
    __tablename__ = 'drive_items'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(256), nullable=False)
    type = db.Column(db.String(50), nullable=False)  # 'file' or 'folder'
    path = db.Column(db.Text)
    size = db.Column(db.Integer)
    parent_id = db.Column(db.Integer, db.ForeignKey('drive_items.id', ondelete='CASCADE'), index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    modified_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    children = db.relationship('DriveItem', backref=db.backref('parent', remote_side=[id]),
                               lazy=True, cascade="all, delete-orphan")
