import os
import tempfile
from types import SimpleNamespace

import pytest

UPLOAD_DIR = tempfile.mkdtemp(prefix='rkap-uploads-')
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['UPLOAD_FOLDER'] = UPLOAD_DIR
os.environ['SECRET_KEY'] = 'test-secret'

from sqlalchemy import func  # noqa: E402
from werkzeug.security import generate_password_hash  # noqa: E402

from app import app as flask_app  # noqa: E402
from models import db, BalanceSheet, Category, Item, Transaction, User  # noqa: E402


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seed(app):
    operasional = Category(name='Operasional', budget=10000)
    peralatan = Category(name='Peralatan', budget=50000)
    db.session.add_all([operasional, peralatan])
    db.session.flush()
    laptop = Item(name='Dell XPS 15', category_id=peralatan.id)
    fuel = Item(name='Fuel', category_id=operasional.id)
    bank = BalanceSheet(name='BANK', balance=1000)
    petty = BalanceSheet(name='Petty Cash', balance=500)
    db.session.add_all([laptop, fuel, bank, petty])
    db.session.commit()
    return SimpleNamespace(
        operasional=operasional.id, peralatan=peralatan.id,
        laptop=laptop.id, fuel=fuel.id,
        bank=bank.id, petty=petty.id,
    )


def _login_as(client, role, email):
    user = User(full_name=role.title(), email=email, password=generate_password_hash('secret123'), role=role)
    db.session.add(user)
    db.session.commit()
    with client.session_transaction() as sess:
        sess['user_id'] = user.id
    return client


@pytest.fixture
def admin_client(client):
    return _login_as(client, 'admin', 'admin@example.com')


@pytest.fixture
def member_client(client):
    return _login_as(client, 'member', 'member@example.com')


def balance_of(sheet_id):
    db.session.expire_all()
    return db.session.get(BalanceSheet, sheet_id).balance


def ledger_sum(sheet_id):
    return db.session.query(func.coalesce(func.sum(Transaction.amount), 0)) \
        .filter(Transaction.balance_sheet_id == sheet_id).scalar()
