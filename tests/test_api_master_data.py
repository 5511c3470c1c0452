import io
import os

from conftest import UPLOAD_DIR, balance_of
from models import db, BalanceSheet, Category, DriveItem, Item, Transaction, User


def add_transaction(client, seed, **overrides):
    data = {'date': '2025-03-01T00:00:00', 'item': seed.laptop, 'payee': 'Vendor', 'amount': -100,
            'balanceSheetId': seed.bank}
    data.update(overrides)
    return client.post('/transactions', json=data).get_json()['transaction']


# ---------------------- Balance sheets ----------------------
def test_balance_sheet_create_and_list(admin_client, seed):
    resp = admin_client.post('/balancesheet', json={'name': 'Mandiri', 'balance': 2500})

    assert resp.status_code == 201
    assert resp.get_json()['balance'] == 2500
    names = [s['name'] for s in admin_client.get('/balancesheet').get_json()]
    assert names == ['BANK', 'Petty Cash', 'Mandiri']


def test_balance_sheet_duplicate_name_conflicts(admin_client, seed):
    resp = admin_client.post('/balancesheet', json={'name': 'bank'})

    assert resp.status_code == 409


def test_balance_sheet_rename_keeps_balance(admin_client, seed):
    resp = admin_client.patch('/balancesheet', json={'id': seed.petty, 'name': 'Kas Kecil', 'balance': 1})

    assert resp.status_code == 200
    assert resp.get_json()['name'] == 'Kas Kecil'
    assert balance_of(seed.petty) == 500


def test_balance_sheet_rename_to_taken_name_conflicts(admin_client, seed):
    resp = admin_client.patch('/balancesheet', json={'id': seed.petty, 'name': 'BANK'})

    assert resp.status_code == 409


def test_balance_sheet_delete_detaches_transactions(admin_client, seed):
    txn = add_transaction(admin_client, seed)

    resp = admin_client.delete('/balancesheet', json={'ids': [seed.bank]})

    assert resp.status_code == 200
    db.session.expire_all()
    assert db.session.get(BalanceSheet, seed.bank) is None
    assert db.session.get(Transaction, txn['id']).balance_sheet_id is None
    listed = admin_client.get('/transactions').get_json()
    assert listed[0]['balanceSheet'] is None


def test_balance_sheet_delete_with_unknown_id(admin_client, seed):
    resp = admin_client.delete('/balancesheet', json={'ids': [seed.bank, 999]})

    assert resp.status_code == 404
    db.session.expire_all()
    assert db.session.get(BalanceSheet, seed.bank) is not None


def test_members_cannot_create_balance_sheets(member_client, seed):
    assert member_client.post('/balancesheet', json={'name': 'X'}).status_code == 403


# ---------------------- Categories & items ----------------------
def test_category_listing_counts_items(admin_client, seed):
    admin_client.post('/items', json={'name': 'Tinta', 'categoryId': seed.operasional})

    rows = {c['name']: c for c in admin_client.get('/categories').get_json()}

    assert rows['Operasional']['itemCount'] == 2
    assert rows['Peralatan']['itemCount'] == 1


def test_category_negative_budget_is_rejected(admin_client, seed):
    resp = admin_client.post('/categories', json={'name': 'Rapat', 'budget': -5})

    assert resp.status_code == 400
    assert resp.get_json()['errors']['budget'] == ['Budget must be a positive number.']


def test_category_update(admin_client, seed):
    resp = admin_client.patch('/categories', json={'id': seed.operasional, 'name': 'Operasional Kantor',
                                                   'budget': 20000})

    assert resp.status_code == 200
    assert resp.get_json()['budget'] == 20000


def test_category_delete_removes_items_and_transactions(admin_client, seed):
    add_transaction(admin_client, seed, item=seed.fuel)

    resp = admin_client.delete('/categories', json={'ids': [seed.operasional]})

    assert resp.status_code == 200
    db.session.expire_all()
    assert db.session.get(Item, seed.fuel) is None
    assert Transaction.query.count() == 0
    # the ledger effect is left in place
    assert balance_of(seed.bank) == 900


def test_item_requires_existing_category(admin_client, seed):
    resp = admin_client.post('/items', json={'name': 'Kursi', 'categoryId': 999})

    assert resp.status_code == 404


def test_item_update_and_list(admin_client, seed):
    resp = admin_client.patch('/items', json={'id': seed.fuel, 'name': 'Solar', 'categoryId': seed.peralatan})

    assert resp.status_code == 200
    listed = {i['id']: i for i in admin_client.get('/items').get_json()}
    assert listed[seed.fuel]['name'] == 'Solar'
    assert listed[seed.fuel]['category'] == {'name': 'Peralatan'}


def test_item_delete_removes_its_transactions(admin_client, seed):
    add_transaction(admin_client, seed)
    add_transaction(admin_client, seed, item=seed.fuel)

    resp = admin_client.delete('/items', json={'ids': [seed.laptop]})

    assert resp.status_code == 200
    db.session.expire_all()
    assert [t.item_id for t in Transaction.query.all()] == [seed.fuel]
    assert db.session.get(Category, seed.peralatan) is not None


# ---------------------- Accounts ----------------------
def test_register_login_and_session(client, app):
    resp = client.post('/auth/register', json={'fullName': 'Siti Rahma', 'email': 'Siti@Example.com',
                                               'password': 'rahasia1'})
    assert resp.status_code == 201

    assert client.post('/auth/register', json={'fullName': 'Siti Rahma', 'email': 'siti@example.com',
                                               'password': 'rahasia1'}).status_code == 409

    assert client.post('/auth/login', json={'email': 'siti@example.com', 'password': 'wrong'}).status_code == 401

    resp = client.post('/auth/login', json={'email': 'SITI@example.com', 'password': 'rahasia1'})
    assert resp.status_code == 200
    assert resp.get_json()['user']['role'] == 'member'

    assert client.get('/auth/session').get_json()['user']['email'] == 'siti@example.com'
    client.post('/auth/logout')
    assert client.get('/auth/session').status_code == 401


def test_register_validates_fields(client, app):
    resp = client.post('/auth/register', json={'fullName': 'Al', 'email': 'nope', 'password': '123'})

    assert resp.status_code == 400
    assert set(resp.get_json()['errors']) == {'fullName', 'email', 'password'}


def test_password_change_checks_current_password(member_client):
    resp = member_client.patch('/account', json={'type': 'password', 'currentPassword': 'bad',
                                                 'newPassword': 'newsecret'})
    assert resp.status_code == 400

    resp = member_client.patch('/account', json={'type': 'password', 'currentPassword': 'secret123',
                                                 'newPassword': 'newsecret'})
    assert resp.status_code == 200


def test_profile_update(member_client):
    resp = member_client.patch('/account', json={'type': 'profile', 'fullName': 'Member Baru'})

    assert resp.status_code == 200
    assert User.query.filter_by(email='member@example.com').one().full_name == 'Member Baru'


def test_account_rejects_unknown_update_type(member_client):
    assert member_client.patch('/account', json={'type': 'email'}).status_code == 400


# ---------------------- Team ----------------------
def test_admin_changes_role(admin_client):
    other = User(full_name='Budi', email='budi@example.com', password='x')
    db.session.add(other)
    db.session.commit()

    resp = admin_client.patch('/users', json={'id': other.id, 'role': 'assistant_admin'})

    assert resp.status_code == 200
    assert resp.get_json()['role'] == 'assistant_admin'
    assert admin_client.patch('/users', json={'id': other.id, 'role': 'owner'}).status_code == 400


def test_admin_cannot_delete_self(admin_client):
    me = User.query.filter_by(email='admin@example.com').one()

    resp = admin_client.delete('/users', json={'id': me.id})

    assert resp.status_code == 400


def test_member_cannot_manage_users(member_client):
    assert member_client.delete('/users', json={'id': 1}).status_code == 403


# ---------------------- Files ----------------------
def test_upload_stores_under_owner_folder(admin_client):
    resp = admin_client.post('/upload', data={'file': (io.BytesIO(b'%PDF-1.4'), 'nota bensin.pdf')},
                             content_type='multipart/form-data')

    assert resp.status_code == 200
    url = resp.get_json()['url']
    assert url.startswith('/uploads/admin_example_com/')
    assert url.endswith('_nota_bensin.pdf')
    assert os.path.exists(os.path.join(UPLOAD_DIR, url[len('/uploads/'):]))

    served = admin_client.get(url)
    assert served.data == b'%PDF-1.4'
    served.close()


def test_upload_without_file(admin_client):
    resp = admin_client.post('/upload')

    assert resp.status_code == 400
    assert resp.get_json()['success'] is False


def test_drive_folder_and_file(member_client):
    folder = member_client.post('/drive', json={'type': 'folder', 'name': 'Nota'}).get_json()
    resp = member_client.post('/drive', json={'type': 'file', 'name': 'a.pdf', 'path': '/uploads/m/a.pdf',
                                              'size': 10, 'parentId': folder['id']})

    assert resp.status_code == 201
    assert resp.get_json()['parentId'] == folder['id']
    assert len(member_client.get('/drive').get_json()) == 2


def test_drive_parent_must_be_visible_folder(member_client):
    assert member_client.post('/drive', json={'type': 'folder', 'name': 'X', 'parentId': 99}).status_code == 404
    assert member_client.post('/drive', json={'type': 'link', 'name': 'X'}).status_code == 400


def test_drive_delete_removes_folder_tree(member_client):
    folder = member_client.post('/drive', json={'type': 'folder', 'name': 'Nota'}).get_json()
    member_client.post('/drive', json={'type': 'file', 'name': 'a.pdf', 'path': '/uploads/m/a.pdf',
                                       'size': 10, 'parentId': folder['id']})

    resp = member_client.delete('/drive', json={'id': folder['id']})

    assert resp.status_code == 200
    assert DriveItem.query.count() == 0


def test_opening_balance_must_fit_integer_column(admin_client, seed):
    resp = admin_client.post('/balancesheet', json={'name': 'Mandiri', 'balance': 2 ** 40})

    assert resp.status_code == 400
    assert 'balance' in resp.get_json()['errors']
