import logging
import os
from datetime import datetime, timedelta
from functools import wraps

import click
from flask import Flask, Response, request, session, jsonify, send_from_directory
from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash

import ledger
import reports
import storage
from export import XLSX_MIMETYPE, write_report_workbook
from logging_utils import configure_logging
from ml.recommender import generate_recommendations, predict_next_month_expense
from models import db, User, Category, Item, BalanceSheet, Transaction, DriveItem, LEDGER_ROLES
from schemas import (
    AttachmentPayload, BalanceSheetPayload, BalanceSheetRenamePayload, CategoryPayload,
    CategoryUpdatePayload, DriveFilePayload, DriveFolderPayload, IdPayload, IdsPayload,
    ImportPayload, ItemPayload, ItemReportPayload, ItemUpdatePayload, LoginPayload,
    PasswordPayload, ProfilePayload, RegisterPayload, ReportPayload, RoleUpdatePayload,
    TransactionPayload, TransactionUpdatePayload, field_errors,
)

logger = logging.getLogger(__name__)


def create_app():
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///rkap.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-me')
    app.config['UPLOAD_FOLDER'] = os.environ.get('UPLOAD_FOLDER', os.path.join(os.getcwd(), 'uploads'))
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')
    app.config['REPORT_ORGANIZATION'] = os.environ.get('REPORT_ORGANIZATION', 'DEWAN KOMISARIS PT PLN (PERSERO)')
    app.config['DASHBOARD_EXCLUDED_CATEGORY'] = 'Cash Advanced'
    configure_logging(app.config['LOG_LEVEL'])
    db.init_app(app)
    with app.app_context():
        db.create_all()
    return app

app = create_app()


# ---------------------- Error Handlers ----------------------
@app.errorhandler(ValidationError)
def handle_validation_error(error):
    return jsonify({'message': 'Validation failed', 'errors': field_errors(error)}), 400

@app.errorhandler(ledger.NotFoundError)
def handle_not_found(error):
    return jsonify({'message': str(error)}), 404

@app.errorhandler(SQLAlchemyError)
def handle_storage_error(error):
    db.session.rollback()
    logger.exception('Storage failure on %s %s', request.method, request.path)
    return jsonify({'message': 'An unexpected server error occurred.'}), 500


# ---------------------- Auth Helpers ----------------------
def current_user():
    uid = session.get('user_id')
    if uid:
        return db.session.get(User, uid)
    return None

def login_required(view_func):
    @wraps(view_func)
    def wrapped(*args, **kwargs):
        if not current_user():
            return jsonify({'message': 'Unauthorized'}), 401
        return view_func(*args, **kwargs)
    return wrapped

def roles_required(*roles):
    def decorator(view_func):
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            user = current_user()
            if not user:
                return jsonify({'message': 'Unauthorized'}), 401
            if user.role not in roles:
                return jsonify({'message': 'Forbidden: You do not have permission to perform this action.'}), 403
            return view_func(*args, **kwargs)
        return wrapped
    return decorator

def json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}

def parse(schema):
    return schema.model_validate(json_body())


# ---------------------- Serializers ----------------------
def _user_json(user):
    return {
        'id': user.id,
        'fullName': user.full_name,
        'email': user.email,
        'role': user.role,
        'avatarUrl': user.avatar_url,
        'createdAt': user.created_at.isoformat(),
    }

def _transaction_json(txn, category_name, item_name, sheet_name):
    return {
        'id': txn.id,
        'date': txn.date.isoformat(),
        'payee': txn.payee,
        'amount': txn.amount,
        'type': txn.ttype,
        'attachmentUrl': txn.attachment_url,
        'createdAt': txn.created_at.isoformat(),
        'categoryId': txn.category_id,
        'itemId': txn.item_id,
        'balanceSheetId': txn.balance_sheet_id,
        'category': {'name': category_name} if category_name is not None else None,
        'item': {'name': item_name} if item_name is not None else None,
        'balanceSheet': {'name': sheet_name} if sheet_name is not None else None,
    }

def _transaction_detail(txn):
    return _transaction_json(txn, txn.category.name, txn.item.name,
                             txn.balance_sheet.name if txn.balance_sheet else None)

def _sheet_json(sheet):
    return {'id': sheet.id, 'name': sheet.name, 'balance': sheet.balance, 'createdAt': sheet.created_at.isoformat()}

def _category_json(category, item_count=None):
    data = {'id': category.id, 'name': category.name, 'budget': category.budget,
            'createdAt': category.created_at.isoformat()}
    if item_count is not None:
        data['itemCount'] = item_count
    return data

def _item_json(item, category_name=None):
    return {'id': item.id, 'name': item.name, 'categoryId': item.category_id,
            'category': {'name': category_name or item.category.name},
            'createdAt': item.created_at.isoformat()}

def _drive_json(entry):
    return {
        'id': entry.id,
        'name': entry.name,
        'type': entry.type,
        'path': entry.path,
        'size': entry.size,
        'parentId': entry.parent_id,
        'userId': entry.user_id,
        'createdAt': entry.created_at.isoformat(),
        'modifiedAt': entry.modified_at.isoformat(),
    }


# ---------------------- Routes: Auth ----------------------
@app.route('/auth/register', methods=['POST'])
def register():
    payload = parse(RegisterPayload)
    if User.query.filter_by(email=payload.email).first():
        return jsonify({'message': 'Email already in use.'}), 409
    user = User(full_name=payload.full_name, email=payload.email,
                password=generate_password_hash(payload.password))
    db.session.add(user)
    db.session.commit()
    logger.info('Registered user %s', user.id)
    return jsonify({'message': 'User registered successfully.'}), 201

@app.route('/auth/login', methods=['POST'])
def login():
    payload = parse(LoginPayload)
    user = User.query.filter_by(email=payload.email).first()
    if not user or not check_password_hash(user.password, payload.password):
        return jsonify({'message': 'Invalid credentials.'}), 401
    session.clear()
    session['user_id'] = user.id
    return jsonify({'user': _user_json(user)})

@app.route('/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'message': 'Logged out.'})

@app.route('/auth/session')
def auth_session():
    user = current_user()
    if not user:
        return jsonify({'user': None}), 401
    return jsonify({'user': _user_json(user)})

@app.route('/account', methods=['PATCH'])
@login_required
def update_account():
    user = current_user()
    body = json_body()
    update_type = body.get('type')

    if update_type == 'profile':
        payload = ProfilePayload.model_validate(body)
        old_avatar = user.avatar_url
        user.full_name = payload.full_name
        user.avatar_url = payload.avatar_url
        db.session.commit()
        if old_avatar and old_avatar != payload.avatar_url and old_avatar.startswith(storage.URL_PREFIX):
            storage.remove_file(old_avatar)
        return jsonify({'message': 'Profile updated successfully.'})

    if update_type == 'password':
        payload = PasswordPayload.model_validate(body)
        if not check_password_hash(user.password, payload.current_password):
            return jsonify({'message': 'Incorrect current password.'}), 400
        user.password = generate_password_hash(payload.new_password)
        db.session.commit()
        return jsonify({'message': 'Password updated successfully.'})

    return jsonify({'message': 'Invalid update type.'}), 400


# ---------------------- Routes: Transactions ----------------------
@app.route('/transactions')
@login_required
def list_transactions():
    rows = db.session.query(Transaction, Category.name, Item.name, BalanceSheet.name) \
        .outerjoin(Item, Transaction.item_id == Item.id) \
        .outerjoin(Category, Transaction.category_id == Category.id) \
        .outerjoin(BalanceSheet, Transaction.balance_sheet_id == BalanceSheet.id) \
        .order_by(Transaction.date.desc(), Transaction.id.desc()).all()
    return jsonify([_transaction_json(*row) for row in rows])

@app.route('/transactions', methods=['POST'])
@roles_required(*LEDGER_ROLES)
def create_transaction():
    payload = parse(TransactionPayload)
    txn = ledger.create_transaction(payload)
    return jsonify({'message': 'Transaction created successfully', 'transaction': _transaction_detail(txn)}), 201

@app.route('/transactions', methods=['PATCH'])
@roles_required(*LEDGER_ROLES)
def update_transaction():
    payload = parse(TransactionUpdatePayload)
    txn = ledger.update_transaction(payload.id, payload)
    return jsonify({'message': 'Transaction updated successfully.', 'transaction': _transaction_detail(txn)})

@app.route('/transactions', methods=['PUT'])
@roles_required(*LEDGER_ROLES)
def update_attachment():
    payload = parse(AttachmentPayload)
    txn = ledger.set_attachment(payload.id, payload.attachment_url)
    return jsonify(_transaction_detail(txn))

@app.route('/transactions', methods=['DELETE'])
@roles_required(*LEDGER_ROLES)
def delete_transactions():
    payload = parse(IdsPayload)
    count = ledger.delete_transactions(payload.ids)
    return jsonify({'message': 'Transactions deleted successfully.', 'deleted': count})

@app.route('/transactions/import', methods=['POST'])
@roles_required(*LEDGER_ROLES)
def import_transactions():
    payload = parse(ImportPayload)
    result = ledger.import_transactions(payload.data)
    body = result.as_dict()
    body['message'] = f'Imported {result.success_count} transactions.'
    return jsonify(body)


# ---------------------- Routes: Balance Sheets ----------------------
def _sheet_name_taken(name, exclude_id=None):
    q = BalanceSheet.query.filter(func.lower(BalanceSheet.name) == name.lower())
    if exclude_id is not None:
        q = q.filter(BalanceSheet.id != exclude_id)
    return q.first() is not None

@app.route('/balancesheet')
@login_required
def list_balance_sheets():
    sheets = BalanceSheet.query.order_by(BalanceSheet.id).all()
    return jsonify([_sheet_json(s) for s in sheets])

@app.route('/balancesheet', methods=['POST'])
@roles_required(*LEDGER_ROLES)
def create_balance_sheet():
    payload = parse(BalanceSheetPayload)
    if _sheet_name_taken(payload.name):
        return jsonify({'message': 'Balance sheet name already exists.'}), 409
    sheet = BalanceSheet(name=payload.name, balance=payload.balance)
    db.session.add(sheet)
    db.session.commit()
    logger.info('Created balance sheet %s with opening balance %s', sheet.id, sheet.balance)
    return jsonify(_sheet_json(sheet)), 201

@app.route('/balancesheet', methods=['PATCH'])
@roles_required(*LEDGER_ROLES)
def rename_balance_sheet():
    # the balance is ledger-owned; only the name can be edited here
    payload = parse(BalanceSheetRenamePayload)
    sheet = db.session.get(BalanceSheet, payload.id)
    if not sheet:
        return jsonify({'message': 'Balance sheet not found.'}), 404
    if _sheet_name_taken(payload.name, exclude_id=sheet.id):
        return jsonify({'message': 'Balance sheet name already exists.'}), 409
    sheet.name = payload.name
    db.session.commit()
    return jsonify(_sheet_json(sheet))

@app.route('/balancesheet', methods=['DELETE'])
@roles_required(*LEDGER_ROLES)
def delete_balance_sheets():
    payload = parse(IdsPayload)
    sheets = BalanceSheet.query.filter(BalanceSheet.id.in_(payload.ids)).all()
    if len(sheets) != len(set(payload.ids)):
        return jsonify({'message': 'Balance sheet not found.'}), 404
    # referencing transactions are kept with balance_sheet_id set to NULL
    for sheet in sheets:
        db.session.delete(sheet)
    db.session.commit()
    return jsonify({'message': 'Balance sheets deleted successfully.'})


# ---------------------- Routes: Categories ----------------------
@app.route('/categories')
@login_required
def list_categories():
    rows = db.session.query(Category, func.count(Item.id)) \
        .outerjoin(Item, Item.category_id == Category.id) \
        .group_by(Category.id).order_by(Category.id).all()
    return jsonify([_category_json(c, count) for c, count in rows])

@app.route('/categories', methods=['POST'])
@roles_required(*LEDGER_ROLES)
def create_category():
    payload = parse(CategoryPayload)
    category = Category(name=payload.name, budget=payload.budget)
    db.session.add(category)
    db.session.commit()
    return jsonify(_category_json(category)), 201

@app.route('/categories', methods=['PATCH'])
@roles_required(*LEDGER_ROLES)
def update_category():
    payload = parse(CategoryUpdatePayload)
    category = db.session.get(Category, payload.id)
    if not category:
        return jsonify({'message': 'Category not found.'}), 404
    category.name = payload.name
    category.budget = payload.budget
    db.session.commit()
    return jsonify(_category_json(category))

@app.route('/categories', methods=['DELETE'])
@roles_required(*LEDGER_ROLES)
def delete_categories():
    payload = parse(IdsPayload)
    categories = Category.query.filter(Category.id.in_(payload.ids)).all()
    if len(categories) != len(set(payload.ids)):
        return jsonify({'message': 'Category not found.'}), 404
    # items and transactions go with the category; balances are not reversed
    for category in categories:
        db.session.delete(category)
    db.session.commit()
    return jsonify({'message': 'Categories deleted successfully.'})


# ---------------------- Routes: Items ----------------------
@app.route('/items')
@login_required
def list_items():
    rows = db.session.query(Item, Category.name).join(Category, Item.category_id == Category.id) \
        .order_by(Item.id).all()
    return jsonify([_item_json(i, name) for i, name in rows])

@app.route('/items', methods=['POST'])
@roles_required(*LEDGER_ROLES)
def create_item():
    payload = parse(ItemPayload)
    if not db.session.get(Category, payload.category_id):
        return jsonify({'message': 'Category not found.'}), 404
    item = Item(name=payload.name, category_id=payload.category_id)
    db.session.add(item)
    db.session.commit()
    return jsonify(_item_json(item)), 201

@app.route('/items', methods=['PATCH'])
@roles_required(*LEDGER_ROLES)
def update_item():
    payload = parse(ItemUpdatePayload)
    item = db.session.get(Item, payload.id)
    if not item:
        return jsonify({'message': 'Item not found.'}), 404
    if not db.session.get(Category, payload.category_id):
        return jsonify({'message': 'Category not found.'}), 404
    item.name = payload.name
    item.category_id = payload.category_id
    db.session.commit()
    return jsonify(_item_json(item))

@app.route('/items', methods=['DELETE'])
@roles_required(*LEDGER_ROLES)
def delete_items():
    payload = parse(IdsPayload)
    items = Item.query.filter(Item.id.in_(payload.ids)).all()
    if len(items) != len(set(payload.ids)):
        return jsonify({'message': 'Item not found.'}), 404
    for item in items:
        db.session.delete(item)
    db.session.commit()
    return jsonify({'message': 'Items deleted successfully.'})


# ---------------------- Routes: Team ----------------------
@app.route('/users')
@login_required
def list_users():
    users = User.query.order_by(User.created_at.desc(), User.id.desc()).all()
    return jsonify([_user_json(u) for u in users])

@app.route('/users', methods=['PATCH'])
@roles_required('admin')
def change_role():
    payload = parse(RoleUpdatePayload)
    user = db.session.get(User, payload.id)
    if not user:
        return jsonify({'message': 'User not found.'}), 404
    user.role = payload.role
    db.session.commit()
    logger.info('User %s role changed to %s', user.id, user.role)
    return jsonify(_user_json(user))

@app.route('/users', methods=['DELETE'])
@roles_required('admin')
def delete_user():
    payload = parse(IdPayload)
    if payload.id == current_user().id:
        return jsonify({'message': 'Admin cannot delete their own account.'}), 400
    user = db.session.get(User, payload.id)
    if not user:
        return jsonify({'message': 'User not found.'}), 404
    db.session.delete(user)
    db.session.commit()
    return jsonify({'message': 'User deleted successfully.'})


# ---------------------- Routes: Files ----------------------
@app.route('/upload', methods=['POST'])
@login_required
def upload():
    file = request.files.get('file')
    if not file or not file.filename:
        return jsonify({'success': False, 'message': 'No file found.'}), 400
    url = storage.save_upload(file, current_user().email)
    return jsonify({'success': True, 'url': url})

@app.route('/uploads/<path:filename>')
@login_required
def uploaded_file(filename):
    return send_from_directory(app.config['UPLOAD_FOLDER'], filename)

def _visible_drive_items(user):
    q = DriveItem.query
    if user.role != 'admin':
        q = q.filter_by(user_id=user.id)
    return q

def _drive_files(entry):
    if entry.type == 'file':
        return [entry.path] if entry.path else []
    paths = []
    for child in entry.children:
        paths.extend(_drive_files(child))
    return paths

@app.route('/drive')
@login_required
def list_drive():
    entries = _visible_drive_items(current_user()).order_by(DriveItem.modified_at.desc()).all()
    return jsonify([_drive_json(e) for e in entries])

@app.route('/drive', methods=['POST'])
@login_required
def create_drive_item():
    user = current_user()
    body = json_body()
    item_type = body.get('type')
    if item_type == 'folder':
        payload = DriveFolderPayload.model_validate(body)
    elif item_type == 'file':
        payload = DriveFilePayload.model_validate(body)
    else:
        return jsonify({'message': 'Invalid item type.'}), 400

    if payload.parent_id is not None:
        parent = _visible_drive_items(user).filter_by(id=payload.parent_id, type='folder').first()
        if not parent:
            return jsonify({'message': 'Parent folder not found.'}), 404

    entry = DriveItem(name=payload.name, type=item_type, parent_id=payload.parent_id, user_id=user.id)
    if item_type == 'file':
        entry.path = payload.path
        entry.size = payload.size
    db.session.add(entry)
    db.session.commit()
    return jsonify(_drive_json(entry)), 201

@app.route('/drive', methods=['DELETE'])
@login_required
def delete_drive_item():
    user = current_user()
    payload = parse(IdPayload)
    entry = db.session.get(DriveItem, payload.id)
    if not entry:
        return jsonify({'message': 'Item not found.'}), 404
    if user.role != 'admin' and entry.user_id != user.id:
        return jsonify({'message': 'Forbidden: You do not have permission to delete this item.'}), 403
    paths = _drive_files(entry)
    db.session.delete(entry)
    db.session.commit()
    for path in paths:
        storage.remove_file(path)
    return jsonify({'message': 'Item deleted successfully.'})


# ---------------------- Routes: Dashboard & Reports ----------------------
@app.route('/dashboard')
@login_required
def dashboard():
    range_days = request.args.get('range', default=180, type=int)
    if range_days < 0:
        return jsonify({'message': 'Range must be a non-negative number of days.'}), 400
    since = datetime.now() - timedelta(days=range_days)
    return jsonify({
        'balanceSheets': reports.balance_sheet_totals(),
        'transactionHistory': reports.transaction_history(since),
        'rkapItemExpenses': reports.rkap_item_expenses(since, app.config['DASHBOARD_EXCLUDED_CATEGORY']),
        'outlook': {
            'recommendations': generate_recommendations(),
            'nextMonthExpensePrediction': predict_next_month_expense(),
        },
    })

def _workbook_response(report, filename):
    return Response(write_report_workbook(report), 200, {
        'Content-Type': XLSX_MIMETYPE,
        'Content-Disposition': f'attachment; filename="{filename}"',
    })

@app.route('/report', methods=['POST'])
@roles_required(*LEDGER_ROLES)
def export_report():
    payload = parse(ReportPayload)
    report = reports.expense_report(payload.start_date, payload.end_date,
                                    organization=app.config['REPORT_ORGANIZATION'])
    return _workbook_response(report, 'Laporan_Pengeluaran.xlsx')

@app.route('/report/by-item', methods=['POST'])
@roles_required(*LEDGER_ROLES)
def export_item_report():
    payload = parse(ItemReportPayload)
    try:
        report = reports.item_expense_report(payload.item_ids, payload.start_date, payload.end_date,
                                             organization=app.config['REPORT_ORGANIZATION'])
    except reports.NoReportData as exc:
        return jsonify({'message': str(exc)}), 404
    return _workbook_response(report, 'Laporan_Pengeluaran_Per_Item.xlsx')


# ---------------------- CLI ----------------------
@app.cli.command('promote-admin')
@click.argument('email')
def promote_admin(email):
    """Grant the admin role to a registered user."""
    user = User.query.filter_by(email=email.lower()).first()
    if not user:
        raise click.ClickException(f'No user registered with {email}.')
    user.role = 'admin'
    db.session.commit()
    click.echo(f'{email} is now an admin.')


# ---------------------- Run App ----------------------
if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=True)
