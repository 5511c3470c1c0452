"""Request payloads for the JSON API.

Bodies arrive with the camelCase keys used by the dashboard client
(``balanceSheetId``, ``rkapName`` ...); fields are snake_case here.
"""
import re
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import INT_MAX, INT_MIN, ROLES

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def field_errors(exc: ValidationError) -> dict:
    """Flatten pydantic errors into ``{field: [messages]}``."""
    errors = {}
    for err in exc.errors():
        field = '.'.join(str(part) for part in err['loc']) or 'body'
        if err['type'] == 'value_error':
            message = str(err['ctx']['error'])
        else:
            message = err['msg']
        errors.setdefault(field, []).append(message)
    return errors


# ---------------------- Transactions ----------------------
class TransactionPayload(CamelModel):
    date: datetime
    item: int = Field(ge=1)
    rkap_name: Optional[int] = Field(default=None, ge=1)  # category id, derived from the item when absent
    payee: str
    # strict: JSON true/false must not pass as 1/0
    amount: int = Field(strict=True, ge=INT_MIN, le=INT_MAX)
    balance_sheet_id: int = Field(ge=1)
    attachment_url: Optional[str] = None

    @field_validator('date')
    @classmethod
    def _normalise_date(cls, value):
        return _naive_utc(value)

    @field_validator('payee')
    @classmethod
    def _payee_required(cls, value):
        if not value:
            raise ValueError('Payee is required.')
        return value

    @field_validator('amount')
    @classmethod
    def _amount_not_zero(cls, value):
        if value == 0:
            raise ValueError('Amount cannot be zero.')
        return value


class TransactionUpdatePayload(TransactionPayload):
    id: int


class IdPayload(CamelModel):
    id: int


class AttachmentPayload(CamelModel):
    id: int
    attachment_url: Optional[str] = None


class IdsPayload(CamelModel):
    ids: list[int]

    @field_validator('ids')
    @classmethod
    def _not_empty(cls, value):
        if not value:
            raise ValueError('No IDs provided.')
        return value


class ImportPayload(CamelModel):
    # rows stay loosely typed; the importer validates them one field at a time
    data: list[Any]

    @field_validator('data')
    @classmethod
    def _not_empty(cls, value):
        if not value:
            raise ValueError('No data to import.')
        return value


# ---------------------- Master data ----------------------
class BalanceSheetPayload(CamelModel):
    name: str
    balance: int = Field(default=0, strict=True, ge=INT_MIN, le=INT_MAX)

    @field_validator('name')
    @classmethod
    def _name_required(cls, value):
        if not value:
            raise ValueError('Name is required.')
        return value


class BalanceSheetRenamePayload(CamelModel):
    id: int
    name: str

    @field_validator('name')
    @classmethod
    def _name_required(cls, value):
        if not value:
            raise ValueError('Name is required.')
        return value


class CategoryPayload(CamelModel):
    name: str
    budget: int = Field(strict=True, le=INT_MAX)

    @field_validator('name')
    @classmethod
    def _name_required(cls, value):
        if not value:
            raise ValueError('Category name is required.')
        return value

    @field_validator('budget')
    @classmethod
    def _budget_positive(cls, value):
        if value < 0:
            raise ValueError('Budget must be a positive number.')
        return value


class CategoryUpdatePayload(CategoryPayload):
    id: int


class ItemPayload(CamelModel):
    name: str
    category_id: int

    @field_validator('name')
    @classmethod
    def _name_required(cls, value):
        if not value:
            raise ValueError('Item name is required.')
        return value

    @field_validator('category_id')
    @classmethod
    def _category_required(cls, value):
        if value < 1:
            raise ValueError('Category is required.')
        return value


class ItemUpdatePayload(ItemPayload):
    id: int


# ---------------------- Accounts ----------------------
class RegisterPayload(CamelModel):
    full_name: str
    email: str
    password: str

    @field_validator('full_name')
    @classmethod
    def _full_name(cls, value):
        if len(value) < 3:
            raise ValueError('Full name is required')
        return value

    @field_validator('email')
    @classmethod
    def _email(cls, value):
        if not EMAIL_RE.match(value):
            raise ValueError('Invalid email address')
        return value.lower()

    @field_validator('password')
    @classmethod
    def _password(cls, value):
        if len(value) < 6:
            raise ValueError('Password must be at least 6 characters')
        return value


class LoginPayload(CamelModel):
    email: str
    password: str

    @field_validator('email')
    @classmethod
    def _lower(cls, value):
        return value.lower()


class ProfilePayload(CamelModel):
    full_name: str
    avatar_url: Optional[str] = None

    @field_validator('full_name')
    @classmethod
    def _full_name(cls, value):
        if len(value) < 3:
            raise ValueError('Full name must be at least 3 characters.')
        return value


class PasswordPayload(CamelModel):
    current_password: str
    new_password: str

    @field_validator('current_password')
    @classmethod
    def _current(cls, value):
        if not value:
            raise ValueError('Current password is required.')
        return value

    @field_validator('new_password')
    @classmethod
    def _new(cls, value):
        if len(value) < 6:
            raise ValueError('New password must be at least 6 characters.')
        return value


class RoleUpdatePayload(CamelModel):
    id: int
    role: Literal[ROLES]


# ---------------------- Drive ----------------------
class DriveFolderPayload(CamelModel):
    name: str = Field(min_length=1)
    parent_id: Optional[int] = None


class DriveFilePayload(DriveFolderPayload):
    path: str = Field(min_length=1)
    size: int = Field(ge=0)


# ---------------------- Reports ----------------------
class ReportPayload(CamelModel):
    start_date: datetime
    end_date: datetime

    @field_validator('start_date', 'end_date')
    @classmethod
    def _normalise(cls, value):
        return _naive_utc(value)

    @model_validator(mode='after')
    def _ordered(self):
        if self.end_date < self.start_date:
            raise ValueError('End date must not be before start date.')
        return self


class ItemReportPayload(ReportPayload):
    item_ids: list[int]

    @field_validator('item_ids')
    @classmethod
    def _not_empty(cls, value):
        if not value:
            raise ValueError('Item IDs and date range are required.')
        return value
