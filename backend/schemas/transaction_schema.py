from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class Category(str, Enum):
    BASIC_NEEDS = "Basic Needs"
    CLOTHES = "Clothes"
    ENTERTAINMENT = "Entertainment"
    OTHER = "Other"
    SALARY = "Salary"
    FREELANCE = "Freelance"
    INVESTMENT = "Investment"
    GIFT = "Gift"


class RecurringFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Location(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    coordinates: Optional[Coordinates] = None


def _round_amount(value):
    if value is None:
        return value
    return round(float(value), 2)


def _clean_tags(tags):
    if tags is None:
        return tags
    cleaned = [t.strip() for t in tags if t and t.strip()]
    for tag in cleaned:
        if len(tag) > 20:
            raise ValueError("Tag cannot exceed 20 characters")
    return cleaned


class TransactionCreate(BaseModel):
    type: TransactionType
    amount: float = Field(..., gt=0)
    category: Category
    description: str = Field(..., min_length=1, max_length=200)
    date: Optional[datetime] = None
    tags: List[str] = []
    notes: Optional[str] = Field(default=None, max_length=500)
    location: Optional[Location] = None
    is_recurring: bool = False
    recurring_frequency: Optional[RecurringFrequency] = None

    @field_validator("amount")
    @classmethod
    def round_amount(cls, v):
        v = _round_amount(v)
        if v <= 0:
            raise ValueError("Amount must be greater than 0")
        return v

    @field_validator("description")
    @classmethod
    def strip_description(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Description is required")
        return v

    @field_validator("tags")
    @classmethod
    def check_tags(cls, v):
        return _clean_tags(v)

    @model_validator(mode="after")
    def recurring_needs_frequency(self) -> "TransactionCreate":
        if self.is_recurring and self.recurring_frequency is None:
            raise ValueError("recurring_frequency is required for recurring transactions")
        return self


# Fields an update may leave out but never clear
NON_NULLABLE_FIELDS = ("type", "amount", "category", "description", "date", "tags", "is_recurring")


class TransactionUpdate(BaseModel):
    type: Optional[TransactionType] = None
    amount: Optional[float] = Field(default=None, gt=0)
    category: Optional[Category] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    date: Optional[datetime] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    location: Optional[Location] = None
    is_recurring: Optional[bool] = None
    recurring_frequency: Optional[RecurringFrequency] = None

    @model_validator(mode="before")
    @classmethod
    def reject_null_required(cls, data):
        if isinstance(data, dict):
            nulled = sorted(k for k in NON_NULLABLE_FIELDS if k in data and data[k] is None)
            if nulled:
                raise ValueError(f"{', '.join(nulled)} cannot be null")
        return data

    @field_validator("amount")
    @classmethod
    def round_amount(cls, v):
        v = _round_amount(v)
        if v is not None and v <= 0:
            raise ValueError("Amount must be greater than 0")
        return v

    @field_validator("description")
    @classmethod
    def strip_description(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Description is required")
        return v

    @field_validator("tags")
    @classmethod
    def check_tags(cls, v):
        return _clean_tags(v)


class BulkDeleteRequest(BaseModel):
    transaction_ids: List[str] = Field(..., min_length=1)
