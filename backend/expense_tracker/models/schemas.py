from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from enum import Enum


class PaymentMethod(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    DIGITAL_WALLET = "DIGITAL_WALLET"


class ExpenseBase(BaseModel):
    amount: float = Field(gt=0)
    description: str = Field(min_length=1, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=100)
    payment_method: PaymentMethod
    transaction_date: datetime
    notes: Optional[str] = Field(default=None, max_length=1000)
    is_recurring: bool = False


class ExpenseCreate(ExpenseBase):
    category_id: Optional[str] = None  # AI categorization runs when omitted


class ExpenseUpdate(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=100)
    payment_method: Optional[PaymentMethod] = None
    transaction_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    is_recurring: Optional[bool] = None
    category_id: Optional[str] = None

    @field_validator("amount", "description", "payment_method", "transaction_date", "is_recurring")
    @classmethod
    def _not_null(cls, value):
        # Omit a field to keep it; only merchant, notes and category_id can be cleared
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class Expense(ExpenseBase):
    id: str
    user_id: str
    category_id: str
    ai_confidence: Optional[float] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Categorization(BaseModel):
    category_id: str
    confidence: Optional[float] = None
    reasoning: str
    source: str


class ExpenseWithCategorization(BaseModel):
    expense: Expense
    categorization: Optional[Categorization] = None
    job_id: Optional[str] = None  # set when categorization was queued


class Category(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    is_default: bool = False

    class Config:
        from_attributes = True


class BulkRecategorizeRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)
    only_low_confidence: bool = True


class JobAccepted(BaseModel):
    job_id: str
    kind: str
    status: str = "queued"


class ReportCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    type: str = "summary"
    start_date: date
    end_date: date
    categories: Optional[List[str]] = None


class Report(BaseModel):
    id: str
    user_id: str
    name: str
    type: str
    parameters: Optional[Dict[str, Any]] = None
    file_path: Optional[str] = None
    generated_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
