"""
SQLAlchemy ORM Models
"""
from sqlalchemy import (
    Column, String, Float, DateTime, ForeignKey, Text, Enum as SQLEnum, Boolean, Index, JSON,
    CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum

Base = declarative_base()

DEFAULT_CATEGORY_NAME = "Other"


class PaymentMethodEnum(str, enum.Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    DIGITAL_WALLET = "DIGITAL_WALLET"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, unique=True, nullable=False, index=True)
    first_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    expenses = relationship("Expense", back_populates="user", cascade="all, delete-orphan")
    budgets = relationship("Budget", back_populates="user", cascade="all, delete-orphan")
    reports = relationship("Report", back_populates="user", cascade="all, delete-orphan")


class Category(Base):
    """Shared category catalogue. "Other" is the fallback for failed AI categorization."""
    __tablename__ = "categories"

    id = Column(String, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(String, nullable=True)
    color = Column(String, nullable=False, default="#6B7280")
    icon = Column(String, nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Expense(Base):
    __tablename__ = "expenses"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
        CheckConstraint(
            "ai_confidence IS NULL OR (ai_confidence >= 0 AND ai_confidence <= 1)",
            name="ck_expenses_ai_confidence_range",
        ),
        Index("ix_expenses_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    description = Column(Text, nullable=False)
    merchant = Column(String(100), nullable=True)
    payment_method = Column(SQLEnum(PaymentMethodEnum), nullable=False)
    category_id = Column(String, ForeignKey("categories.id"), nullable=False, index=True)
    # None means the category was set manually or without the AI service
    ai_confidence = Column(Float, nullable=True)
    transaction_date = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    is_recurring = Column(Boolean, default=False, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="expenses")
    category = relationship("Category")


class Budget(Base):
    __tablename__ = "budgets"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    category_id = Column(String, ForeignKey("categories.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="budgets")
    category = relationship("Category")


class Report(Base):
    __tablename__ = "reports"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)  # monthly, quarterly, yearly, custom
    parameters = Column(JSON, nullable=False, default=dict)
    file_path = Column(String, nullable=True)
    generated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="reports")


class CategorizationCorrection(Base):
    """
    User overrides of AI-assigned categories.

    The categorization client replays recent corrections for the same merchant
    as hints in its prompt.
    """
    __tablename__ = "categorization_corrections"

    id = Column(String, primary_key=True)
    merchant = Column(String(100), nullable=True, index=True)
    description = Column(Text, nullable=False)
    amount = Column(Float, nullable=True)
    payment_method = Column(String, nullable=True)
    original_category_id = Column(String, ForeignKey("categories.id"), nullable=False)
    corrected_category_id = Column(String, ForeignKey("categories.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
