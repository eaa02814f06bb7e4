"""
CRM models: partner accounts and their contacts.

Owned by the CRM import subsystem. The sync engine only writes the
cross-links (contacts.lms_user_id).
"""

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin

# ============================================================================
# Pydantic Models (for API/validation)
# ============================================================================


class PartnerSummary(BaseModel):
    """Minimal partner info for match results."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    account_name: str
    partner_tier: str | None = None


class ContactBase(BaseModel):
    """Base fields for CRM contacts."""

    email: str = Field(..., min_length=3, max_length=255)
    first_name: str | None = None
    last_name: str | None = None
    title: str | None = None


class Contact(ContactBase):
    """Complete contact entity returned from database."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    partner_id: int | None = None
    lms_user_id: str | None = None


# ============================================================================
# SQLAlchemy Models (for database)
# ============================================================================


class PartnerModel(Base, TimestampMixin):
    """SQLAlchemy model for partners table."""

    __tablename__ = "partners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    partner_tier: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    account_region: Mapped[str | None] = mapped_column(String(100), nullable=True)
    account_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    salesforce_id: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)

    # Relationships
    contacts: Mapped[list["ContactModel"]] = relationship(back_populates="partner")


class ContactModel(Base, TimestampMixin):
    """SQLAlchemy model for contacts table."""

    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    partner_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("partners.id", ondelete="SET NULL"), nullable=True, index=True
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plain column, not a foreign key: contacts and LMS users reference each
    # other and the link is filled in by reconciliation.
    lms_user_id: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)

    # Relationships
    partner: Mapped[PartnerModel | None] = relationship(back_populates="contacts")
