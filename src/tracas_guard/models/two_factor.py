# src/tracas_guard/models/two_factor.py
"""SQLAlchemy models for second-factor secrets and recovery codes."""

from __future__ import annotations

from sqlalchemy import Float, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tracas_guard.db.session import Base


class TwoFactorSecret(Base):
    """Encrypted TOTP secret; at most one row per account."""

    __tablename__ = "two_factor_secret"

    owner_id: Mapped[str] = mapped_column(Text, primary_key=True)
    encrypted_secret: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)


class BackupCode(Base):
    """Salted hash of a single-use recovery code; the row is deleted when used."""

    __tablename__ = "backup_code"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    code_hash: Mapped[str] = mapped_column(Text, nullable=False)
