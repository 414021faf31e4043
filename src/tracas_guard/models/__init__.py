# src/tracas_guard/models/__init__.py
"""SQLAlchemy models for the Tracas Guard security layer."""

from .two_factor import BackupCode, TwoFactorSecret

__all__ = ["BackupCode", "TwoFactorSecret"]
