"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import JSON, Numeric
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# UUID type that works with both databases
UUIDType = PG_UUID

# Money columns: rupees with paise, never floats
MoneyType = Numeric(14, 2)
RateType = Numeric(5, 2)
QuantityType = Numeric(12, 3)
