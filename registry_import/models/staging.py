"""Staging area models: transient rows and the per-user writer lease."""
from sqlalchemy import BigInteger, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from registry_import.database import Base


class StagingRow(Base):
    """Mapped row waiting for promotion into ``shareholdings``."""

    __tablename__ = "shareholders_staging"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    orgnr = Column(String(32), nullable=True)
    selskap = Column(String(500), nullable=True)
    aksjeklasse = Column(String(255), nullable=True)
    navn_aksjonaer = Column(String(500), nullable=True)
    fodselsaar_orgnr = Column(String(32), nullable=True)
    landkode = Column(String(8), nullable=True)
    antall_aksjer = Column(BigInteger, default=0, nullable=False)
    year = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class StagingLease(Base):
    """At most one job may write to a user's staging area at a time."""

    __tablename__ = "shareholder_staging_leases"

    user_id = Column(String(64), primary_key=True)
    job_id = Column(Integer, nullable=False)
    claim_token = Column(String(32), nullable=True)  # None while the job is parked
    heartbeat_at = Column(DateTime, nullable=True)
    acquired_at = Column(DateTime, server_default=func.now(), nullable=False)
