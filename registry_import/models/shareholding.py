"""Permanent shareholder record produced by batch promotion."""
from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from registry_import.database import Base


class Shareholding(Base):
    """One holder's position in one share class of one company for a year."""

    __tablename__ = "shareholdings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    job_id = Column(Integer, nullable=False, index=True)
    year = Column(Integer, nullable=False)
    orgnr = Column(String(9), nullable=False)
    company_name = Column(String(500), nullable=False)
    share_class = Column(String(255), nullable=False)
    holder_name = Column(String(500), nullable=False)
    holder_birth_year_or_orgnr = Column(String(32), nullable=True)
    country_code = Column(String(8), nullable=False)
    shares = Column(BigInteger, default=0, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_shareholdings_user_year_orgnr", "user_id", "year", "orgnr"),
    )

    def __repr__(self):
        return f"<Shareholding(orgnr='{self.orgnr}', holder='{self.holder_name}', shares={self.shares})>"
