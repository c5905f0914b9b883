"""
Provider usage database model.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, Index

from llm_failover.core.database import Base


class ProviderUsage(Base):
    """Per-provider request totals and spend by UTC date."""

    __tablename__ = "provider_usage"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(String(200), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)

    total_requests = Column(Integer, default=0)
    success_requests = Column(Integer, default=0)
    failed_requests = Column(Integer, default=0)

    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    cost_usd = Column(Float, default=0.0)

    avg_response_time = Column(Float, default=0.0)  # milliseconds
    last_used_at = Column(DateTime, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_usage_provider_date', 'provider_id', 'date', unique=True),
    )

    def __repr__(self):
        return f"<ProviderUsage(provider_id={self.provider_id}, date={self.date}, cost_usd={self.cost_usd})>"
