from datetime import datetime
from typing import Optional
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Integer, Text, Float, Boolean, DateTime, UniqueConstraint

class Base(DeclarativeBase):
    pass

class Brand(Base):
    __tablename__ = "brand"
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(256))
    domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    last_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

class Subscription(Base):
    __tablename__ = "subscription"
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    plan: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # null -> no subscription
    free_scan_used: Mapped[bool] = mapped_column(Boolean, default=False)
    scans_used: Mapped[int] = mapped_column(Integer, default=0)
    scans_limit: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

class Scan(Base):
    __tablename__ = "scan"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    brand_id: Mapped[str] = mapped_column(String(255), index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)
    plan: Mapped[str] = mapped_column(String(32), default="free")
    status: Mapped[str] = mapped_column(String(32), index=True)
    stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_phase: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    mention_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    consistency: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    provider_scores_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_json: Mapped[str] = mapped_column(Text)
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # full ScanResult
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)  # doubles as worker heartbeat
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

class QueryRecord(Base):
    __tablename__ = "scan_query"
    __table_args__ = (UniqueConstraint("scan_id", "dedupe_key"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[str] = mapped_column(String(64), index=True)
    rank: Mapped[int] = mapped_column(Integer)
    text: Mapped[str] = mapped_column(Text)
    intent: Mapped[str] = mapped_column(String(32))
    intent_weight: Mapped[float] = mapped_column(Float)
    relevance_score: Mapped[int] = mapped_column(Integer)
    intent_score: Mapped[int] = mapped_column(Integer)
    dedupe_key: Mapped[str] = mapped_column(String(12))

class ScanResponse(Base):
    __tablename__ = "scan_response"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[str] = mapped_column(String(32))
    query_text: Mapped[str] = mapped_column(Text)
    intent: Mapped[str] = mapped_column(String(32))
    response_text: Mapped[str] = mapped_column(Text)
    brand_detected: Mapped[bool] = mapped_column(Boolean)
    confidence: Mapped[float] = mapped_column(Float)
    method: Mapped[str] = mapped_column(String(16))
    position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sentiment: Mapped[str] = mapped_column(String(16))
    competitors_json: Mapped[str] = mapped_column(Text)  # detected competitor names

class CompetitorSnapshotRecord(Base):
    __tablename__ = "competitor_snapshot"
    __table_args__ = (UniqueConstraint("scan_id", "competitor_name"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[str] = mapped_column(String(64), index=True)
    brand_id: Mapped[str] = mapped_column(String(255), index=True)
    competitor_name: Mapped[str] = mapped_column(String(128))
    mentioned: Mapped[bool] = mapped_column(Boolean)
    mention_count: Mapped[int] = mapped_column(Integer)
    best_position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    avg_position: Mapped[float] = mapped_column(Float)
    avg_confidence: Mapped[float] = mapped_column(Float)
    visibility_estimate: Mapped[int] = mapped_column(Integer)
    trend: Mapped[str] = mapped_column(String(16))
    recorded_at: Mapped[datetime] = mapped_column(DateTime, index=True)

class ScheduleRecord(Base):
    __tablename__ = "recurring_schedule"
    brand_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    source_scan_id: Mapped[str] = mapped_column(String(64))
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    interval: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # weekly | monthly
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    last_scan_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
