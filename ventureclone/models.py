from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    providers: Mapped[list[AIProvider]] = relationship("AIProvider", back_populates="user", cascade="all, delete-orphan")
    analyses: Mapped[list[BusinessAnalysis]] = relationship("BusinessAnalysis", back_populates="user", cascade="all, delete-orphan")


class AIProvider(Base):
    __tablename__ = "ai_providers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)  # openai | anthropic | gemini | grok
    api_key: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(String(100), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    user: Mapped[User] = relationship("User", back_populates="providers")


class BusinessAnalysis(Base):
    __tablename__ = "business_analyses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    summary: Mapped[str] = mapped_column(Text, default="")
    model: Mapped[str] = mapped_column(String(100), default="")
    business_model: Mapped[str] = mapped_column(Text, default="")
    revenue_stream: Mapped[str] = mapped_column(Text, default="")
    target_market: Mapped[str] = mapped_column(Text, default="")
    overall_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    structured_json: Mapped[str] = mapped_column(Text, default="{}")
    first_party_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    # None until a stage beyond discovery has been generated
    stages_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_stage: Mapped[int] = mapped_column(Integer, default=1)
    clonability_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    complexity_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    insights_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    improvements_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    detection_status: Mapped[str] = mapped_column(String(20), default="disabled")  # success | failed | disabled
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    user: Mapped[User] = relationship("User", back_populates="analyses")
