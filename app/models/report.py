import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType


class ReportStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (ReportStatus.COMPLETED.value, ReportStatus.FAILED.value)


class Report(Base):
    """One analysis job: a brand, its competitors and the markets it is asked about."""

    __tablename__ = "reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    entity: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    competitors: Mapped[list | None] = mapped_column(JSONType, default=list)  # ["Adidas", "Puma"]
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReportStatus.PROCESSING.value, index=True
    )  # processing | completed | failed
    progress: Mapped[int] = mapped_column(Integer, default=0)  # 0..100
    total_questions: Mapped[int] = mapped_column(Integer, default=0)
    execution_time_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    markets: Mapped[list["Market"]] = relationship(  # noqa: F821
        "Market", back_populates="report", cascade="all, delete-orphan", order_by="Market.display_order"
    )
    category_families: Mapped[list["CategoryFamily"]] = relationship(  # noqa: F821
        "CategoryFamily", back_populates="report", cascade="all, delete-orphan", order_by="CategoryFamily.display_order"
    )
    raw_responses: Mapped[list["RawResponse"]] = relationship(  # noqa: F821
        "RawResponse", back_populates="report", cascade="all, delete-orphan"
    )
    sources: Mapped[list["Source"]] = relationship(  # noqa: F821
        "Source", back_populates="report", cascade="all, delete-orphan"
    )
    analysis_results: Mapped[list["AnalysisResult"]] = relationship(  # noqa: F821
        "AnalysisResult", back_populates="report", cascade="all, delete-orphan"
    )
    opportunities: Mapped[list["Opportunity"]] = relationship(  # noqa: F821
        "Opportunity", back_populates="report", cascade="all, delete-orphan"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
