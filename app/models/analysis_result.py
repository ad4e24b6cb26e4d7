from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType


class AnalysisResult(Base):
    """Aggregator output for one (kind, market, category) scope. Replaced on every run."""

    __tablename__ = "analysis_results"
    __table_args__ = (
        UniqueConstraint("report_id", "analysis_kind", "market_code", "category_id", name="uq_analysis_result"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[str] = mapped_column(
        ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    analysis_kind: Mapped[str] = mapped_column(String(30), nullable=False)  # + "categories_associated", "pr_insights"
    market_code: Mapped[str] = mapped_column(String(20), nullable=False, default="")  # "" = no market
    category_id: Mapped[str] = mapped_column(String(50), nullable=False, default="")  # "" = no category
    data: Mapped[dict] = mapped_column(JSONType, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    report: Mapped["Report"] = relationship("Report", back_populates="analysis_results")  # noqa: F821
