from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType


class Source(Base):
    """A cited URL, deduplicated per report, with its classification."""

    __tablename__ = "sources"
    __table_args__ = (UniqueConstraint("report_id", "url", name="uq_report_source_url"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[str] = mapped_column(
        ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    title: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    cited_by: Mapped[list | None] = mapped_column(JSONType, default=list)  # ["gemini", "openai"]

    # Classification
    source_type: Mapped[str] = mapped_column(String(50), nullable=False, default="Other")
    confidence: Mapped[str] = mapped_column(String(10), nullable=False, default="low")  # high | medium | low
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    competitor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    authority: Mapped[float | None] = mapped_column(Float, nullable=True)  # from the domain table, when trusted
    youtube_channel: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    report: Mapped["Report"] = relationship("Report", back_populates="sources")  # noqa: F821
