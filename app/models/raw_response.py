from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType


class RawResponse(Base):
    """Both providers' answers to one question. Written once, never updated."""

    __tablename__ = "raw_responses"
    __table_args__ = (
        UniqueConstraint("report_id", "question_id", "analysis_kind", name="uq_raw_response"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[str] = mapped_column(
        ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_id: Mapped[str] = mapped_column(String(200), nullable=False)  # VIS__us-en__cat_x__Q1
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    analysis_kind: Mapped[str] = mapped_column(String(20), nullable=False)  # reputation | visibility | ...
    sequence: Mapped[int] = mapped_column(Integer, default=0)  # position in the flattened question list

    # Gemini half
    gemini_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)  # parsed JSON body
    gemini_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    gemini_sources: Mapped[list | None] = mapped_column(JSONType, default=list)
    gemini_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # OpenAI half
    openai_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    openai_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    openai_sources: Mapped[list | None] = mapped_column(JSONType, default=list)
    openai_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    report: Mapped["Report"] = relationship("Report", back_populates="raw_responses")  # noqa: F821

    @property
    def has_usable_data(self) -> bool:
        return self.gemini_data is not None or self.openai_data is not None
