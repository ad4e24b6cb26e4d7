from sqlalchemy import Boolean, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class Market(Base):
    """Country/language locale a job is asked in."""

    __tablename__ = "report_markets"
    __table_args__ = (UniqueConstraint("report_id", "market_code", name="uq_report_market"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[str] = mapped_column(
        ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    country: Mapped[str] = mapped_column(String(100), nullable=False)  # "United States"
    language: Mapped[str] = mapped_column(String(50), nullable=False)  # "English"
    market_code: Mapped[str] = mapped_column(String(20), nullable=False)  # "us-en"
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0)

    report: Mapped["Report"] = relationship("Report", back_populates="markets")  # noqa: F821
