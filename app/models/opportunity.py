from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, ForeignKeyConstraint, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType


class Opportunity(Base):
    """Scored, prioritised recommendation produced by the insights engine."""

    __tablename__ = "opportunities"

    report_id: Mapped[str] = mapped_column(
        ForeignKey("reports.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(20), primary_key=True)  # SRC_001, CMP_002, REP_003
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    opportunity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    theme_category: Mapped[str] = mapped_column(String(50), nullable=False)

    # Scores (rewritten only when insights are regenerated)
    impact_score: Mapped[float] = mapped_column(Float, nullable=False)  # 0..1
    impact_label: Mapped[str] = mapped_column(String(10), nullable=False)  # High | Medium | Low
    effort_score: Mapped[float] = mapped_column(Float, nullable=False)  # 0..1
    effort_label: Mapped[str] = mapped_column(String(10), nullable=False)
    priority_tier: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    priority_urgency: Mapped[int] = mapped_column(Integer, nullable=False)

    evidence: Mapped[dict | None] = mapped_column(JSONType, default=dict)
    sources: Mapped[list | None] = mapped_column(JSONType, default=list)
    recommended_actions: Mapped[list | None] = mapped_column(JSONType, default=list)
    extra: Mapped[dict | None] = mapped_column("metadata", JSONType, default=dict)

    # User-owned fields
    is_implemented: Mapped[bool] = mapped_column(Boolean, default=False)
    implemented_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    implementation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    report: Mapped["Report"] = relationship("Report", back_populates="opportunities")  # noqa: F821
    actions: Mapped[list["OpportunityAction"]] = relationship(
        "OpportunityAction", back_populates="opportunity", cascade="all, delete-orphan"
    )


class OpportunityAction(Base):
    """Execution history entry logged against an opportunity."""

    __tablename__ = "opportunity_actions"
    __table_args__ = (
        ForeignKeyConstraint(
            ["report_id", "opportunity_id"],
            ["opportunities.report_id", "opportunities.id"],
            ondelete="CASCADE",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    opportunity_id: Mapped[str] = mapped_column(String(20), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)  # outreach | content | pitch ...
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    opportunity: Mapped["Opportunity"] = relationship("Opportunity", back_populates="actions")
