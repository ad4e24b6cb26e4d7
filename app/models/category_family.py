from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType


class CategoryFamily(Base):
    """Canonical category concept shared by every market of a job."""

    __tablename__ = "category_families"

    # Composite key: family ids are generated client-side and only unique per report
    report_id: Mapped[str] = mapped_column(
        ForeignKey("reports.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(50), primary_key=True)  # "cat_1a2b3c4d"
    canonical_name: Mapped[str] = mapped_column(String(255), nullable=False)
    translations: Mapped[dict | None] = mapped_column(JSONType, default=dict)  # {"de-de": "Laufschuhe"}
    competitors: Mapped[dict | None] = mapped_column(JSONType, default=dict)  # {"us-en": ["Adidas"]}
    display_order: Mapped[int] = mapped_column(Integer, default=0)

    report: Mapped["Report"] = relationship("Report", back_populates="category_families")  # noqa: F821

    def name_for(self, market_code: str | None) -> str:
        if market_code and self.translations and self.translations.get(market_code):
            return self.translations[market_code]
        return self.canonical_name

    def competitors_for(self, market_code: str | None) -> list[str]:
        if not self.competitors:
            return []
        if market_code and market_code in self.competitors:
            return list(self.competitors[market_code])
        return []
