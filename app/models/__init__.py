from app.models.analysis_result import AnalysisResult
from app.models.category_family import CategoryFamily
from app.models.market import Market
from app.models.opportunity import Opportunity, OpportunityAction
from app.models.raw_response import RawResponse
from app.models.report import Report, ReportStatus
from app.models.source import Source

__all__ = [
    "AnalysisResult",
    "CategoryFamily",
    "Market",
    "Opportunity",
    "OpportunityAction",
    "RawResponse",
    "Report",
    "ReportStatus",
    "Source",
]
