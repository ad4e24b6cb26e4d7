"""Service-layer exceptions."""


class ReportNotFoundError(Exception):
    """The report id does not exist. Fatal for any job operation."""

    def __init__(self, report_id: str):
        super().__init__(f"Report {report_id} not found")
        self.report_id = report_id


class OpportunityNotFoundError(Exception):
    def __init__(self, report_id: str, opportunity_id: str):
        super().__init__(f"Opportunity {opportunity_id} not found in report {report_id}")
        self.report_id = report_id
        self.opportunity_id = opportunity_id
