"""
Dayparting exceptions

Data-quality problems never raise; these cover caller mistakes only.
"""

from typing import List, Optional


class DaypartingError(Exception):
    code = "DAYPARTING_ERROR"


class InvalidConfigError(DaypartingError):
    code = "DAYPARTING_INVALID_CONFIG"

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid dayparting config: {', '.join(self.errors)}")


class ConfigNotFoundError(DaypartingError):
    code = "DAYPARTING_CONFIG_NOT_FOUND"

    def __init__(self, asin: str, campaign_id: str, ad_group_id: Optional[str] = None):
        self.asin = asin
        self.campaign_id = campaign_id
        self.ad_group_id = ad_group_id
        super().__init__(f"No dayparting config for {asin}/{campaign_id}/{ad_group_id or '-'}")


class FeedbackAlreadyEvaluatedError(DaypartingError):
    code = "DAYPARTING_FEEDBACK_EVALUATED"

    def __init__(self, feedback_id: str):
        self.feedback_id = feedback_id
        super().__init__(f"Feedback {feedback_id} was already evaluated")
