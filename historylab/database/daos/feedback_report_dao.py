"""
Feedback Report DAO

Stages `FeedbackReport` rows. Requires an active SQLAlchemy
`Session`; methods log and re-raise.
"""

import logging

from sqlalchemy.orm import Session
from historylab.database.entities.feedback_report import FeedbackReport

logger = logging.getLogger(__name__)


class FeedbackReportDao:

    def createReport(self, session: Session, report: FeedbackReport) -> FeedbackReport:
        try:
            session.add(report)
            return report
        except Exception:
            logger.exception("Error in FeedbackReportDao.createReport (id=%s)", report.id)
            raise
