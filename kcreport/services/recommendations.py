from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional

from ..errors import ValidationError
from ..gateways.data_gateway import DataGateway
from .access import Caller, load_owned_report, require_value
from .windows import utcnow

logger = logging.getLogger(__name__)

CONFLICT_KEY = ('labreportid', 'questionid')


class RecommendationService:
    def __init__(self, gateway: DataGateway):
        self.gateway = gateway

    def assign(self, caller: Caller, report_id: Any, recommendations: Any,
               now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        """Upsert one selected option per question for a report.

        A question already answered on the report is overwritten, never duplicated.
        """
        report_id = require_value(report_id, 'labReportId', 'Lab Report ID is required')
        if not isinstance(recommendations, list):
            raise ValidationError('Recommendations array is required', field='recommendations')
        if not recommendations:
            return {'success': True, 'message': 'No recommendations to save', 'savedRecommendations': []}

        stamp = (now or utcnow()).isoformat()
        by_question: Dict[str, Dict[str, Any]] = {}
        for i, rec in enumerate(recommendations):
            if not isinstance(rec, dict) or not rec.get('questionId') or not rec.get('selectedOptionId'):
                raise ValidationError(
                    f'Invalid recommendation at index {i}: missing questionId or selectedOptionId',
                    field=f'recommendations[{i}]',
                )
            # last answer for a question wins
            by_question[str(rec['questionId'])] = {
                'labreportid': report_id,
                'questionid': rec['questionId'],
                'selectedoptionid': rec['selectedOptionId'],
                'assignedbyid': caller.id,
                'createdat': stamp,
            }

        load_owned_report(self.gateway, caller, report_id, columns='id,patientid')
        rows: List[Dict[str, Any]] = list(by_question.values())
        saved = self.gateway.upsert('AssignedRecommendation', rows, on_conflict=CONFLICT_KEY)
        logger.info('recommendations assigned report=%s count=%d', report_id, len(saved))
        return {
            'success': True,
            'savedRecommendations': [
                {'id': s.get('id'), 'questionid': s.get('questionid'), 'selectedoptionid': s.get('selectedoptionid')}
                for s in saved
            ],
        }
