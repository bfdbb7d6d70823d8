import datetime as dt

import pytest

from kcreport.gateways.data_gateway import GatewayError
from kcreport.gateways.memory_gateway import MemoryGateway

NOW = dt.datetime(2024, 3, 15, 12, 0, tzinfo=dt.timezone.utc)


def clinic_tables():
    return {
        'User': [
            {'id': 'admin-1', 'role': 'admin', 'name': 'Admin', 'email': 'admin@example.org', 'active': True,
             'createdat': '2023-01-01T00:00:00Z'},
            {'id': 'doc-1', 'role': 'doctor', 'name': 'Dr. Salem', 'email': 'salem@example.org', 'active': True,
             'createdat': '2024-03-10T09:00:00Z'},
            {'id': 'doc-2', 'role': 'doctor', 'name': None, 'email': None, 'active': True,
             'createdat': '2023-01-01T00:00:00Z'},
            {'id': 'doc-3', 'role': 'inactive_doctor', 'name': 'Dr. Gone', 'email': 'gone@example.org',
             'active': False, 'deactivatedat': '2024-01-01T00:00:00Z'},
        ],
        'Patient': [
            {'id': 1, 'name': 'Mona', 'age': 54, 'gender': 'F', 'doctorid': 'doc-1', 'createdat': '2024-03-01T08:00:00Z'},
            {'id': 2, 'name': 'Karim', 'age': 61, 'gender': 'M', 'doctorid': 'doc-1', 'createdat': '2023-06-01T08:00:00Z'},
            {'id': 3, 'name': 'Huda', 'age': 47, 'gender': 'F', 'doctorid': 'doc-2', 'createdat': '2023-07-01T08:00:00Z'},
        ],
        'LabReport': [
            {'id': 1, 'patientid': 1, 'doctorid': 'doc-1', 'reportdate': '2024-01-01T10:00:00Z', 'situationid': 1,
             'notes': 'baseline', 'createdat': '2024-01-01T10:00:00Z'},
            {'id': 2, 'patientid': 1, 'doctorid': 'doc-1', 'reportdate': '2024-03-01T10:00:00Z', 'situationid': 2,
             'notes': None, 'createdat': '2024-03-01T10:00:00Z'},
            {'id': 3, 'patientid': 1, 'doctorid': 'doc-1', 'reportdate': '2024-02-01T10:00:00Z', 'situationid': None,
             'notes': 'follow-up', 'createdat': '2024-02-01T10:00:00Z'},
            {'id': 4, 'patientid': 2, 'doctorid': 'doc-1', 'reportdate': '2023-12-01T10:00:00Z', 'situationid': 1,
             'notes': '', 'createdat': '2023-12-01T10:00:00Z'},
            {'id': 5, 'patientid': 3, 'doctorid': 'doc-2', 'reportdate': '2024-02-04T10:00:00Z', 'situationid': 2,
             'notes': '', 'createdat': '2024-02-04T10:00:00Z'},
        ],
        'Situation': [
            {'id': 1, 'groupid': 1, 'bucketid': 2, 'code': 'G1B2', 'description': 'Group 1, bucket 2'},
            {'id': 2, 'groupid': 2, 'bucketid': 3, 'code': 'G2B3', 'description': 'Group 2, bucket 3'},
        ],
        'Question': [
            {'id': 1, 'text': 'Start active vitamin D?'},
        ],
        'Option': [
            {'id': 10, 'text': 'Yes'},
            {'id': 11, 'text': 'No'},
        ],
        'AssignedRecommendation': [
            {'id': 1, 'labreportid': 2, 'questionid': 1, 'selectedoptionid': 10, 'assignedbyid': 'doc-1',
             'createdat': '2024-03-12T10:00:00Z'},
            # question 99 no longer exists
            {'id': 2, 'labreportid': 2, 'questionid': 99, 'selectedoptionid': 11, 'assignedbyid': 'doc-1',
             'createdat': '2024-03-01T10:00:00Z'},
        ],
        'TestType': [
            {'id': 1, 'code': 'PTH', 'name': 'Parathyroid hormone', 'unit': 'pg/mL'},
            {'id': 2, 'code': 'Ca', 'name': 'Calcium', 'unit': 'mg/dL'},
            {'id': 3, 'code': 'Albumin', 'name': 'Albumin', 'unit': 'g/dL'},
            {'id': 4, 'code': 'Phos', 'name': 'Phosphorus', 'unit': 'mg/dL'},
        ],
        'TestResult': [
            {'id': 1, 'testtypeid': 4, 'value': '8.1', 'testdate': '2024-03-01'},
            {'id': 2, 'testtypeid': 2, 'value': '9.0', 'testdate': '2024-03-01'},
            {'id': 3, 'testtypeid': 3, 'value': '4.0', 'testdate': '2024-03-01'},
        ],
        'LabReportTestLink': [
            {'labreportid': 2, 'testresultid': 1},
            {'labreportid': 2, 'testresultid': 2},
            {'labreportid': 2, 'testresultid': 3},
        ],
        'MedicationType': [
            {'id': 1, 'name': 'Calcitriol', 'unit': 'mcg', 'groupname': 'Vitamin D'},
            {'id': 2, 'name': 'Sevelamer', 'unit': 'mg', 'groupname': 'Binder'},
        ],
        'MedicationPrescription': [
            {'id': 1, 'reportid': 2, 'medicationtypeid': 1, 'dosage': 5, 'isoutdated': False,
             'createdat': '2024-03-10T10:00:00Z'},
            {'id': 2, 'reportid': 2, 'medicationtypeid': 2, 'dosage': 3, 'isoutdated': True,
             'outdatedat': '2024-03-11T10:00:00Z', 'outdatedreason': 'switched', 'outdatedby': 'doc-1',
             'createdat': '2024-02-01T10:00:00Z'},
            {'id': 3, 'reportid': 1, 'medicationtypeid': 2, 'dosage': 800, 'isoutdated': False,
             'createdat': '2024-01-02T10:00:00Z'},
        ],
    }


class FailingGateway(MemoryGateway):
    """Memory store whose reads fail for the named tables."""

    def __init__(self, tables, failing=()):
        super().__init__(tables)
        self.failing = set(failing)

    def fetch_many(self, table, filters=(), **kwargs):
        if table in self.failing:
            raise GatewayError(f'{table} unavailable', table=table)
        return super().fetch_many(table, filters, **kwargs)


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def clinic():
    return MemoryGateway(clinic_tables())


@pytest.fixture()
def failing_clinic():
    def _make(*tables):
        return FailingGateway(clinic_tables(), failing=tables)
    return _make
