import json as jsonlib
import threading

import pytest
import requests

from clinic_crm.cascade import CascadeDeleteError
from clinic_crm.client import CrmClient, DomainError, TransportError
from clinic_crm.ledger import ResourceLedger
from clinic_crm.records import PeriodKey
from tests.conftest import FlaskSession, add_subject

MARCH_2025 = PeriodKey(3, 2025)


class StubResponse:
    def __init__(self, status_code, text):
        self.status_code = status_code
        self.text = text

    def json(self):
        return jsonlib.loads(self.text)


class StubSession:
    def __init__(self, status_code=200, body=None, text=None, exc=None):
        self.status_code = status_code
        self.text = text if text is not None else jsonlib.dumps(body)
        self.exc = exc
        self.calls = []

    def request(self, method, url, json=None, params=None, timeout=None):
        self.calls.append((method, url, params, timeout))
        if self.exc is not None:
            raise self.exc
        return StubResponse(self.status_code, self.text)


def stub_client(**kwargs):
    session = StubSession(**kwargs)
    return CrmClient(base_url='http://crm.test/api/', timeout=3, session=session), session


class TestErrorTaxonomy:
    def test_success_returns_data(self):
        crm, session = stub_client(body={'success': True, 'data': [{'id': 'P1'}]})
        assert crm.list_subjects('patient', status='Active') == [{'id': 'P1'}]
        assert session.calls == [('GET', 'http://crm.test/api/patients', {'status': 'Active'}, 3)]

    def test_http_error_is_transport(self):
        crm, _ = stub_client(status_code=503, body={'success': False, 'message': 'Database error'})
        with pytest.raises(TransportError) as excinfo:
            crm.list_records('staff-advances')
        assert excinfo.value.status_code == 503
        assert str(excinfo.value) == 'Failed to fetch staff-advances (HTTP 503): Database error'

    def test_connection_failure_is_transport(self):
        crm, _ = stub_client(exc=requests.ConnectionError('connection refused'))
        with pytest.raises(TransportError) as excinfo:
            crm.get_subject('doctor', 'DOC001')
        assert excinfo.value.status_code is None
        assert 'connection refused' in str(excinfo.value)

    def test_timeout_is_transport(self):
        crm, _ = stub_client(exc=requests.Timeout())
        with pytest.raises(TransportError, match='timed out'):
            crm.list_records('patient-payments')

    def test_malformed_body_is_transport(self):
        crm, _ = stub_client(text='<html>gateway</html>')
        with pytest.raises(TransportError, match='malformed response'):
            crm.list_records('patient-payments')

    def test_unsuccessful_envelope_is_domain(self):
        crm, _ = stub_client(body={'success': False, 'message': 'Staff STF001 is locked'})
        with pytest.raises(DomainError) as excinfo:
            crm.update_subject('staff', 'STF001', {'phone': '1'})
        assert str(excinfo.value) == 'Staff STF001 is locked'
        assert excinfo.value.status_code == 200

    def test_unknown_subject_kind(self):
        crm, session = stub_client(body={'success': True})
        with pytest.raises(ValueError):
            crm.list_subjects('visitor')
        assert session.calls == []


class TestAgainstApi:
    def test_record_crud(self, crm, client):
        add_subject(client, 'staff', name='Asha')
        created = crm.create_record('staff-advances', {'staff_id': 'STF001', 'date': '05/03/2025', 'amount': '1,500'})
        assert created['date'] == '2025-03-05'

        updated = crm.update_record('staff-advances', created['id'], {'amount': 1200})
        assert updated['amount'] == 1200
        assert crm.get_record('staff-advances', created['id'])['staff_name'] == 'Asha'

        crm.delete_record('staff-advances', created['id'])
        assert crm.list_records('staff-advances') == []
        with pytest.raises(TransportError) as excinfo:
            crm.get_record('staff-advances', created['id'])
        assert excinfo.value.status_code == 404

    def test_validation_error_carries_message(self, crm, client):
        add_subject(client, 'patients', id='P1', name='Kiran')
        with pytest.raises(TransportError) as excinfo:
            crm.create_record('patient-payments', {'patient_id': 'P1', 'date': '2025-03-01'})
        assert excinfo.value.status_code == 400
        assert excinfo.value.args[0].endswith('Missing required field: amount')

    def test_monthly_summary_matches_server(self, crm, client):
        add_subject(client, 'doctors', name='Dr. Rao')
        for day, amount in (('2025-03-01', '40,000'), ('31/03/2025', 5000), ('2025-04-01', 100)):
            crm.create_record('doctor-salary-payments',
                              {'doctor_id': 'DOC001', 'payment_date': day, 'payment_amount': amount})

        local = crm.monthly_summary('doctor-salary-payments', MARCH_2025)
        remote = crm.period_summary('doctor-salary-payments', MARCH_2025, subject_id='DOC001')
        assert local.total == remote['total'] == 45000
        assert local.count == remote['count'] == 2

    def test_delete_and_restore_subject(self, crm, client):
        add_subject(client, 'doctors', name='Dr. Iyer')
        crm.delete_subject('doctor', 'DOC001')
        assert crm.list_subjects('doctor') == []
        assert crm.restore_subject('doctor', 'DOC001')['name'] == 'Dr. Iyer'


class FailingPathSession(FlaskSession):
    """Raise a connection error for any request whose path contains one of ``fail_on``."""

    def __init__(self, test_client, fail_on=()):
        super().__init__(test_client)
        self.fail_on = fail_on

    def request(self, method, url, json=None, params=None, timeout=None):
        if method == 'DELETE' and any(part in url for part in self.fail_on):
            raise requests.ConnectionError('connection reset by peer')
        return super().request(method, url, json=json, params=params, timeout=timeout)


class TestDeletePatient:
    @pytest.fixture
    def p7(self, crm, client):
        add_subject(client, 'patients', id='P7', name='Meena Kumari')
        for day in ('2025-03-01', '2025-03-02', '2025-03-03'):
            crm.create_record('patient-attendance', {'patient_id': 'P7', 'date': day, 'status': 'Present'})
        for amount in (500, 750):
            crm.create_record('patient-payments', {'patient_id': 'P7', 'date': '2025-03-05', 'amount': amount})
        add_subject(client, 'patients', id='P8', name='Other')
        crm.create_record('patient-payments', {'patient_id': 'P8', 'date': '2025-03-05', 'amount': 90})

    def test_removes_every_dependent_and_the_patient(self, crm, p7):
        result = crm.delete_patient('P7', concurrent=False)

        assert result.ok
        assert result.dependent_results['attendance'].value['deleted_count'] == 3
        assert result.dependent_results['history'].value['deleted_count'] == 0
        assert result.dependent_results['payments'].value['deleted_count'] == 2
        assert crm.list_subject_records('patient-attendance', 'patient', 'P7') == []
        assert crm.list_subject_records('patient-payments', 'patient', 'P7') == []
        assert len(crm.list_subject_records('patient-payments', 'patient', 'P8')) == 1
        with pytest.raises(TransportError) as excinfo:
            crm.get_subject('patient', 'P7')
        assert excinfo.value.status_code == 404

    def test_dependents_before_patient(self, crm, api_session, p7):
        api_session.calls.clear()
        crm.delete_patient('P7', concurrent=False)
        deletes = [path for method, path in api_session.calls if method == 'DELETE']
        assert deletes[-1] == '/api/patients/P7'
        assert len(deletes) == 4

    def test_failed_dependent_is_reported_and_patient_still_deleted(self, client, p7, caplog):
        session = FailingPathSession(client, fail_on=('patient-attendance',))
        crm = CrmClient(base_url='http://crm.test/api', timeout=5, session=session)

        result = crm.delete_patient('P7', concurrent=False)

        assert result.ok
        assert result.failed_dependents == ['attendance']
        assert isinstance(result.dependent_results['attendance'].error, TransportError)
        assert len(crm.list_subject_records('patient-attendance', 'patient', 'P7')) == 3
        assert crm.list_subject_records('patient-payments', 'patient', 'P7') == []
        assert client.get('/api/patients/P7').status_code == 404
        assert 'leftover records in: attendance' in caplog.text

    def test_missing_patient_raises(self, crm, database):
        with pytest.raises(CascadeDeleteError) as excinfo:
            crm.delete_patient('P404', concurrent=False)
        assert 'Failed to delete patient and related records' in str(excinfo.value)
        assert excinfo.value.result.primary_result.error.status_code == 404

    def test_cancelled_before_start(self, crm, client, p7):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CascadeDeleteError):
            crm.delete_patient('P7', cancel_event=cancel, concurrent=False)
        assert client.get('/api/patients/P7').status_code == 200
        assert len(crm.list_subject_records('patient-payments', 'patient', 'P7')) == 2

    def test_server_side_cascade(self, client, crm, p7):
        response = client.delete('/api/patients/P7/cascade', json={'deletedBy': 'admin'})
        assert response.status_code == 200
        body = response.get_json()
        assert body['data']['dependents']['attendance']['ok'] is True
        assert crm.list_subject_records('patient-attendance', 'patient', 'P7') == []
        assert crm.list_subject_records('patient-payments', 'patient', 'P7') == []

        deleted = client.get('/api/patients/deleted').get_json()['data']
        assert [(p['id'], p['deleted_by']) for p in deleted] == [('P7', 'admin')]

    def test_server_side_cascade_missing_patient(self, client, database):
        response = client.delete('/api/patients/P404/cascade')
        assert response.status_code == 404
        assert response.get_json()['success'] is False


class TestResourceLedger:
    @pytest.fixture
    def ledger(self, crm, client):
        add_subject(client, 'staff', name='Asha')
        add_subject(client, 'staff', name='Ravi')
        crm.create_record('staff-advances', {'staff_id': 'STF001', 'date': '2025-03-05', 'amount': 1500})
        crm.create_record('staff-advances', {'staff_id': 'STF002', 'date': '20/03/2025', 'amount': 2000})
        crm.create_record('staff-advances', {'staff_id': 'STF001', 'date': '2025-04-02', 'amount': 500})
        return ResourceLedger(crm, 'staff-advances', MARCH_2025)

    def test_load_and_summarise(self, ledger):
        assert ledger.load() is True
        assert ledger.error is None
        assert len(ledger.records) == 3
        assert ledger.summary().total == 3500
        assert ledger.summary(subject_id='STF001').total == 1500

        ledger.select_month(3, 2025, zero_based=True)
        assert ledger.period == PeriodKey(4, 2025)
        assert ledger.summary().total == 500

    def test_load_for_subject(self, ledger):
        assert ledger.load(subject_id='STF001')
        assert {r.subject_id for r in ledger.records} == {'STF001'}
        assert len(ledger.for_subject('STF001')) == 2

    def test_failed_reload_keeps_previous_records(self, ledger, caplog):
        ledger.load()
        ledger.client.session = StubSession(exc=requests.ConnectionError('network down'))

        assert ledger.load() is False
        assert len(ledger.records) == 3
        assert ledger.loading is False
        assert 'network down' in ledger.error
        assert 'Loading staff-advances failed' in caplog.text

    def test_local_add_and_remove(self, ledger):
        ledger.load()
        record = ledger.add({'id': 'x1', 'staff_id': 'STF002', 'staff_name': 'Ravi',
                             'date': '2025-03-28', 'amount': '250'})
        assert ledger.records[0] is record
        assert ledger.summary().total == 3750
        assert ledger.remove('x1') is True
        assert ledger.remove('x1') is False

    def test_unknown_resource(self, crm):
        with pytest.raises(ValueError):
            ResourceLedger(crm, 'lab-coats')
