"""REST client for the clinic CRM API.

Every response is expected as ``{success, data?, message?}``. Two kinds of
failure are kept apart:

* :class:`TransportError` - the server could not be reached, answered with a
  non-2xx status, timed out, or sent something that is not JSON;
* :class:`DomainError` - a 2xx answer carrying ``success: false``.
"""
import logging

import requests

from . import config
from .cascade import cascade_delete_subject
from .records import aggregate_by_period, PeriodKey
from .resources import PATIENT_DEPENDENTS, get_resource, get_subject_kind

logger = logging.getLogger("clinic_crm.client")
if not logger.handlers:
    logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s %(name)s: %(message)s')


class CrmError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(CrmError):
    pass


class DomainError(CrmError):
    pass


class CrmClient:
    def __init__(self, base_url=None, timeout=None, session=None):
        self.base_url = (base_url or config.CRM_API_URL).rstrip('/')
        self.timeout = timeout if timeout is not None else config.CRM_REQUEST_TIMEOUT
        self.session = session or requests.Session()

    def _request(self, method, path, action, json=None, params=None):
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, json=json, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransportError(f"Failed to {action}: request timed out") from e
        except requests.RequestException as e:
            raise TransportError(f"Failed to {action}: {e}") from e

        if not 200 <= response.status_code < 300:
            message = f"Failed to {action} (HTTP {response.status_code})"
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get('message'):
                message = f"{message}: {body['message']}"
            raise TransportError(message, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(f"Failed to {action}: malformed response",
                                 status_code=response.status_code) from e

        if not isinstance(body, dict) or not body.get('success', False):
            message = body.get('message') if isinstance(body, dict) else None
            raise DomainError(message or f"Failed to {action}", status_code=response.status_code)
        return body.get('data')

    # --- RECORDS ---

    def list_records(self, resource):
        return self._request('GET', resource, f"fetch {resource}")

    def get_record(self, resource, record_id):
        return self._request('GET', f"{resource}/{record_id}", f"fetch {resource} record")

    def list_subject_records(self, resource, subject_kind, subject_id):
        return self._request('GET', f"{resource}/{subject_kind}/{subject_id}",
                             f"fetch {resource} for {subject_kind} {subject_id}")

    def create_record(self, resource, data):
        return self._request('POST', resource, f"add {resource} record", json=data)

    def update_record(self, resource, record_id, data):
        return self._request('PUT', f"{resource}/{record_id}", f"update {resource} record", json=data)

    def delete_record(self, resource, record_id):
        return self._request('DELETE', f"{resource}/{record_id}", f"delete {resource} record")

    def delete_subject_records(self, resource, subject_kind, subject_id):
        return self._request('DELETE', f"{resource}/{subject_kind}/{subject_id}",
                             f"delete {resource} for {subject_kind} {subject_id}")

    def period_summary(self, resource, period, subject_id=None):
        """Server-side aggregate of one month."""
        params = {'month': period.month, 'year': period.year}
        if subject_id is not None:
            params['subject_id'] = subject_id
        return self._request('GET', f"{resource}/summary", f"summarise {resource}", params=params)

    def monthly_summary(self, resource, period: PeriodKey, subject_id=None):
        """Fetch all records of ``resource`` and aggregate them locally."""
        records = self.list_records(resource) or []
        return aggregate_by_period(records, period, subject_id=subject_id, resource=get_resource(resource))

    # --- SUBJECTS ---

    def _subject_path(self, kind):
        subject = get_subject_kind(kind)
        if subject is None:
            raise ValueError(f"Unknown subject kind: {kind}")
        return subject.path

    def list_subjects(self, kind, status=None):
        params = {'status': status} if status else None
        return self._request('GET', self._subject_path(kind), f"fetch {kind} list", params=params)

    def get_subject(self, kind, subject_id):
        return self._request('GET', f"{self._subject_path(kind)}/{subject_id}", f"fetch {kind} {subject_id}")

    def create_subject(self, kind, data):
        return self._request('POST', self._subject_path(kind), f"add {kind}", json=data)

    def update_subject(self, kind, subject_id, data):
        return self._request('PUT', f"{self._subject_path(kind)}/{subject_id}", f"update {kind}", json=data)

    def delete_subject(self, kind, subject_id):
        return self._request('DELETE', f"{self._subject_path(kind)}/{subject_id}", f"delete {kind}")

    def restore_subject(self, kind, subject_id):
        return self._request('PUT', f"{self._subject_path(kind)}/{subject_id}/restore", f"restore {kind}")

    def payroll(self, kind, period):
        return self._request('GET', f"payroll/{kind}", f"fetch {kind} payroll",
                             params={'month': period.month, 'year': period.year})

    # --- CASCADE ---

    def patient_cascade_deleters(self, patient_id):
        return {
            kind: (lambda resource=resource: self.delete_subject_records(resource, 'patient', patient_id))
            for kind, resource in PATIENT_DEPENDENTS.items()
        }

    def delete_patient(self, patient_id, cancel_event=None, timeout=None, concurrent=True):
        """Delete a patient's attendance, history and payments, then the patient.

        Dependent failures are logged and left in the returned result; a
        failed patient delete raises :class:`~clinic_crm.cascade.CascadeDeleteError`.
        """
        result = cascade_delete_subject(
            patient_id,
            self.patient_cascade_deleters(patient_id),
            lambda: self.delete_subject('patient', patient_id),
            timeout=timeout if timeout is not None else config.CASCADE_TIMEOUT,
            cancel_event=cancel_event,
            concurrent=concurrent,
        )
        if result.failed_dependents:
            logger.warning("Patient %s deleted with leftover records in: %s",
                           patient_id, ', '.join(result.failed_dependents))
        return result.raise_for_primary('patient')
