"""Registry of subject kinds and of the dated record kinds that hang off them.

Every route, aggregation and export looks fields up here instead of
hardcoding ``staff_id`` / ``test_date`` / ``payment_amount`` per page.
"""
from typing import Dict, NamedTuple, Optional, Tuple


class SubjectKind(NamedTuple):
    kind: str          # singular, used in URLs: /api/<resource>/<kind>/<id>
    path: str          # plural route name: /api/<path>
    collection: str
    id_prefix: str
    label: str


class Resource(NamedTuple):
    name: str
    collection: str
    subject_kind: str
    subject_field: str
    name_field: str
    date_field: str
    amount_field: Optional[str] = None
    statuses: Tuple[str, ...] = ()
    label: str = ''

    @property
    def is_financial(self):
        return self.amount_field is not None


SUBJECT_KINDS: Dict[str, SubjectKind] = {
    'patient': SubjectKind('patient', 'patients', 'patients', 'PAT', 'Patient'),
    'staff': SubjectKind('staff', 'staff', 'staff', 'STF', 'Staff member'),
    'doctor': SubjectKind('doctor', 'doctors', 'doctors', 'DOC', 'Doctor'),
}

SUBJECTS_BY_PATH: Dict[str, SubjectKind] = {s.path: s for s in SUBJECT_KINDS.values()}

SUBJECT_STATUSES = ('Active', 'Inactive')


RESOURCES: Dict[str, Resource] = {r.name: r for r in [
    Resource('staff-advances', 'staff_advances', 'staff', 'staff_id', 'staff_name',
             'date', 'amount', label='Staff advance'),
    Resource('doctor-advances', 'doctor_advances', 'doctor', 'doctor_id', 'doctor_name',
             'date', 'amount', label='Doctor advance'),
    Resource('staff-salary-payments', 'staff_salary_payments', 'staff', 'staff_id', 'staff_name',
             'payment_date', 'payment_amount', label='Staff salary payment'),
    Resource('doctor-salary-payments', 'doctor_salary_payments', 'doctor', 'doctor_id', 'doctor_name',
             'payment_date', 'payment_amount', label='Doctor salary payment'),
    Resource('test-reports', 'test_reports', 'patient', 'patient_id', 'patient_name',
             'test_date', 'amount', statuses=('Pending', 'Completed', 'Cancelled'),
             label='Test report'),
    Resource('patient-payments', 'patient_payments', 'patient', 'patient_id', 'patient_name',
             'date', 'amount', label='Patient payment'),
    Resource('patient-attendance', 'patient_attendance', 'patient', 'patient_id', 'patient_name',
             'date', statuses=('Present', 'Absent', 'Leave'), label='Patient attendance'),
    Resource('patient-history', 'patient_history', 'patient', 'patient_id', 'patient_name',
             'date', label='Patient history'),
]}

# Records removed together with a patient, keyed by the kind reported back
PATIENT_DEPENDENTS: Dict[str, str] = {
    'attendance': 'patient-attendance',
    'history': 'patient-history',
    'payments': 'patient-payments',
}

# Which resources feed the monthly payroll of each salaried subject kind
PAYROLL_RESOURCES: Dict[str, Dict[str, str]] = {
    'staff': {'payments': 'staff-salary-payments', 'advances': 'staff-advances'},
    'doctor': {'payments': 'doctor-salary-payments', 'advances': 'doctor-advances'},
}


def get_resource(name):
    return RESOURCES.get(name)


def get_subject_kind(kind_or_path):
    """Look a subject kind up by its singular kind or its plural route name."""
    return SUBJECT_KINDS.get(kind_or_path) or SUBJECTS_BY_PATH.get(kind_or_path)
