import logging

from .client import CrmError
from .records import FinancialRecord, PeriodKey, aggregate_by_period, as_records
from .resources import get_resource

logger = logging.getLogger("clinic_crm.ledger")


class ResourceLedger:
    """Records of one resource as loaded by a page, plus its month filter.

    A failed reload keeps whatever was loaded before and leaves one readable
    message in ``error``; ``loading`` is cleared on every exit path.
    """

    def __init__(self, client, resource, period=None):
        self.client = client
        self.resource = get_resource(resource)
        if self.resource is None:
            raise ValueError(f"Unknown resource: {resource}")
        self.period = period or PeriodKey.current()
        self.records = []
        self.loading = False
        self.error = None

    def load(self, subject_kind=None, subject_id=None):
        self.loading = True
        try:
            if subject_id is not None:
                data = self.client.list_subject_records(
                    self.resource.name, subject_kind or self.resource.subject_kind, subject_id)
            else:
                data = self.client.list_records(self.resource.name)
            self.records = as_records(data or [], self.resource)
            self.error = None
            return True
        except CrmError as e:
            self.error = str(e)
            logger.warning("Loading %s failed: %s", self.resource.name, e)
            return False
        finally:
            self.loading = False

    def select_month(self, month, year, zero_based=False):
        self.period = PeriodKey.from_zero_based(month, year) if zero_based else PeriodKey.of(month, year)
        return self.period

    def summary(self, period=None, subject_id=None):
        return aggregate_by_period(self.records, period or self.period, subject_id=subject_id)

    def for_subject(self, subject_id):
        return [r for r in self.records if r.subject_id == str(subject_id)]

    def remove(self, record_id):
        """Drop a deleted record locally without reloading."""
        before = len(self.records)
        self.records = [r for r in self.records if r.id != str(record_id)]
        return len(self.records) != before

    def add(self, document) -> FinancialRecord:
        record = FinancialRecord.from_document(document, self.resource)
        self.records.insert(0, record)
        return record
