"""Month/year aggregation of dated financial records.

Advances, salary payments, test reports and patient payments all share the
same read path: pick the records of one calendar month, optionally for one
subject, and total their amounts. Stored data carries two incompatible date
encodings (``YYYY-MM-DD`` and ``DD/MM/YYYY``) and amounts that are sometimes
numbers and sometimes strings, so both are normalized here once, when a
document becomes a :class:`FinancialRecord`.

Nothing in this module raises for a malformed record: an unreadable date
excludes the record from every period, an unreadable amount counts as zero.
"""
import calendar
import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from .resources import Resource

logger = logging.getLogger("clinic_crm.records")
if not logger.handlers:
    logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s %(name)s: %(message)s')

MIN_YEAR = 1900
MAX_YEAR = 2100

CURRENCY_SYMBOL = '₹'

# Used when plain documents are aggregated without a registry entry
GENERIC_RECORD = Resource('records', '', '', 'subject_id', 'subject_name', 'date', 'amount')

_SLASH_YMD = re.compile(r'^(\d{4})/(\d{1,2})/(\d{1,2})$')
_SLASH_DMY = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{4})$')
_DASH_DMY = re.compile(r'^(\d{1,2})-(\d{1,2})-(\d{4})$')


# ---------------------- AMOUNTS ----------------------

def _number_from(value):
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if hasattr(value, 'to_decimal'):  # bson Decimal128
        return float(value.to_decimal())
    text = str(value).strip().replace(',', '')
    if text.startswith(CURRENCY_SYMBOL):
        text = text[len(CURRENCY_SYMBOL):].strip()
    return float(text)


def to_amount(value) -> float:
    """Coerce a stored amount to a float, falling back to 0.0.

    Accepts numbers and numeric strings such as ``"1,500"`` or ``"₹ 200.50"``.
    Booleans, ``None``, blanks, non-numeric text and NaN/infinite values all
    become 0.0 so a sum can never turn into NaN or string concatenation.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = _number_from(value)
    except (ValueError, TypeError, ArithmeticError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def parse_amount(value) -> float:
    """Strict variant of :func:`to_amount` for validating writes."""
    if value is None or isinstance(value, bool) or (isinstance(value, str) and not value.strip()):
        raise ValueError("Amount is required")
    try:
        number = _number_from(value)
    except (ValueError, TypeError, ArithmeticError):
        raise ValueError(f"Amount must be a number, got {value!r}")
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"Amount must be a number, got {value!r}")
    if number < 0:
        raise ValueError("Amount cannot be negative")
    return number


def format_currency(amount, symbol=CURRENCY_SYMBOL) -> str:
    """Format with Indian digit grouping, e.g. ``₹1,00,000.00``."""
    value = to_amount(amount)
    sign = '-' if value < 0 else ''
    whole, fraction = f"{abs(value):.2f}".split('.')
    if len(whole) > 3:
        head, tail = whole[:-3], whole[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        whole = ','.join(groups + [tail])
    return f"{sign}{symbol}{whole}.{fraction}"


# ---------------------- DATES ----------------------

def _parse_date_text(text):
    # A '/' always means day/month/year; a four digit first part can only be a year
    if '/' in text:
        match = _SLASH_YMD.match(text)
        if match:
            year, month, day = match.groups()
            return date(int(year), int(month), int(day))
        match = _SLASH_DMY.match(text)
        if match:
            day, month, year = match.groups()
            return date(int(year), int(month), int(day))
        return None

    match = _DASH_DMY.match(text)
    if match:
        day, month, year = match.groups()
        return date(int(year), int(month), int(day))

    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    # Calendar date as written; no timezone shift
    return datetime.fromisoformat(text).date()


def parse_record_date(value) -> Optional[date]:
    """Read a stored record date, or ``None`` when it cannot be placed in a month."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text or text.upper() == 'NA':
            return None
        try:
            parsed = _parse_date_text(text)
        except ValueError:
            return None
    else:
        return None

    if parsed is None or not MIN_YEAR <= parsed.year <= MAX_YEAR:
        return None
    return parsed


def normalize_date(value) -> str:
    """ISO ``YYYY-MM-DD`` form used for every date written to storage."""
    parsed = parse_record_date(value)
    if parsed is None:
        raise ValueError(f"Invalid date: {value!r}")
    return parsed.isoformat()


class PeriodKey(NamedTuple):
    """A calendar month. ``month`` is always 1-based (1 = January)."""
    month: int
    year: int

    @classmethod
    def of(cls, month, year):
        month, year = int(month), int(year)
        if not 1 <= month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {month}")
        if not MIN_YEAR <= year <= MAX_YEAR:
            raise ValueError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}, got {year}")
        return cls(month, year)

    @classmethod
    def from_zero_based(cls, month_index, year):
        """Convert a 0-based month index (0 = January) at the boundary."""
        return cls.of(int(month_index) + 1, year)

    @classmethod
    def from_date(cls, value):
        return cls(value.month, value.year)

    @classmethod
    def current(cls):
        return cls.from_date(date.today())

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    def previous(self):
        if self.month == 1:
            return PeriodKey(12, self.year - 1)
        return PeriodKey(self.month - 1, self.year)

    def contains(self, value) -> bool:
        parsed = value if isinstance(value, date) and not isinstance(value, datetime) else parse_record_date(value)
        return parsed is not None and parsed.month == self.month and parsed.year == self.year

    def label(self):
        return f"{calendar.month_name[self.month]} {self.year}"

    def to_dict(self):
        return {'month': self.month, 'year': self.year, 'label': self.label()}


# ---------------------- RECORDS ----------------------

@dataclass(frozen=True)
class FinancialRecord:
    id: Optional[str]
    subject_id: Optional[str]
    subject_name: str
    date: Optional[date]
    amount: float
    raw_date: Any = None
    reason: str = ''
    status: str = ''
    document: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_document(cls, doc, resource=None):
        resource = resource or GENERIC_RECORD
        record_id = doc.get('id', doc.get('_id'))
        subject_id = doc.get(resource.subject_field)
        raw_date = doc.get(resource.date_field)
        return cls(
            id=str(record_id) if record_id is not None else None,
            subject_id=str(subject_id) if subject_id is not None else None,
            subject_name=doc.get(resource.name_field) or '',
            date=parse_record_date(raw_date),
            amount=to_amount(doc.get(resource.amount_field)) if resource.amount_field else 0.0,
            raw_date=raw_date,
            reason=doc.get('reason') or doc.get('notes') or doc.get('comment') or '',
            status=doc.get('status') or '',
            document=doc,
        )


def as_records(items: Iterable, resource=None) -> List[FinancialRecord]:
    records = []
    for item in items:
        if isinstance(item, FinancialRecord):
            records.append(item)
        elif isinstance(item, Mapping):
            records.append(FinancialRecord.from_document(item, resource))
        else:
            logger.warning("Skipping malformed record %r", item)
    return records


@dataclass
class SubjectTotal:
    subject_id: Optional[str]
    subject_name: str = ''
    total: float = 0.0
    count: int = 0

    def to_dict(self):
        return {
            'subject_id': self.subject_id,
            'subject_name': self.subject_name,
            'total': self.total,
            'count': self.count,
            'formatted_total': format_currency(self.total),
        }


@dataclass
class PeriodAggregate:
    period: PeriodKey
    matching: List[FinancialRecord]
    total: float
    count: int
    by_subject: Dict[Optional[str], SubjectTotal]

    def to_dict(self, include_records=True):
        result = {
            'period': self.period.to_dict(),
            'total': self.total,
            'formatted_total': format_currency(self.total),
            'count': self.count,
            'by_subject': [s.to_dict() for s in self.by_subject.values()],
        }
        if include_records:
            result['records'] = [r.document for r in self.matching]
        return result


def filter_by_period(records: Iterable, period: PeriodKey, subject_id=None, resource=None) -> List[FinancialRecord]:
    matching = []
    for record in as_records(records, resource):
        if subject_id is not None and record.subject_id != str(subject_id):
            continue
        if record.date is None:
            logger.debug("Record %s has no readable date (%r); excluded from %s",
                         record.id, record.raw_date, period.label())
            continue
        if period.contains(record.date):
            matching.append(record)
    return matching


def aggregate_by_period(records: Iterable, period: PeriodKey, subject_id=None, resource=None) -> PeriodAggregate:
    """Total the records dated in ``period``, optionally for one subject only.

    ``records`` may be :class:`FinancialRecord` objects or stored documents
    (read through ``resource``'s field names). Calling this twice on the same
    input gives the same result.
    """
    matching = filter_by_period(records, period, subject_id=subject_id, resource=resource)

    total = 0.0
    by_subject = {}
    for record in matching:
        total += record.amount
        entry = by_subject.get(record.subject_id)
        if entry is None:
            entry = by_subject[record.subject_id] = SubjectTotal(record.subject_id, record.subject_name)
        entry.total += record.amount
        entry.count += 1

    return PeriodAggregate(period=period, matching=matching, total=total,
                           count=len(matching), by_subject=by_subject)


def subject_total(records: Iterable, subject_id, period: PeriodKey, resource=None) -> float:
    return aggregate_by_period(records, period, subject_id=subject_id, resource=resource).total
