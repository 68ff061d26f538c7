"""Monthly salary position of staff and doctors.

For every active subject that had joined by the end of the month::

    net_balance = salary + carry_forward - paid_this_month - advances_this_month

``carry_forward`` is the previous month's closing net balance, stored when a
month is closed.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .records import PeriodKey, aggregate_by_period, format_currency, parse_record_date, to_amount


@dataclass
class SalaryRow:
    subject_id: str
    name: str
    salary: float
    carry_forward: float
    paid: float
    advance: float
    net_balance: float
    payment_count: int = 0
    advance_count: int = 0

    @property
    def status(self):
        if self.net_balance > 0:
            return 'Pending'
        if self.net_balance == 0:
            return 'Paid'
        return 'Overpaid'

    def to_dict(self):
        return {
            'subject_id': self.subject_id,
            'name': self.name,
            'salary': self.salary,
            'carry_forward': self.carry_forward,
            'paid': self.paid,
            'advance': self.advance,
            'net_balance': self.net_balance,
            'status': self.status,
            'payment_count': self.payment_count,
            'advance_count': self.advance_count,
            'formatted_balance': format_currency(self.net_balance),
        }


@dataclass
class PayrollSummary:
    period: PeriodKey
    rows: List[SalaryRow] = field(default_factory=list)

    @property
    def totals(self):
        return {
            'total_salary': sum(r.salary for r in self.rows),
            'total_carry_forward': sum(r.carry_forward for r in self.rows),
            'total_paid': sum(r.paid for r in self.rows),
            'total_advance': sum(r.advance for r in self.rows),
            'total_pending': sum(r.net_balance for r in self.rows if r.net_balance > 0),
        }

    def carry_forward_to_next(self) -> Dict[str, float]:
        return {r.subject_id: r.net_balance for r in self.rows}

    def to_dict(self):
        return {
            'period': self.period.to_dict(),
            'rows': [r.to_dict() for r in self.rows],
            'summary': self.totals,
        }


def is_on_payroll(subject, period: PeriodKey) -> bool:
    if subject.get('is_deleted') or subject.get('status', 'Active') != 'Active':
        return False
    joined = parse_record_date(subject.get('join_date'))
    return joined is None or joined <= period.last_day


def salary_summary(subjects: Iterable[dict], payments: Iterable, advances: Iterable, period: PeriodKey,
                   payment_resource=None, advance_resource=None,
                   carry_forward: Optional[Dict[str, float]] = None) -> PayrollSummary:
    paid = aggregate_by_period(payments, period, resource=payment_resource).by_subject
    advanced = aggregate_by_period(advances, period, resource=advance_resource).by_subject
    carry_forward = carry_forward or {}

    summary = PayrollSummary(period)
    for subject in subjects:
        if not is_on_payroll(subject, period):
            continue
        subject_id = str(subject.get('id', subject.get('_id')))
        salary = to_amount(subject.get('salary'))
        carried = to_amount(carry_forward.get(subject_id))
        paid_entry = paid.get(subject_id)
        advance_entry = advanced.get(subject_id)
        paid_total = paid_entry.total if paid_entry else 0.0
        advance_total = advance_entry.total if advance_entry else 0.0
        summary.rows.append(SalaryRow(
            subject_id=subject_id,
            name=subject.get('name', ''),
            salary=salary,
            carry_forward=carried,
            paid=paid_total,
            advance=advance_total,
            net_balance=round(salary + carried - paid_total - advance_total, 2),
            payment_count=paid_entry.count if paid_entry else 0,
            advance_count=advance_entry.count if advance_entry else 0,
        ))

    summary.rows.sort(key=lambda r: r.name.lower())
    return summary
