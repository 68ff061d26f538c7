import io

import pandas as pd

from .records import PeriodAggregate, format_currency

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def period_rows(aggregate: PeriodAggregate, resource):
    rows = []
    for record in sorted(aggregate.matching, key=lambda r: (r.date, r.subject_name)):
        row = {
            'Date': record.date.strftime('%d/%m/%Y'),
            'ID': record.subject_id or '',
            'Name': record.subject_name,
        }
        if resource.is_financial:
            row['Amount (INR)'] = record.amount
        if resource.statuses:
            row['Status'] = record.status
        row['Notes'] = record.reason
        rows.append(row)
    return rows


def subject_rows(aggregate: PeriodAggregate):
    return [{
        'ID': s.subject_id or '',
        'Name': s.subject_name,
        'Entries': s.count,
        'Total (INR)': s.total,
        'Total': format_currency(s.total),
    } for s in aggregate.by_subject.values()]


def _a4(worksheet, orientation='portrait'):
    worksheet.page_setup.paperSize = 9  # A4
    worksheet.page_setup.orientation = orientation
    worksheet.page_setup.fitToWidth = 1
    worksheet.page_setup.fitToHeight = 0
    worksheet.print_options.horizontalCentered = True
    worksheet.page_margins.left = 0.75
    worksheet.page_margins.right = 0.75
    worksheet.page_margins.top = 0.75
    worksheet.page_margins.bottom = 0.75


def export_period_workbook(aggregate: PeriodAggregate, resource) -> io.BytesIO:
    """Excel workbook with the period's records and a per-subject summary sheet."""
    records_df = pd.DataFrame(period_rows(aggregate, resource))
    if records_df.empty:
        records_df = pd.DataFrame([{'Message': f'No records for {aggregate.period.label()}'}])
    elif resource.is_financial:
        total_row = {col: '' for col in records_df.columns}
        total_row['Name'] = 'TOTAL'
        total_row['Amount (INR)'] = aggregate.total
        records_df = pd.concat([records_df, pd.DataFrame([total_row])], ignore_index=True)

    summary_df = pd.DataFrame(subject_rows(aggregate))

    output = io.BytesIO()
    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        records_df.to_excel(writer, index=False, sheet_name='Records')
        _a4(writer.sheets['Records'])
        if not summary_df.empty:
            summary_df.to_excel(writer, index=False, sheet_name='By Subject')
            _a4(writer.sheets['By Subject'])
    output.seek(0)
    return output


def export_filename(resource, period):
    return f"{resource.name}_{period.year}_{period.month:02d}.xlsx"
