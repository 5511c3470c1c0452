"""Render an ``reports.ExpenseReport`` to an xlsx workbook."""
from io import BytesIO

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, Side
from openpyxl.utils import get_column_letter

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

CURRENCY_FORMAT = '_(* #,##0_);_(* (#,##0);_(* "-"??_);_(@_)'
PERCENT_FORMAT = '0.00%'
HEADER_TOP = 5
DATA_TOP = 8

_thin = Side(style='thin')
BORDER = Border(top=_thin, bottom=_thin, left=_thin, right=_thin)
FONT = Font(name='Arial', size=11)
FONT_BOLD = Font(name='Arial', size=11, bold=True)
FONT_TITLE = Font(name='Arial', size=12, bold=True)
CENTER = Alignment(horizontal='center', vertical='center', wrap_text=True)


def _merge(ws, top, left, bottom, right):
    if (top, left) != (bottom, right):
        ws.merge_cells(start_row=top, start_column=left, end_row=bottom, end_column=right)


def _write_headers(ws, report):
    ws.cell(HEADER_TOP, 1, 'URAIAN')
    _merge(ws, HEADER_TOP, 1, HEADER_TOP + 1, 1)
    col = 2
    for block in report.quarters:
        ws.cell(HEADER_TOP, col, block.label)
        _merge(ws, HEADER_TOP, col, HEADER_TOP, col + len(block.months))
        for offset, month in enumerate(block.months + ['JUMLAH']):
            ws.cell(HEADER_TOP + 1, col + offset, month)
        col += len(block.months) + 1

    trailing = ['TOTAL']
    if report.budget_header:
        trailing += [report.budget_header, '% REALISASI']
    for label in trailing:
        ws.cell(HEADER_TOP, col, label)
        _merge(ws, HEADER_TOP, col, HEADER_TOP + 1, col)
        col += 1

    for number in range(1, report.column_count + 1):
        ws.cell(HEADER_TOP + 2, number, str(number))

    for row in ws.iter_rows(min_row=HEADER_TOP, max_row=HEADER_TOP + 2, max_col=report.column_count):
        for cell in row:
            cell.font = FONT_BOLD
            cell.alignment = CENTER
            cell.border = BORDER


def _row_values(report, row):
    values = [row.label]
    offset = 0
    for block, quarter_total in zip(report.quarters, row.quarter_totals):
        values += row.months[offset:offset + len(block.months)]
        values.append(quarter_total)
        offset += len(block.months)
    values.append(row.total)
    if report.budget_header:
        values += [row.budget, row.realization]
    return values


def write_report_workbook(report) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = report.title[:31]  # sheet title limit
    width = report.column_count

    for line, (text, font) in enumerate([(report.organization, FONT_TITLE),
                                         (report.title, FONT_TITLE),
                                         (report.period, FONT)], start=1):
        cell = ws.cell(line, 1, text)
        cell.font = font
        cell.alignment = Alignment(horizontal='center', vertical='center')
        _merge(ws, line, 1, line, width)

    _write_headers(ws, report)

    for r, row in enumerate(report.rows, start=DATA_TOP):
        for c, value in enumerate(_row_values(report, row), start=1):
            cell = ws.cell(r, c, value)
            cell.font = FONT
            cell.border = BORDER
            if c == 1:
                cell.alignment = Alignment(vertical='top', wrap_text=True)
            elif report.budget_header and c == width:
                cell.number_format = PERCENT_FORMAT
            else:
                cell.number_format = CURRENCY_FORMAT

    footer_row = DATA_TOP + len(report.rows) + 2
    footer = ws.cell(footer_row, 1, f'1   {report.organization} {report.title} {report.period}'.strip())
    footer.font = Font(name='Arial', size=10)

    ws.column_dimensions['A'].width = 35
    for c in range(2, width + 1):
        ws.column_dimensions[get_column_letter(c)].width = 12
    ws.page_setup.orientation = 'portrait'
    ws.page_setup.paperSize = ws.PAPERSIZE_A4
    ws.sheet_properties.pageSetUpPr.fitToPage = True

    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()
