"""
Normalize raw sheet grids into EntityRecords.

One parser per sheet layout:
    parse_wide_rows      - wide production rows joined by key with endline detail rows
    parse_parent_subrows - CD parent rows owning a statically configured count of sub-rows
    parse_fixed_trailer  - QSL teams made of fixed groups and an optional trailer block
    parse_product_groups - CD product sheets, product rows followed by detail rows
    parse_center_tv      - center TV group rows per factory and line

All parsers take the grid as read, header included, and never raise for a
single bad row or group. Those are logged and skipped.
"""
import collections
import logging
import re

import linewatch.exc
from linewatch.cells import (TIME_SLOTS, cell, cell_str, extract_number, factory_from_code,
                             factory_from_label, fill_forward, is_line_code, line_code,
                             parse_number, parse_percentage, percent_of)
from linewatch.records import (EntityRecord, KIND_CD, KIND_CD_PRODUCT, KIND_CENTER_TV,
                               KIND_PRODUCTION, KIND_QSL, KIND_TEAM)

DEFECT_CATEGORIES = 14
RFT_TARGET = 92
WORKING_HOURS = 8
WORKING_DAYS_PER_MONTH = 25
CD_PREFIX = 'KVHB07CD'
RE_TEAM_MARKER = re.compile(r'^TỔ\s+\d+$', re.IGNORECASE)
RE_TRAILER_MARKER = re.compile(r'^TÚI\s+NHỎ', re.IGNORECASE)
RE_TEAM_PREFIX = re.compile(r'TỔ\s*', re.IGNORECASE)
RE_LINE_PREFIX = re.compile(r'^LINE\s*', re.IGNORECASE)
QSL_FIXED_GROUPS = (
    'ĐÓNG GÓI', 'QC KIỂM TÚI', 'SƠN TP', 'RÁP', 'THÂN',
    'LÓT', 'QC KIỂM QUAI', 'QUAI', 'SƠN CT/BTP',
)


def _ratio_x100(value):
    return round(parse_number(value) * 100, 2)


# Wide production sheet: (field, column, parser)
WIDE_FIELDS = (
    ('maChuyenLine', 0, cell_str),
    ('nhaMay', 1, cell_str),
    ('line', 2, cell_str),
    ('to', 3, cell_str),
    ('maHang', 4, cell_str),
    ('slth', 5, parse_number),
    ('congKh', 6, parse_number),
    ('congTh', 7, parse_number),
    ('pphKh', 8, parse_percentage),
    ('pphTh', 9, parse_percentage),
    ('phanTramHtPph', 10, parse_percentage),
    ('gioSx', 11, parse_number),
    ('ldCoMat', 12, parse_number),
    ('ldLayout', 13, parse_number),
    ('ldHienCo', 14, parse_number),
    ('nangSuat', 15, parse_number),
    ('pphTarget', 16, parse_number),
    ('pphGiao', 17, parse_number),
    ('phanTramGiao', 18, parse_percentage),
    ('targetNgay', 19, parse_number),
    ('targetGio', 20, parse_number),
    ('lkth', 21, parse_number),
    ('phanTramHt', 22, parse_percentage),
    ('lean', 45, cell_str),
    ('phanTram100', 46, parse_number),
    ('t', 47, parse_number),
    ('l', 48, parse_number),
    ('image', 49, cell_str),
    ('lkkh', 50, parse_number),
    ('bqTargetGio', 51, parse_number),
    ('slcl', 52, parse_number),
    ('rft', 53, parse_percentage),
    ('tongKiem', 54, parse_number),
    ('mucTieuRft', 55, parse_percentage),
    ('lktuiloi', 56, parse_number),
    ('nhipsx', 57, parse_number),
    ('tansuat', 58, parse_number),
    ('tyleloi', 59, parse_percentage),
    ('loikeo', 60, parse_number),
    ('loison', 61, parse_number),
    ('loichi', 62, parse_number),
    ('phanTramLoiKeo', 63, _ratio_x100),
    ('phanTramLoiSon', 64, _ratio_x100),
    ('phanTramLoiChi', 65, _ratio_x100),
    ('qcTarget', 66, parse_number),
    ('thoigianlamviec', 89, parse_number),
    ('tongKiemNew', 90, parse_number),
    ('tongDatNew', 91, parse_number),
    ('tongLoiNew', 92, parse_number),
)
WIDE_SLOT_OUTPUT = 23
WIDE_SLOT_PERCENT = 34

# Endline detail sheet columns
ENDLINE_FACTORY, ENDLINE_LINE, ENDLINE_TEAM = 0, 1, 4
ENDLINE_FIELDS = (
    ('tongKiem', 5, parse_number),
    ('datLan1', 6, parse_number),
    ('tongDat', 7, parse_number),
) + tuple((f'loi{ind}', 7 + ind, parse_number) for ind in range(1, DEFECT_CATEGORIES + 1)) + (
    ('rft', 22, parse_percentage),
    ('duLieu', 34, cell_str),
    ('nguyenNhan', 35, cell_str),
)
ENDLINE_SLOT_OUTPUT = 23
ENDLINE_COUNTERS = ('tongKiem', 'datLan1', 'tongDat') + tuple(
    f'loi{ind}' for ind in range(1, DEFECT_CATEGORIES + 1))

# CD parent rows, sub-rows and their shared columns
CD_FIELDS = (
    ('maChuyenLine', 0, cell_str),
    ('nhaMay', 1, cell_str),
    ('line', 2, cell_str),
    ('to', 3, cell_str),
    ('maHang', 4, cell_str),
    ('slth', 5, parse_number),
    ('congKh', 6, parse_number),
    ('congTh', 7, parse_number),
    ('pphKh', 8, parse_number),
    ('pphTh', 9, parse_number),
    ('phanTramHtPph', 10, parse_number),
    ('gioSx', 11, parse_number),
    ('ldCoMat', 12, parse_number),
    ('ldLayout', 13, parse_number),
    ('ldHienCo', 14, parse_number),
    ('nangSuat', 15, parse_number),
    ('pphTarget', 16, parse_number),
    ('pphGiao', 17, parse_number),
    ('phanTramGiao', 18, parse_number),
    ('targetNgay', 19, parse_number),
    ('targetGio', 20, parse_number),
    ('lkth', 21, parse_number),
    ('phanTramHt', 22, parse_percentage),
    ('lean', 34, cell_str),
    ('phanTram100', 35, parse_number),
    ('image', 36, cell_str),
    ('lkkh', 37, parse_number),
    ('khGiaoThang', 38, parse_number),
    ('khbqGQ', 39, parse_number),
    ('slkhBqlk', 40, parse_number),
    ('slthThang', 41, parse_number),
    ('phanTramThang', 42, parse_number),
    ('conlai', 43, parse_number),
    ('bqCansxNgay', 44, parse_number),
    ('tglv', 45, parse_number),
    ('ncdv', 46, parse_number),
    ('dbcu', 47, parse_number),
    ('phanTramDapUng', 48, parse_percentage),
    ('tonMay', 49, parse_number),
    ('nc1ntt', 50, parse_number),
    ('nc2ntt', 51, parse_number),
    ('nc3ntt', 52, parse_number),
    ('note', 53, cell_str),
    ('db1ntt', 54, parse_number),
    ('db2ntt', 55, parse_number),
    ('db3ntt', 56, parse_number),
    ('dbNgay', 57, parse_number),
)
CD_SUBROW_FIELDS = (
    ('tglv', 45, parse_number),
    ('maHang', 4, cell_str),
    ('nhuCauLuyKe', 7, parse_number),
    ('tenChiTiet', 8, cell_str),
    ('keHoachGiao', 9, parse_number),
    ('luyKeGiao', 10, parse_number),
    ('conLai', 11, parse_number),
    ('ttdb', 12, cell_str),
    ('canXuLy', 13, parse_number),
    ('targetNgay', 19, parse_number),
    ('targetGio', 20, parse_number),
    ('lkkh', 37, parse_number),
    ('lkth', 21, parse_number),
    ('ncdv', 46, parse_number),
    ('dbcu', 47, parse_number),
    ('phanTramDapUng', 48, parse_percentage),
    ('tonMay', 49, parse_number),
    ('nc1ntt', 50, parse_number),
    ('nc2ntt', 51, parse_number),
    ('nc3ntt', 52, parse_number),
    ('note', 53, cell_str),
    ('db1ntt', 54, parse_number),
    ('db2ntt', 55, parse_number),
    ('db3ntt', 56, parse_number),
    ('dbNgay', 57, parse_number),
)
CD_TOTALS = ('ncdv', 'dbcu', 'tonMay', 'nc1ntt', 'nc2ntt', 'nc3ntt',
             'db1ntt', 'db2ntt', 'db3ntt', 'dbNgay')
CD_SLOT_OUTPUT = 23

# QSL group rows
QSL_FIELDS = (
    ('ldLayout', 3, parse_number),
    ('thucTe', 4, parse_number),
    ('keHoach', 5, parse_number),
) + tuple((slot, 6 + ind, parse_number) for ind, slot in enumerate(TIME_SLOTS)) + (
    ('luyKeThucHien', 17, parse_number),
    ('luyKeKeHoach', 18, parse_number),
    ('percentHT', 19, lambda val: parse_percentage(val, ratio=True)),
)
QSL_PLANNED = 5

# CD product sheets
PRODUCT_FIELDS = (
    ('ma', 4, cell_str),
    ('mau', 5, cell_str),
    ('slkh', 6, parse_number),
)
PRODUCT_DETAIL_FIELDS = (
    ('nhuCauLuyKe', 7, parse_number),
    ('tenChiTiet', 8, cell_str),
    ('keHoachGiao', 9, parse_number),
    ('luyKeGiao', 10, parse_number),
    ('conLai', 11, parse_number),
    ('ttdb', 12, parse_number),
    ('canXuLy', 13, parse_number),
)

# Center TV group rows
CENTER_TV_FIELDS = (
    ('nhaMay', 0, cell_str),
    ('line', 1, cell_str),
    ('nhom', 2, cell_str),
    ('layout', 3, parse_number),
    ('tglv', 4, parse_number),
    ('keHoachGio', 5, parse_number),
    ('keHoachNgay', 6, parse_number),
) + tuple((slot, 7 + ind, parse_number) for ind, slot in enumerate(TIME_SLOTS)) + (
    ('soLuongGiaoMay', 18, parse_number),
    ('lkKh', 19, parse_number),
    ('lkTh', 20, parse_number),
    ('phanTramHt', 21, parse_percentage),
    ('lean', 22, cell_str),
    ('bqTargetGio', 23, parse_number),
    ('sthd', 24, parse_number),
    ('slcl', 25, parse_number),
    ('tienDoApUng', 26, parse_percentage),
)


def extract_fields(row, columns):
    """
    Map a row onto a dict given (field, column, parser) triples.
    Missing cells are parsed as empty.
    """
    return {name: parser(cell(row, col)) for name, col, parser in columns}


def log_skipped(exc, **context):
    """ Log a skipped row or group with enough context to find it in the sheet. """
    exc.write_log(logging.getLogger(__name__), context=context)


def factory_matches(factory, wanted):
    """ True when wanted is ALL or the same factory. """
    return wanted in (None, 'ALL') or factory == wanted


def _slot_values(row, start, parser=parse_number):
    return [parser(cell(row, start + ind)) for ind in range(len(TIME_SLOTS))]


# ------------------------------------------------------------------------
# Wide production rows + endline detail
# ------------------------------------------------------------------------
def parse_endline_rows(grid, *, sheet=''):
    """
    Parse the endline detail sheet into detail rows grouped by line code.
    The factory and line columns only hold a value at the first row of a run.

    Args:
        grid: The raw grid, header row first.
        sheet: The sheet name for logging.

    Returns: An OrderedDict of line code -> list of detail dicts, sheet order.
    """
    log = logging.getLogger(__name__)
    details = collections.OrderedDict()
    rows = fill_forward(grid[1:], [ENDLINE_FACTORY, ENDLINE_LINE])

    for ind, row in enumerate(rows, start=2):
        factory_label = cell_str(cell(row, ENDLINE_FACTORY))
        line_label = cell_str(cell(row, ENDLINE_LINE))
        team = cell_str(cell(row, ENDLINE_TEAM))
        if not factory_label or not line_label or not team:
            log.debug("ENDLINE %s row %d: missing factory, line or team, skipped.", sheet, ind)
            continue

        code = line_code(factory_label, line_label)
        if not code:
            log_skipped(linewatch.exc.MalformedRowError(
                f"Unrecognized factory '{factory_label}'", sheet=sheet, row_index=ind),
                sheet=sheet, row=ind)
            continue

        detail = extract_fields(row, ENDLINE_FIELDS)
        detail.update({
            'key': code,
            'factory': factory_from_label(factory_label),
            'tenTo': team,
            'rowIndex': ind,
            'hourly': _slot_values(row, ENDLINE_SLOT_OUTPUT),
        })
        details.setdefault(code, []).append(detail)

    return details


def merge_details(details):
    """
    Sum a list of detail rows of one line into a single detail dict.
    """
    merged = {name: 0 for name in ENDLINE_COUNTERS}
    merged['hourly'] = [0] * len(TIME_SLOTS)
    for detail in details:
        for name in ENDLINE_COUNTERS:
            merged[name] += detail[name]
        merged['hourly'] = [left + right for left, right in zip(merged['hourly'], detail['hourly'])]

    merged['rft'] = percent_of(merged['tongDat'], merged['tongKiem']) if len(details) > 1 else (
        details[0]['rft'] if details else 0)

    return merged


def detail_fields(detail):
    """
    The endline scalar fields of a line or team, including defect ratios.
    """
    total_errors = sum(detail[f'loi{ind}'] for ind in range(1, DEFECT_CATEGORIES + 1))
    fields = {
        'endlineTongKiem': detail['tongKiem'],
        'endlineDatLan1': detail['datLan1'],
        'endlineTongDat': detail['tongDat'],
        'endlineRft': detail['rft'],
        'totalErrors': total_errors,
    }
    for ind in range(1, DEFECT_CATEGORIES + 1):
        fields[f'loi{ind}'] = detail[f'loi{ind}']
        fields[f'errorPercentage{ind}'] = percent_of(detail[f'loi{ind}'], detail['tongKiem'])

    return fields


def derived_fields(fields):
    """
    Fields computed from the wide values and the endline totals.
    """
    tong_dat = fields.get('endlineTongDat', 0)
    total_errors = fields.get('totalErrors', 0)
    pph_kh = fields['pphKh']
    pph_th_new = round(tong_dat / fields['congTh'] / WORKING_HOURS, 2) if fields['congTh'] > 0 else 0
    pct_pph_new = round(pph_th_new / pph_kh * 100, 2) if pph_kh > 0 else 0
    pct_slth_new = percent_of(tong_dat, fields['lkkh'])

    return {
        'pphThNew': pph_th_new,
        'percentagePPHNew': pct_pph_new,
        'percentageSLTHNew': pct_slth_new,
        'diffPercentagePPHNew': round(pct_pph_new - 100, 2) if pct_pph_new > 0 else 0,
        'diffPercentageSLTHNew': round(pct_slth_new - 100, 2) if pct_slth_new > 0 else 0,
        'lktuiloiNew': total_errors,
        'tuiChuaTaiChe': fields['lktuiloi'] - total_errors,
        'tuiChuaTaiCheNew': fields['tongLoiNew'] - total_errors,
        'diffLdCoMatLayout': fields['ldCoMat'] - fields['ldLayout'],
        'diffLkthTarget': fields['lkth'] - fields['targetNgay'],
        'diffRftTarget': round(fields['rft'] - RFT_TARGET, 2),
        'diffBqTargetSlcl': fields['bqTargetGio'] - fields['slcl'],
        'ratioPphThKh': round(fields['pphTh'] - pph_kh, 2) if pph_kh > 0 else 0,
        'ratioPphThKhNew': round(pph_th_new - pph_kh, 2) if pph_kh > 0 else 0,
        'diffPhanTramHt100': round(fields['phanTramHt'] - 100, 2),
        'diffPhanTramHtPph100': round(fields['phanTramHtPph'] - 100, 2),
    }


def build_slots(row, target_gio, detail=None):
    """
    Build the checkpoint sub-records of a wide row.

    Each checkpoint holds the wide output and percentage, the endline output in
    that checkpoint, the running endline output and the achievement percentage.
    The day to date endline counters are carried on every checkpoint up to the
    last one with endline output, later checkpoints have not happened yet.
    """
    outputs = _slot_values(row, WIDE_SLOT_OUTPUT)
    percents = _slot_values(row, WIDE_SLOT_PERCENT, parse_percentage)
    hourly = detail['hourly'] if detail else [0] * len(TIME_SLOTS)
    last_active = max([ind for ind, val in enumerate(hourly) if val > 0], default=-1)

    slots, running = collections.OrderedDict(), 0
    for ind, slot in enumerate(TIME_SLOTS):
        running += hourly[ind]
        values = {
            'sanluong': outputs[ind],
            'percentage': percents[ind],
            'sanluongNew': hourly[ind],
            'lkSanluongNew': running,
            'percentageNew': percent_of(hourly[ind], target_gio),
        }
        reached = detail is not None and ind <= last_active
        values['rft'] = detail['rft'] if reached else 0
        for name in ENDLINE_COUNTERS:
            values[name] = detail[name] if reached else 0
        for cat in range(1, DEFECT_CATEGORIES + 1):
            values[f'errorPercentage{cat}'] = percent_of(values[f'loi{cat}'], values['tongKiem'])
        slots[slot] = values

    return slots


def wide_record(row, *, detail=None, kind=KIND_PRODUCTION, key=None, sheet='', row_index=None):
    """
    Build a record from a wide production row and optionally its endline detail.

    Raises:
        MalformedRowError: The row has no usable line code.
    """
    fields = extract_fields(row, WIDE_FIELDS)
    code = fields['maChuyenLine']
    if not is_line_code(code):
        raise linewatch.exc.MalformedRowError(f"Invalid line code '{code}'", sheet=sheet, row_index=row_index)

    factory = factory_from_code(code) or factory_from_label(fields['nhaMay']) or 'ALL'
    fields['factory'] = factory
    fields['rowIndex'] = row_index
    fields.update(detail_fields(detail if detail else merge_details([])))
    fields.update(derived_fields(fields))
    if detail and 'tenTo' in detail:
        fields['tenTo'] = detail['tenTo']

    key = key or code
    family = 'htm' if kind == KIND_TEAM else 'production'
    return EntityRecord(kind, key, factory, fields=fields,
                        slots=build_slots(row, fields['targetGio'], detail),
                        room=f'{family}-{factory.lower()}-{key.lower()}')


def parse_wide_rows(grid, *, details=None, factory='ALL', sheet=''):
    """
    Parse the wide production sheet, joining endline detail rows by line code.
    The two sheets are not row aligned, the join is always by key.

    Args:
        grid: The raw wide grid, header row first.
        details: The output of parse_endline_rows or None.
        factory: Only keep lines of this factory, ALL keeps everything.
        sheet: The sheet name for logging.

    Returns: A list of EntityRecords, sheet order, one per line code.
    """
    details = details or {}
    records, seen = [], set()
    rows = fill_forward(grid[1:], [1])

    for ind, row in enumerate(rows, start=2):
        code = cell_str(cell(row, 0))
        if not is_line_code(code):
            continue

        try:
            if code in seen:
                raise linewatch.exc.MalformedRowError(f'Duplicate line code {code}', sheet=sheet, row_index=ind)
            line_details = details.get(code)
            detail = merge_details(line_details) if line_details else None
            record = wide_record(row, detail=detail, sheet=sheet, row_index=ind)
        except linewatch.exc.MalformedRowError as exc:
            log_skipped(exc, sheet=sheet, row=ind, code=code)
            continue

        seen.add(code)
        if factory_matches(record.group, factory):
            records += [record]

    return records


def find_wide_row(grid, code):
    """
    Find the wide row and its sheet row index for a line code.

    Raises:
        EntityNotFound: No row carries that code.
    """
    for ind, row in enumerate(grid[1:], start=2):
        if cell_str(cell(row, 0)).upper() == code.upper():
            return row, ind

    raise linewatch.exc.EntityNotFound(f'Line {code} not found in the production sheet.')


def team_record(grid, details, code, index, *, sheet=''):
    """
    Build the view of a single team: the wide row of the line merged with the
    index-th endline detail row of that line.

    Args:
        grid: The raw wide grid.
        details: The output of parse_endline_rows.
        code: The line code.
        index: 0 based index among the detail rows of that line.

    Raises:
        EntityNotFound: The line or the team does not exist.

    Returns: An EntityRecord of kind team keyed '<code>_<index>'.
    """
    if not isinstance(index, int) or index < 0:
        raise linewatch.exc.EntityNotFound(f'Invalid team index {index!r} for line {code}.')
    row, row_index = find_wide_row(grid, code)
    code = cell_str(cell(row, 0))
    line_details = details.get(code, [])
    try:
        detail = line_details[index]
    except (IndexError, TypeError) as exc:
        raise linewatch.exc.EntityNotFound(
            f'Line {code} has {len(line_details)} endline rows, no row at index {index}.') from exc

    return wide_record(row, detail=detail, kind=KIND_TEAM, key=f'{code}_{index}',
                       sheet=sheet, row_index=row_index)


def line_list(records):
    """
    Summarize production records for the line picker, sorted by code.
    """
    lines = [{
        'code': rec.key,
        'nhaMay': rec['nhaMay'],
        'line': rec['line'],
        'to': rec['to'],
        'percentageHT': f"{rec['phanTramHt']:.2f}",
        'rft': f"{rec['rft']:.2f}",
    } for rec in records]

    return sorted(lines, key=lambda x: x['code'])


# ------------------------------------------------------------------------
# CD parent + fixed count sub-rows
# ------------------------------------------------------------------------
def is_parent_marker(row):
    """ A parent row has an identifier and a LINE prefixed label. """
    return cell_str(cell(row, 0)) != '' and cell_str(cell(row, 2)).upper().startswith('LINE')


def collect_subrows(rows, start, code, expected, *, sheet=''):
    """
    Collect exactly expected rows following the parent at start.
    Blank rows count, a differently identified parent row stops the collection.

    Returns: The list of sub-rows collected.
    """
    subrows = []
    for ind in range(start + 1, min(start + 1 + expected, len(rows))):
        sub_code = cell_str(cell(rows[ind], 0))
        if sub_code and sub_code != code and (sub_code.upper().startswith(CD_PREFIX) or is_parent_marker(rows[ind])):
            break
        subrows += [rows[ind]]

    if len(subrows) != expected:
        log_skipped(linewatch.exc.PartialMismatchWarning(code, expected, len(subrows)),
                    sheet=sheet, row=start + 2)

    return subrows


def cd_subrow(row):
    """ A single CD sub-row, one product of one team. """
    sub = extract_fields(row, CD_SUBROW_FIELDS)
    sub['to'] = RE_TEAM_PREFIX.sub('', cell_str(cell(row, 3)))
    sub['ngayTon'] = ''
    if sub['targetGio'] > 0 and sub['tonMay'] > 0:
        sub['ngayTon'] = f"{sub['tonMay'] / sub['targetGio']:.1f}"

    return sub


def cd_record(row, subrows, *, factory, manager, grouping):
    """ Build the CD record of a parent row and its sub-rows. """
    fields = extract_fields(row, CD_FIELDS)
    code = fields['maChuyenLine']
    fields['canBoQuanLy'] = manager
    fields['factory'] = factory
    fields['khBqNgay'] = round(fields['khGiaoThang'] / WORKING_DAYS_PER_MONTH) if fields['khGiaoThang'] > 0 else 0
    fields['diffLdCoMatLayout'] = fields['ldCoMat'] - fields['ldLayout']
    rule = grouping.get(f"{factory}-{code.upper().replace('KVHB07', '')}")
    fields['groupingRule'] = [list(pair) for pair in rule] if rule else None

    children = [cd_subrow(sub) for sub in fill_forward(subrows, [3])]
    for name in CD_TOTALS:
        fields[f'{name}Total'] = sum(child[name] for child in children)

    target_gio = fields['targetGio']
    slots = collections.OrderedDict()
    for slot, output in zip(TIME_SLOTS, _slot_values(row, CD_SLOT_OUTPUT)):
        slots[slot] = {
            'sanluong': output,
            'percentage': percent_of(output, target_gio) if output > 0 else 0,
        }

    return EntityRecord(KIND_CD, code, factory, fields=fields, slots=slots, children=children,
                        room=f'cd-{factory.lower()}-{code.lower()}')


def parse_parent_subrows(grid, *, factory_codes, row_counts, default_count=5,
                         grouping=None, factory='ALL', sheet=''):
    """
    Parse the CD sheet. Each configured parent owns a fixed number of rows.

    Args:
        grid: The raw grid, header row first.
        factory_codes: Mapping factory -> list of parent codes.
        row_counts: Mapping parent code -> total rows including the parent.
        default_count: Total rows of parents absent from row_counts.
        grouping: Mapping '<factory>-CDnn' -> list of team pairs merged on display.
        factory: Only keep parents of this factory, ALL keeps everything.
        sheet: The sheet name for logging.

    Returns: A list of EntityRecords in sheet order.
    """
    grouping = grouping or {}
    owners = {code: fact for fact, codes in factory_codes.items() for code in codes
              if factory_matches(fact, factory)}
    rows = grid[1:]
    records, ind = [], 0

    while ind < len(rows):
        row = rows[ind]
        code = cell_str(cell(row, 0))
        if not (is_parent_marker(row) and code in owners):
            ind += 1
            continue

        manager = ''
        if ind + 1 < len(rows):
            nxt = rows[ind + 1]
            label = cell_str(cell(nxt, 2))
            if not cell_str(cell(nxt, 0)) and label and not label.upper().startswith('LINE'):
                manager = label

        expected = int(row_counts.get(code, default_count)) - 1
        subrows = collect_subrows(rows, ind, code, expected, sheet=sheet)
        try:
            records += [cd_record(row, subrows, factory=owners[code], manager=manager, grouping=grouping)]
        except (TypeError, ValueError) as exc:
            log_skipped(linewatch.exc.MalformedRowError(str(exc), sheet=sheet, row_index=ind + 2),
                        sheet=sheet, row=ind + 2, code=code)
        ind += 1 + len(subrows)

    return records


# ------------------------------------------------------------------------
# QSL fixed groups + variable trailer
# ------------------------------------------------------------------------
def qsl_group(row, team, section):
    """ One group row of a QSL team, the team name is carried onto every group. """
    group = {'tenTo': team, 'nhom': cell_str(cell(row, 2)), 'section': section}
    group.update(extract_fields(row, QSL_FIELDS))

    return group


def qsl_record(team, *, line, sheet, fixed_count):
    """ Build the record of one QSL team. """
    fixed = [grp for grp in team['groups'] if grp['section'] == 'fixed']
    trailer = [grp for grp in team['groups'] if grp['section'] == 'trailer']
    if len(fixed) != fixed_count:
        log_skipped(linewatch.exc.PartialMismatchWarning(team['tenTo'], fixed_count, len(fixed)),
                    sheet=sheet, row=team['rowIndex'])

    number = extract_number(team['tenTo'])
    slots = collections.OrderedDict(
        (slot, {'sanluong': sum(grp[slot] for grp in fixed)}) for slot in TIME_SLOTS)
    fields = {
        'line': line,
        'sheetName': sheet,
        'tenTo': team['tenTo'],
        'tglv': team['tglv'],
        'totalFixed': len(fixed),
        'totalTrailer': len(trailer),
        'rowIndex': team['rowIndex'],
    }

    return EntityRecord(KIND_QSL, f"LINE{line}:{team['tenTo'].upper()}", f'qsl-line{line}',
                        fields=fields, slots=slots, children=fixed + trailer,
                        room=f'qsl-line{line}-to{number}')


def parse_fixed_trailer(grid, *, line, sheet='', fixed_groups=QSL_FIXED_GROUPS):
    """
    Parse a QSL line sheet into one record per team.

    A team starts at a team marker row in column A, that row may already carry
    the first fixed group. The fixed groups follow in canonical order. A trailer
    marker in column A or B starts the trailer block, where only rows with a
    positive planned quantity are kept. The next team marker ends the team.

    Returns: A list of EntityRecords in sheet order.
    """
    log = logging.getLogger(__name__)
    teams, team, in_trailer = [], None, False

    for ind, row in enumerate(grid, start=1):
        first, second = cell_str(cell(row, 0)), cell_str(cell(row, 1))
        nhom = cell_str(cell(row, 2))

        if RE_TEAM_MARKER.match(first):
            team = {'tenTo': first, 'tglv': parse_number(cell(row, 1)), 'groups': [], 'rowIndex': ind}
            teams += [team]
            in_trailer = False
            if nhom:
                team['groups'] += [qsl_group(row, first, 'fixed')]
            continue

        if RE_TRAILER_MARKER.match(first) or RE_TRAILER_MARKER.match(second):
            in_trailer = True

        if not nhom or team is None:
            continue

        if in_trailer:
            if parse_number(cell(row, QSL_PLANNED)) > 0:
                team['groups'] += [qsl_group(row, team['tenTo'], 'trailer')]
            else:
                log.debug("QSL %s row %d: trailer row '%s' without plan, skipped.", sheet, ind, nhom)
        elif len(team['groups']) < len(fixed_groups):
            team['groups'] += [qsl_group(row, team['tenTo'], 'fixed')]

    return [qsl_record(team, line=line, sheet=sheet, fixed_count=len(fixed_groups)) for team in teams]


# ------------------------------------------------------------------------
# CD product sheets
# ------------------------------------------------------------------------
def parse_product_groups(grid, *, code, sheet=''):
    """
    Parse a CD product sheet into a single record owning its products.

    A non empty product code opens a product, following rows without one are
    its details, kept when they carry a demand or a detail name.

    Returns: A list with one EntityRecord, empty when the sheet holds no product.
    """
    products, meta, current = [], None, None

    for ind, row in enumerate(grid[1:], start=2):
        if cell_str(cell(row, 4)):
            current = extract_fields(row, PRODUCT_FIELDS + PRODUCT_DETAIL_FIELDS)
            current['details'] = []
            products += [current]
            if meta is None:
                meta = [cell_str(cell(row, col)) for col in range(4)]
            continue

        detail = extract_fields(row, PRODUCT_DETAIL_FIELDS)
        if detail['nhuCauLuyKe'] <= 0 and not detail['tenChiTiet']:
            continue
        if current is None:
            log_skipped(linewatch.exc.MalformedRowError('Detail row before any product', sheet=sheet, row_index=ind),
                        sheet=sheet, row=ind)
            continue
        current['details'] += [detail]

    if not products:
        return []

    ma_chuyen, factory_label, line, team = meta
    factory = factory_from_label(factory_label) or factory_from_code(ma_chuyen) or 'ALL'
    fields = {
        'maChuyenLine': ma_chuyen,
        'factory': factory,
        'line': line,
        'to': team,
        'sheet': code.upper(),
        'totalProducts': len(products),
    }

    return [EntityRecord(KIND_CD_PRODUCT, code.upper(), factory, fields=fields, children=products,
                         room=f'cd-product-{code.lower()}')]


# ------------------------------------------------------------------------
# Center TV
# ------------------------------------------------------------------------
def line_matches(value, line):
    """ Accept '1', 'LINE 1' and 'line1' for line 1. """
    value = cell_str(value)
    return value == str(line) or RE_LINE_PREFIX.sub('', value).strip() == str(line)


def center_tv_record(factory, line, groups):
    """ Build the record of one factory line of the center TV. """
    fields = {
        'factory': factory,
        'line': line,
        'totalGroups': len(groups),
        'totalLayout': sum(grp['layout'] for grp in groups),
        'totalKeHoachNgay': sum(grp['keHoachNgay'] for grp in groups),
        'totalLkTh': sum(grp['lkTh'] for grp in groups),
        'totalLkKh': sum(grp['lkKh'] for grp in groups),
        'averagePhanTramHt': round(sum(grp['phanTramHt'] for grp in groups) / len(groups), 2),
    }
    for grp in groups:
        grp['diffLkThKh'] = grp['lkTh'] - grp['lkKh']
        grp['diffPhanTramHt100'] = round(grp['phanTramHt'] - 100, 2)
    slots = collections.OrderedDict(
        (slot, {'sanluong': sum(grp[slot] for grp in groups)}) for slot in TIME_SLOTS)

    return EntityRecord(KIND_CENTER_TV, f'{factory}_{line}', factory, fields=fields, slots=slots,
                        children=groups, room=f'center-tv-{factory.lower()}-{line}')


def parse_center_tv(grid, *, factories, lines, sheet=''):
    """
    Parse the center TV sheet into one record per (factory, line) with data.

    Args:
        grid: The raw grid, header row first.
        factories: The factories to build records for.
        lines: The line numbers to build records for.

    Returns: A list of EntityRecords ordered by factory then line.
    """
    rows = [extract_fields(row, CENTER_TV_FIELDS) for row in fill_forward(grid[1:], [0, 1])]
    records = []
    for factory in factories:
        for line in lines:
            groups = [row for row in rows if row['nhom']
                      and row['nhaMay'].upper() == factory.upper() and line_matches(row['line'], line)]
            if groups:
                records += [center_tv_record(factory, line, groups)]
            else:
                logging.getLogger(__name__).debug("CENTER TV %s: no rows for %s line %s", sheet, factory, line)

    return records


PARSERS = {
    KIND_PRODUCTION: parse_wide_rows,
    KIND_CD: parse_parent_subrows,
    KIND_QSL: parse_fixed_trailer,
    KIND_CD_PRODUCT: parse_product_groups,
    KIND_CENTER_TV: parse_center_tv,
}


def normalize(kind, grid, **kwargs):
    """
    Normalize a grid of the given layout kind into EntityRecords.
    Empty grids are no data, not an error.

    Args:
        kind: One of the record kinds with a parser in PARSERS.
        grid: The raw grid as read from the sheet.
        kwargs: Layout specific options, see each parser.

    Returns: A list of EntityRecords.
    """
    try:
        parser = PARSERS[kind]
    except KeyError as exc:
        raise ValueError(f'No parser for layout kind: {kind}') from exc

    if not grid:
        return []

    return parser(grid, **kwargs)
