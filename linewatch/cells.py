"""
Tolerant parsing of raw sheet cells.

Cells arrive either as native numbers (UNFORMATTED_VALUE reads) or as whatever
text an operator typed: thousands separators, comma decimals, percent signs and
spreadsheet error tokens are all expected.
"""
import math
import re

# The fixed daily checkpoints, in order. Name -> (hour, minute) the block starts.
TIME_SLOTS = (
    'h830', 'h930', 'h1030', 'h1130', 'h1330', 'h1430',
    'h1530', 'h1630', 'h1800', 'h1900', 'h2000',
)
SLOT_STARTS = {
    'h830': (8, 30),
    'h930': (9, 30),
    'h1030': (10, 30),
    'h1130': (11, 30),
    'h1330': (13, 30),
    'h1430': (14, 30),
    'h1530': (15, 30),
    'h1630': (16, 30),
    'h1800': (18, 0),
    'h1900': (19, 0),
    'h2000': (20, 0),
}
SLOT_BLOCK_MINUTES = 30
ERROR_TOKENS = ('#DIV', '#N/A', '#VALUE', '#REF', '#NAME', '#NUM', '#NULL', '#ERROR')
FACTORY_LINES = {
    'TS1': range(1, 15),
    'TS2': range(18, 25),
    'TS3': range(25, 39),
}
RE_NOT_NUMERIC = re.compile(r'[^0-9.\-]')
RE_FACTORY = re.compile(r'TS\s*(\d+)', re.IGNORECASE)
RE_DIGITS = re.compile(r'\d+')
RE_LINE_CODE = re.compile(r'^KVHB07M(\d+)$', re.IGNORECASE)
RE_KV_CODE = re.compile(r'^KV\w*?(\d+)$', re.IGNORECASE)


def cell_str(value):
    """ Cell as stripped text, empty for missing cells. """
    if value is None:
        return ''

    return str(value).strip()


def cell(row, index):
    """ Fetch a cell by index, short rows yield None. """
    try:
        return row[index]
    except IndexError:
        return None


def is_error_token(text):
    """ True when the text is a spreadsheet error like #DIV/0! or #N/A. """
    upper = text.strip().upper()
    return any(upper.startswith(token) for token in ERROR_TOKENS)


def _normalize_separators(text):
    """
    Decide which of ',' and '.' is the decimal separator and drop the other.

    When both appear, the last one is the decimal separator.
    A single comma followed by exactly three digits is a thousands separator.
    """
    if ',' in text and '.' in text:
        if text.rfind(',') > text.rfind('.'):
            return text.replace('.', '').replace(',', '.')
        return text.replace(',', '')

    if text.count(',') == 1:
        _, decimals = text.split(',')
        decimals = RE_NOT_NUMERIC.sub('', decimals)
        if len(decimals) != 3:
            return text.replace(',', '.')

    return text.replace(',', '')


def _as_number(num):
    if math.isnan(num) or math.isinf(num):
        return 0

    return int(num) if float(num).is_integer() else num


def parse_number(value):
    """
    Parse any cell into a number, never failing.

    Returns: int when integral else float. Error tokens and garbage yield 0.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return _as_number(value)
    if not isinstance(value, str):
        return 0

    text = value.strip()
    if not text or is_error_token(text):
        return 0

    text = RE_NOT_NUMERIC.sub('', _normalize_separators(text.replace('%', '')))
    try:
        return _as_number(float(text))
    except ValueError:
        return 0


def parse_percentage(value, *, ratio=False):
    """
    Parse a percentage cell.

    Args:
        value: The raw cell.
        ratio: When True, the sheet stores ratios (0.86) that should become 86.
               Text already above 1 or carrying a percent sign is taken as is.

    Returns: The percentage as a number.
    """
    num = parse_number(value)
    if not ratio:
        return num

    if isinstance(value, str) and ('%' in value or num > 1):
        return round(num)

    return round(num * 100)


def percent_of(part, whole, digits=2):
    """ part / whole as a rounded percentage, 0 when whole is not positive. """
    if not whole or whole <= 0:
        return 0

    return round(part / whole * 100, digits)


def fill_forward(rows, columns):
    """
    Fill blank identifier cells with the last non blank value above them.
    A new non blank value resets the carried value for the rows that follow.

    Args:
        rows: A list of rows, not modified.
        columns: The column indices to fill.

    Returns: A new list of new rows.
    """
    carried = {col: None for col in columns}
    filled = []
    for row in rows:
        row = list(row)
        for col in columns:
            while len(row) <= col:
                row.append('')
            if cell_str(row[col]) != '':
                carried[col] = row[col]
            elif carried[col] is not None:
                row[col] = carried[col]
        filled += [row]

    return filled


def extract_number(text):
    """ First run of digits in text as int, None when absent. """
    mat = RE_DIGITS.search(cell_str(text))
    return int(mat.group()) if mat else None


def factory_from_label(text):
    """ Normalize a factory label like 'ts 1' to 'TS1', None if not a factory. """
    mat = RE_FACTORY.search(cell_str(text))
    return f'TS{int(mat.group(1))}' if mat else None


def factory_from_code(code):
    """
    Determine the owning factory from a line code.

    KVHB07M<n> codes are numbered by line, other KV codes use their last two digits.

    Returns: 'TS1', 'TS2', 'TS3' or None when not determined.
    """
    code = cell_str(code)
    mat = RE_LINE_CODE.match(code)
    if mat:
        number = int(mat.group(1))
    else:
        mat = RE_KV_CODE.match(code)
        if not mat:
            return None
        number = int(mat.group(1)[-2:])

    for factory, numbers in FACTORY_LINES.items():
        if number in numbers:
            return factory

    return None


def line_code(factory_label, line_label):
    """
    Build the line code of a detail row from its factory and line labels.

    Returns: A code like KVHB07M01, or None when the factory is not recognized.
    """
    number = extract_number(line_label)
    if factory_from_label(factory_label) is None or number is None:
        return None

    return f'KVHB07M{number:02d}'


def is_line_code(code):
    """ True for real line codes, False for headers, labels and totals rows. """
    code = cell_str(code)
    upper = code.upper()
    return (upper.startswith('KV') and upper != 'LKKH'
            and 'MÃ CHUYỀN' not in upper)


def in_slot_block(hour, minute):
    """ True when the time falls in one of the 30 minute checkpoint blocks. """
    now = hour * 60 + minute
    for start_hour, start_min in SLOT_STARTS.values():
        start = start_hour * 60 + start_min
        if start <= now < start + SLOT_BLOCK_MINUTES:
            return True

    return False
