"""
Compact comparison tokens for records.

A fingerprint is the base64 of an ordered serialization of the monitored fields
of a record, its checkpoint sub-records and its children. Only the fields named
in MONITORED take part, cosmetic fields (images, row positions, derived values)
never cause a change event. No cryptographic property is needed.
"""
import base64
import collections
import re

from linewatch.cells import TIME_SLOTS
from linewatch.layouts import DEFECT_CATEGORIES
from linewatch.records import (KIND_CD, KIND_CD_PRODUCT, KIND_CENTER_TV,
                               KIND_PRODUCTION, KIND_QSL, KIND_TEAM)

FIELD_SEP = '|'
VALUE_SEP = ','
SLOT_SEP = ';'
CHILD_SEP = '~'
SECTION_SEP = '#'
RE_ESCAPE = re.compile(r'([\\|,;#:~])')

FingerprintSpec = collections.namedtuple('FingerprintSpec', ['fields', 'slot_fields', 'child_fields', 'nested'])
LOI_FIELDS = tuple(f'loi{ind}' for ind in range(1, DEFECT_CATEGORIES + 1))
PRODUCTION_SPEC = FingerprintSpec(
    fields=(
        'maChuyenLine', 'nhaMay', 'line', 'to', 'tenTo', 'maHang', 'slth', 'congKh', 'congTh',
        'pphKh', 'pphTh', 'phanTramHtPph', 'gioSx', 'ldCoMat', 'ldLayout', 'ldHienCo',
        'nangSuat', 'pphTarget', 'pphGiao', 'phanTramGiao', 'targetNgay', 'targetGio',
        'lkth', 'phanTramHt', 'lean', 'phanTram100', 't', 'l', 'lkkh', 'bqTargetGio',
        'slcl', 'rft', 'tongKiem', 'mucTieuRft', 'lktuiloi', 'nhipsx', 'tansuat', 'tyleloi',
        'loikeo', 'loison', 'loichi', 'phanTramLoiKeo', 'phanTramLoiSon', 'phanTramLoiChi',
        'qcTarget', 'thoigianlamviec', 'tongKiemNew', 'tongDatNew', 'tongLoiNew',
        'endlineTongKiem', 'endlineDatLan1', 'endlineTongDat', 'endlineRft',
    ) + LOI_FIELDS,
    slot_fields=(
        'sanluong', 'percentage', 'sanluongNew', 'lkSanluongNew', 'percentageNew',
        'rft', 'tongKiem', 'datLan1', 'tongDat',
    ) + LOI_FIELDS + tuple(f'errorPercentage{ind}' for ind in range(1, DEFECT_CATEGORIES + 1)),
    child_fields=(),
    nested=None,
)
MONITORED = {
    KIND_PRODUCTION: PRODUCTION_SPEC,
    KIND_TEAM: PRODUCTION_SPEC,
    KIND_CD: FingerprintSpec(
        fields=(
            'maChuyenLine', 'nhaMay', 'line', 'canBoQuanLy', 'to', 'maHang', 'slth', 'congKh',
            'congTh', 'pphKh', 'pphTh', 'phanTramHtPph', 'gioSx', 'ldCoMat', 'ldLayout',
            'ldHienCo', 'nangSuat', 'pphTarget', 'pphGiao', 'phanTramGiao', 'targetNgay',
            'targetGio', 'lkth', 'phanTramHt', 'lean', 'phanTram100', 'lkkh', 'khGiaoThang',
            'khbqGQ', 'slkhBqlk', 'slthThang', 'phanTramThang', 'conlai', 'bqCansxNgay',
            'tglv', 'ncdv', 'dbcu', 'phanTramDapUng', 'tonMay', 'nc1ntt', 'nc2ntt', 'nc3ntt',
            'note', 'db1ntt', 'db2ntt', 'db3ntt', 'dbNgay',
        ),
        slot_fields=('sanluong', 'percentage'),
        child_fields=(
            'to', 'tglv', 'maHang', 'nhuCauLuyKe', 'tenChiTiet', 'keHoachGiao', 'luyKeGiao',
            'conLai', 'ttdb', 'canXuLy', 'targetNgay', 'targetGio', 'lkkh', 'lkth', 'ncdv',
            'dbcu', 'phanTramDapUng', 'tonMay', 'nc1ntt', 'nc2ntt', 'nc3ntt', 'note',
            'db1ntt', 'db2ntt', 'db3ntt', 'dbNgay',
        ),
        nested=None,
    ),
    KIND_QSL: FingerprintSpec(
        fields=('tenTo', 'tglv'),
        slot_fields=('sanluong',),
        child_fields=('section', 'nhom', 'ldLayout', 'thucTe', 'keHoach') + TIME_SLOTS + (
            'luyKeThucHien', 'luyKeKeHoach', 'percentHT'),
        nested=None,
    ),
    KIND_CD_PRODUCT: FingerprintSpec(
        fields=('maChuyenLine', 'factory', 'line', 'totalProducts'),
        slot_fields=(),
        child_fields=('ma', 'mau', 'slkh', 'nhuCauLuyKe', 'tenChiTiet', 'keHoachGiao',
                      'luyKeGiao', 'conLai', 'ttdb', 'canXuLy'),
        nested=('details', ('nhuCauLuyKe', 'tenChiTiet', 'keHoachGiao', 'luyKeGiao',
                            'conLai', 'ttdb', 'canXuLy')),
    ),
    KIND_CENTER_TV: FingerprintSpec(
        fields=('totalGroups',),
        slot_fields=('sanluong',),
        child_fields=('nhom', 'layout', 'tglv', 'keHoachGio', 'keHoachNgay') + TIME_SLOTS + (
            'soLuongGiaoMay', 'lkKh', 'lkTh', 'phanTramHt', 'bqTargetGio', 'sthd', 'slcl',
            'tienDoApUng'),
        nested=None,
    ),
}


def canonical(value):
    """
    The canonical text of one value.
    None is empty, numbers use their exact text with integral floats as ints,
    strings are stripped and separators escaped.
    """
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)

    return RE_ESCAPE.sub(r'\\\1', str(value).strip())


def serialize_values(obj, names):
    """ Join the canonical values of the named keys of a dict. """
    return VALUE_SEP.join(canonical(obj.get(name)) for name in names)


def serialize_slots(slots, names):
    """ Every checkpoint in TIME_SLOTS order, missing ones serialize as empty. """
    if not names:
        return ''

    return SLOT_SEP.join(f'{slot}:' + serialize_values(slots.get(slot, {}), names) for slot in TIME_SLOTS)


def serialize_children(children, names, nested=None):
    """ Children in order, each optionally followed by its own nested list. """
    parts = []
    for child in children:
        part = serialize_values(child, names)
        if nested:
            key, nested_names = nested
            part += SLOT_SEP + SLOT_SEP.join(serialize_values(sub, nested_names) for sub in child.get(key, []))
        parts += [part]

    return CHILD_SEP.join(parts)


def fingerprint_payload(record):
    """
    The plain serialization a fingerprint is encoded from. Useful when debugging.
    """
    monitored = MONITORED[record.kind]
    scalars = FIELD_SEP.join(canonical(record.fields.get(name)) for name in monitored.fields)

    return SECTION_SEP.join([
        record.kind,
        scalars,
        serialize_slots(record.slots, monitored.slot_fields),
        serialize_children(record.children, monitored.child_fields, monitored.nested),
    ])


def fingerprint(record):
    """
    Compute the comparison token of a record. Pure, no side effects.

    Returns: A base64 string.
    """
    return base64.b64encode(fingerprint_payload(record).encode('utf-8')).decode('ascii')
