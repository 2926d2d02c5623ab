"""
The common record shape every sheet layout is normalized into.

Each layout produces EntityRecords of its own kind. Past this boundary the
fingerprint engine, the snapshot store and the broadcaster only look at
kind, key, group, fields, slots and children.
"""
import linewatch.util

KIND_PRODUCTION = 'production'
KIND_TEAM = 'team'
KIND_CD = 'cd'
KIND_QSL = 'qsl'
KIND_CD_PRODUCT = 'cd_product'
KIND_CENTER_TV = 'center_tv'
KINDS = (KIND_PRODUCTION, KIND_TEAM, KIND_CD, KIND_QSL, KIND_CD_PRODUCT, KIND_CENTER_TV)


class EntityRecord(linewatch.util.ReprMixin):
    """
    One trackable unit: a production line, a team within a line or a product group.

    Attributes:
        kind: The layout kind that produced the record, one of KINDS.
        key: The stable identifying key of the entity.
        group: The owning group key used for coarse routing, usually the factory.
        fields: Flat dict of scalar metrics.
        slots: Dict of checkpoint name -> dict of counters, in TIME_SLOTS order.
        children: List of dicts for sub-rows, teams or products.
        room: Sheet family specific room suffix, see broadcast.family_room.
    """
    _repr_keys = ['kind', 'key', 'group', 'room']

    def __init__(self, kind, key, group, *, fields=None, slots=None, children=None, room=None):
        if kind not in KINDS:
            raise ValueError(f'Unknown record kind: {kind}')
        self.kind = kind
        self.key = key
        self.group = group
        self.fields = fields if fields is not None else {}
        self.slots = slots if slots is not None else {}
        self.children = children if children is not None else []
        self.room = room

    def __eq__(self, other):
        return isinstance(other, EntityRecord) and self.to_dict() == other.to_dict()

    def __getitem__(self, key):
        return self.fields[key]

    def get(self, key, default=None):
        """ Fetch a scalar field with a default. """
        return self.fields.get(key, default)

    def to_dict(self):
        """
        A JSON serializable view of the record for events and HTTP responses.
        """
        return {
            'kind': self.kind,
            'key': self.key,
            'group': self.group,
            **self.fields,
            'hourlyData': {slot: dict(values) for slot, values in self.slots.items()},
            'children': [dict(child) for child in self.children],
        }
