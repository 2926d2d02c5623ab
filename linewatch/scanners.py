"""
All sheet scanners are stored here.

A scanner knows which pages and ranges of a sheet family to read through the
FetchClient and which layout parser turns them into EntityRecords. A family is
read in units: one unit is one fetch and normalize step of a poll cycle, for
instance one QSL line page or one CD product sheet.
"""
import datetime
import logging

import linewatch.exc
from linewatch.config import FACTORIES
from linewatch.layouts import (normalize, parse_endline_rows, parse_wide_rows, team_record)
from linewatch.records import (KIND_CD, KIND_CD_PRODUCT, KIND_CENTER_TV, KIND_PRODUCTION, KIND_QSL)


class Scanner():
    """
    Base scanner, reads the family page and range once per cycle.

    Args:
        client: The FetchClient.
        family: The FamilySettings of this family.
        factory: The owning group restriction of the process, ALL for none.
        tzinfo: Timezone of local time decisions.
    """
    kind = None

    def __init__(self, client, family, *, factory='ALL', tzinfo=datetime.timezone.utc):
        self.client = client
        self.family = family
        self.factory = factory
        self.tzinfo = tzinfo

    def __repr__(self):
        keys = ['kind', 'factory', 'family']
        kwargs = ['{}={!r}'.format(key, getattr(self, key)) for key in keys]

        return "{}({})".format(self.__class__.__name__, ', '.join(kwargs))

    @property
    def name(self):
        """ The family name. """
        return self.family.name

    def units(self):
        """
        The units read in one full cycle, in order.
        """
        return [None]

    def page(self, unit=None):
        """ The page a unit is read from. """
        return self.family.page

    async def read(self, page, a1_range=None, *, bypass_cache=False):
        """
        Read a page of this family through the client.

        Returns: The grid, empty when there is no data.
        """
        return await self.client.read(self.family.sheet_id, page, a1_range or self.family.a1_range,
                                      ttl=self.family.cache_ttl, bypass_cache=bypass_cache)

    def parse(self, grid, unit=None):
        """ Normalize the grid of one unit. """
        return normalize(self.kind, grid, sheet=self.page(unit))

    async def scan(self, unit=None, *, bypass_cache=False):
        """
        Fetch and normalize one unit.

        Returns: A list of EntityRecords, None when the upstream returned no data.
        """
        page = self.page(unit)
        grid = await self.read(page, bypass_cache=bypass_cache)
        if not grid:
            logging.getLogger(__name__).warning("SCANNER %s: no data in '%s'!%s",
                                                self.name, page, self.family.a1_range)
            return None

        return self.parse(grid, unit)


class ProductionScanner(Scanner):
    """
    The wide production sheet joined with the endline detail sheet.
    Before the cutoff hour the detail of the previous day is read instead.
    """
    kind = KIND_PRODUCTION

    def detail_page(self, now=None):
        """ The endline page to read at local time now. """
        opts = self.family.options
        now = now or datetime.datetime.now(self.tzinfo)
        if now.hour < int(opts.get('detail_cutoff_hour', 8)):
            return opts['detail_before_page']

        return opts['detail_page']

    async def read_details(self, *, bypass_cache=False):
        """
        Read and parse the endline detail rows.

        Returns: The output of parse_endline_rows, empty when no data.
        """
        page = self.detail_page()
        grid = await self.read(page, self.family.options['detail_range'], bypass_cache=bypass_cache)
        if not grid:
            logging.getLogger(__name__).warning("SCANNER %s: no endline detail in '%s'", self.name, page)
            return {}

        return parse_endline_rows(grid, sheet=page)

    async def read_sheets(self, *, bypass_cache=False):
        """
        Returns: (wide_grid, details)
        """
        grid = await self.read(self.page(), bypass_cache=bypass_cache)
        details = await self.read_details(bypass_cache=bypass_cache) if grid else {}

        return grid, details

    async def scan(self, unit=None, *, bypass_cache=False):
        grid, details = await self.read_sheets(bypass_cache=bypass_cache)
        if not grid:
            logging.getLogger(__name__).warning("SCANNER %s: no data in '%s'", self.name, self.page())
            return None

        return parse_wide_rows(grid, details=details, factory=self.factory, sheet=self.page())

    async def record_for_team(self, code, index, *, bypass_cache=False):
        """
        The team view: the wide row of a line merged with its index-th endline row.

        Raises:
            EntityNotFound: Line or team absent, or no data at all.
        """
        grid, details = await self.read_sheets(bypass_cache=bypass_cache)
        if not grid:
            raise linewatch.exc.EntityNotFound(f'No production data available for {code}.')

        return team_record(grid, details, code, index, sheet=self.page())


class TeamScanner(ProductionScanner):
    """
    Production scanner whose units are the lazily tracked (code, index) teams.
    """
    def units(self):
        return []

    async def scan(self, unit=None, *, bypass_cache=False):
        code, index = unit
        try:
            return [await self.record_for_team(code, index, bypass_cache=bypass_cache)]
        except linewatch.exc.EntityNotFound as exc:
            exc.write_log(logging.getLogger(__name__), context={'family': self.name, 'team': unit})
            return None


class CDScanner(Scanner):
    """
    The CD sheet, parents with a fixed count of sub-rows.
    """
    kind = KIND_CD

    def parse(self, grid, unit=None):
        opts = self.family.options
        return normalize(self.kind, grid, factory_codes=opts['factory_codes'], row_counts=opts['row_counts'],
                         default_count=opts.get('default_row_count', 5), grouping=opts.get('grouping'),
                         factory=self.factory, sheet=self.page())


class QSLScanner(Scanner):
    """
    One page per line, LINE1 to LINE4.
    """
    kind = KIND_QSL

    def units(self):
        return list(self.family.options['lines'])

    def page(self, unit=None):
        return self.family.page.format(line=unit)

    def parse(self, grid, unit=None):
        return normalize(self.kind, grid, line=unit, sheet=self.page(unit))


class CDProductScanner(Scanner):
    """
    One page per product sheet code, CD1 to CD4.
    """
    kind = KIND_CD_PRODUCT

    def units(self):
        return [code.upper() for code in self.family.options['codes']]

    def page(self, unit=None):
        return self.family.page.format(code=unit)

    def parse(self, grid, unit=None):
        return normalize(self.kind, grid, code=unit, sheet=self.page(unit))


class CenterTVScanner(Scanner):
    """
    The center TV sheet, one unit per factory in scope.
    """
    kind = KIND_CENTER_TV

    def units(self):
        return list(FACTORIES) if self.factory == 'ALL' else [self.factory]

    def parse(self, grid, unit=None):
        return normalize(self.kind, grid, factories=[unit], lines=self.family.options['lines'],
                         sheet=self.page(unit))


SCANNER_CLASSES = {
    'production': ProductionScanner,
    'team': TeamScanner,
    'cd': CDScanner,
    'qsl': QSLScanner,
    'cd_product': CDProductScanner,
    'center_tv': CenterTVScanner,
}


def init_scanners(settings, client):
    """
    Build one scanner per configured family.

    Returns:
        A dict where key is name of scanner and value is the scanner.
    """
    scanners = {}
    for name, family in settings.families.items():
        scanners[name] = SCANNER_CLASSES[name](client, family, factory=settings.factory,
                                               tzinfo=settings.tzinfo)
        logging.getLogger(__name__).info("SCANNER Initialized %r", scanners[name])

    return scanners
