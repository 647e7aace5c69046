"""
Salesforce -> HubSpot identity index.

Loads the HubSpot "mapper" exports (CSV files that pair a Salesforce ID column
with the HubSpot Record ID) into per-prefix lookup tables. Salesforce IDs carry
a 3-character key prefix that identifies the object they belong to, so every
lookup is keyed by that prefix first.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

# HubSpot object types that import files are partitioned by
CONTACTS = 'contacts'
COMPANIES = 'companies'
DEALS = 'deals'
OTHER = 'other'

OBJECT_TYPES = (CONTACTS, COMPANIES, DEALS, OTHER)

# Column holding the HubSpot ID in every mapper export
DEFAULT_DESTINATION_COLUMN = 'Record ID'

PREFIX_LENGTH = 3


class EntityPrefix(Enum):
    """Known Salesforce key prefixes, with the HubSpot object they land in."""

    ACCOUNT = ('001', COMPANIES, ('account', 'parent'))
    CONTACT = ('003', CONTACTS, ('who', 'parent'))
    LEAD = ('00Q', CONTACTS, ('who', 'parent'))
    OPPORTUNITY = ('006', DEALS, ('what', 'parent'))
    CASE = ('500', OTHER, ('parent',))

    def __init__(self, code: str, object_type: str, roles: Tuple[str, ...]):
        self.code = code
        self.object_type = object_type
        self.roles = roles

    @classmethod
    def from_code(cls, code: str) -> Optional['EntityPrefix']:
        for member in cls:
            if member.code == code:
                return member
        return None

    @classmethod
    def from_id(cls, identifier: Optional[str]) -> Optional['EntityPrefix']:
        """Classify a Salesforce ID by its key prefix (None if unknown or empty)."""
        if not identifier:
            return None
        return cls.from_code(identifier.strip()[:PREFIX_LENGTH])

    @classmethod
    def with_role(cls, role: str) -> Tuple['EntityPrefix', ...]:
        return tuple(member for member in cls if role in member.roles)


class MappingSource:
    """Describes one mapper table feeding one prefix of the index."""

    def __init__(self, table: str, prefix: str, candidate_columns: List[str],
                 destination_column: str = DEFAULT_DESTINATION_COLUMN):
        self.table = table
        self.prefix = prefix
        self.candidate_columns = list(candidate_columns)
        self.destination_column = destination_column

    def __repr__(self):
        return f"MappingSource({self.table!r}, {self.prefix!r}, {self.candidate_columns!r})"


# contact-mapper.csv feeds both the contact and the lead prefix
DEFAULT_MAPPING_SOURCES = [
    MappingSource('company-mapper.csv', EntityPrefix.ACCOUNT.code, ['SF ID']),
    MappingSource('contact-mapper.csv', EntityPrefix.CONTACT.code, ['SF ID', 'SF Contact ID']),
    MappingSource('contact-mapper.csv', EntityPrefix.LEAD.code, ['SF Lead ID']),
    MappingSource('deal-mapper.csv', EntityPrefix.OPPORTUNITY.code, ['sf_id', 'SF ID']),
]


def read_mapping_table(path: Path) -> pd.DataFrame:
    """Read a mapper CSV with every cell as a string and blanks as ''."""
    return pd.read_csv(path, dtype=str, keep_default_na=False, encoding='utf-8-sig')


def first_non_empty(row: Dict[str, str], columns: List[str]) -> Optional[str]:
    for col in columns:
        value = row.get(col)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class IdentityIndex:
    """
    Prefix-keyed map of Salesforce ID -> HubSpot Record ID.

    Built once at the start of a run and only read afterwards. When the same
    Salesforce ID is written twice the later value wins; writes that change an
    existing value are kept in ``conflicts`` as
    (prefix, sf_id, previous_hubspot_id, new_hubspot_id).
    """

    def __init__(self):
        self._maps: Dict[str, Dict[str, str]] = {}
        self.conflicts: List[Tuple[str, str, str, str]] = []

    @classmethod
    def load(cls, sources: List[MappingSource], maps_dir) -> 'IdentityIndex':
        """
        Build an index from mapper tables.

        Args:
            sources: Mapping table descriptors, processed in order
            maps_dir: Directory holding the mapper CSVs

        Returns:
            Populated IdentityIndex. Tables that are missing or unreadable are
            logged and skipped.
        """
        index = cls()
        maps_dir = Path(maps_dir)

        logging.info("Loading ID mapper files...")
        for source in sources:
            path = maps_dir / source.table
            try:
                df = read_mapping_table(path)
            except FileNotFoundError:
                logging.warning(f"Mapper file not found: {path}. Skipping prefix {source.prefix} from this source.")
                continue
            except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
                logging.warning(f"Could not load {path}: {e}. Skipping prefix {source.prefix} from this source.")
                continue

            loaded = index.load_rows(source, df.to_dict(orient='records'))
            logging.info(f"  Loaded {loaded} mappings from {source.table} for prefix {source.prefix}")

        if index.conflicts:
            logging.warning(f"{len(index.conflicts)} Salesforce ID(s) were mapped more than once with different "
                            f"HubSpot IDs; the last mapping read was kept")
        return index

    def load_rows(self, source: MappingSource, rows) -> int:
        """Insert mapper rows for one source; returns how many rows were usable."""
        count = 0
        for row in rows:
            hubspot_id = first_non_empty(row, [source.destination_column])
            sf_id = first_non_empty(row, source.candidate_columns)
            if hubspot_id and sf_id:
                self.add(source.prefix, sf_id, hubspot_id)
                count += 1
        return count

    def add(self, prefix: str, sf_id: str, hubspot_id: str):
        sub_map = self._maps.setdefault(prefix, {})
        previous = sub_map.get(sf_id)
        if previous is not None and previous != hubspot_id:
            logging.debug(f"Mapping for {sf_id} under {prefix} changed from {previous} to {hubspot_id}")
            self.conflicts.append((prefix, sf_id, previous, hubspot_id))
        sub_map[sf_id] = hubspot_id

    def resolve(self, prefix: str, sf_id: Optional[str]) -> Optional[str]:
        if not sf_id:
            return None
        return self._maps.get(prefix, {}).get(sf_id.strip())

    def resolve_id(self, sf_id: Optional[str]) -> Optional[str]:
        """Resolve using the ID's own key prefix."""
        if not sf_id:
            return None
        sf_id = sf_id.strip()
        return self.resolve(sf_id[:PREFIX_LENGTH], sf_id)

    def count(self, prefix: str) -> int:
        return len(self._maps.get(prefix, {}))

    def prefixes(self) -> List[str]:
        return sorted(self._maps)

    def __len__(self):
        return sum(len(sub_map) for sub_map in self._maps.values())
