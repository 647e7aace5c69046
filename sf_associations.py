"""
Resolve Salesforce parent references to HubSpot associations.

Activities carry up to three references (WhoId, AccountId, WhatId) and each one
that maps to a HubSpot record becomes its own association, so a single event
can produce rows for a contact, a company and a deal.
"""

import logging
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from sf_identity import PREFIX_LENGTH, EntityPrefix, IdentityIndex


class Association(NamedTuple):
    object_type: str
    hubspot_id: str
    source_field: str
    source_id: str


class ReferenceField(NamedTuple):
    """A reference column and the key prefixes it may legitimately hold."""
    field_name: str
    accepted_prefixes: Tuple[EntityPrefix, ...]
    # Overrides the prefix's own object type when set
    object_type: Optional[str] = None


# Declared order is the fan-out order: who -> account -> what
ACTIVITY_REFERENCE_FIELDS = [
    ReferenceField('WhoId', EntityPrefix.with_role('who')),
    ReferenceField('AccountId', EntityPrefix.with_role('account')),
    ReferenceField('WhatId', EntityPrefix.with_role('what')),
]


def reference_fields_from_config(config: Dict[str, Dict]) -> List[ReferenceField]:
    """
    Build reference field specs from plain configuration.

    Example:
        {'WhoId': {'acceptedPrefixes': ['003', '00Q'], 'destinationObjectType': 'contacts'}}

    Unknown prefix codes raise ValueError.
    """
    fields = []
    for field_name, options in config.items():
        prefixes = []
        for code in options.get('acceptedPrefixes', []):
            member = EntityPrefix.from_code(code)
            if member is None:
                raise ValueError(f"Unknown Salesforce key prefix '{code}' for field {field_name}")
            prefixes.append(member)
        fields.append(ReferenceField(field_name, tuple(prefixes), options.get('destinationObjectType')))
    return fields


def resolve_associations(record: Dict[str, str], index: IdentityIndex,
                         reference_fields: Sequence[ReferenceField] = ACTIVITY_REFERENCE_FIELDS) -> List[Association]:
    """
    Resolve every reference field of a record into HubSpot associations.

    Args:
        record: Source row
        index: Identity index for this run
        reference_fields: Fields to inspect, in fan-out order

    Returns:
        Associations in field order. Empty when nothing resolves; the caller
        drops such records.
    """
    associations = []
    seen = set()

    for ref in reference_fields:
        value = (record.get(ref.field_name) or '').strip()
        if not value:
            continue

        prefix = EntityPrefix.from_id(value)
        if prefix is None or prefix not in ref.accepted_prefixes:
            logging.debug(f"{ref.field_name}={value} has no accepted prefix; ignoring")
            continue

        hubspot_id = index.resolve(prefix.code, value)
        if not hubspot_id:
            logging.debug(f"{ref.field_name}={value} not found in {prefix.code} mappings")
            continue

        object_type = ref.object_type or prefix.object_type
        key = (object_type, hubspot_id)
        if key in seen:
            continue
        seen.add(key)
        associations.append(Association(object_type, hubspot_id, ref.field_name, value))

    return associations


def resolve_parent(parent_id: Optional[str], index: IdentityIndex,
                   source_field: str = 'ParentId') -> Optional[Association]:
    """Resolve a single parent ID (notes, attachments) through its own prefix."""
    if not parent_id:
        return None
    parent_id = parent_id.strip()
    prefix = EntityPrefix.from_id(parent_id)
    if prefix is None:
        logging.debug(f"{source_field}={parent_id} has unknown prefix {parent_id[:PREFIX_LENGTH]}")
        return None

    hubspot_id = index.resolve(prefix.code, parent_id)
    if not hubspot_id:
        return None
    return Association(prefix.object_type, hubspot_id, source_field, parent_id)
