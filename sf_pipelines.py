"""
Salesforce export -> HubSpot import file pipelines.

Every pipeline streams one primary Salesforce CSV, resolves each row's parent
references through the run's IdentityIndex and writes one projected row per
resolved association into a PartitionedExport (one chunked file series per
HubSpot object type).
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import pandas as pd

from file_matcher import (MAX_FILENAME_BODY_LENGTH, load_attachment_metadata,
                          load_content_version_metadata, rename_files)
from hubspot_csv import (RECORD_ID_COLUMN, PartitionedExport, RowProjector, constant, end_time, field,
                         first_of, iso_timestamp, read_csv_rows, record_id, titled_body)
from migration_config import MigrationConfig
from sf_associations import ACTIVITY_REFERENCE_FIELDS, Association, resolve_associations, resolve_parent
from sf_identity import IdentityIndex

EVENT_CSV = 'Event.csv'
TASK_CSV = 'Task.csv'
EMAIL_MESSAGE_CSV = 'EmailMessage.csv'
NOTE_CSV = 'Note.csv'
ATTACHMENT_CSV = 'Attachment.csv'
CONTENT_VERSION_CSV = 'ContentVersion.csv'
CONTENT_DOCUMENT_LINK_CSV = 'ContentDocumentLink.csv'

# Salesforce Event/Task 'Type' values -> HubSpot engagement type.
# Types not listed here are not migrated.
ACTIVITY_TYPE_MAP = {
    'calls': ['Call', 'Qual Call'],
    'meetings': ['Meeting', 'Demo'],
    'emails': ['Email'],
}

TASK_TYPE_MAP = {
    'emails': ['Email'],
}

ACTIVITY_DATE_FIELDS = ('ActivityDateTime', 'CreatedDate')

ACTIVITY_FIELD_MAPS = {
    'calls': [
        (RECORD_ID_COLUMN, record_id()),
        ('Call notes', field('Description')),
        ('Activity date', first_of(*ACTIVITY_DATE_FIELDS)),
        ('Call direction', constant('Outbound')),
        ('Call title', field('Subject')),
    ],
    'meetings': [
        (RECORD_ID_COLUMN, record_id()),
        ('Meeting description', field('Description')),
        ('Activity date', first_of(*ACTIVITY_DATE_FIELDS)),
        ('Meeting start time', iso_timestamp(*ACTIVITY_DATE_FIELDS)),
        ('Meeting end time', end_time(ACTIVITY_DATE_FIELDS, 'DurationInMinutes')),
        ('Meeting title', field('Subject')),
    ],
    'emails': [
        (RECORD_ID_COLUMN, record_id()),
        ('Email body', field('Description')),
        ('Activity date', first_of(*ACTIVITY_DATE_FIELDS)),
        ('Email direction', constant('UNKNOWN')),
        ('Email subject', field('Subject')),
    ],
}

CLASSIC_NOTE_FIELD_MAP = [
    (RECORD_ID_COLUMN, record_id()),
    ('Note Body', titled_body('Title', 'Body')),
    ('Timestamp', field('CreatedDate')),
    ('Title', field('Title')),
    ('Body', field('Body')),
]

# ContentVersion rows carry no body column; the note file's text is put in 'Body'
ENHANCED_NOTE_FIELD_MAP = [
    (RECORD_ID_COLUMN, record_id()),
    ('Note Body', field('Body')),
    ('Timestamp', field('CreatedDate')),
]

MANIFEST_COLUMNS = [
    'object_type',
    'hubspot_id',
    'original_sf_id',
    'salesforce_file_id',
    'file_location',
    'original_filename',
]

MANIFEST_DATASET = 'file_manifest'


class PrimaryInputMissing(Exception):
    """The dataset a pipeline is built around cannot be opened."""

    def __init__(self, path, reason: str = 'not found'):
        self.path = path
        super().__init__(f"{path}: {reason}")


class RunSummary:
    """Counters for one pipeline run, printed at the end."""

    def __init__(self, name: str):
        self.name = name
        self.processed = 0
        self.skipped = Counter()
        self.counts = Counter()
        self.exports: List[PartitionedExport] = []
        self.notes: List[str] = []

    def skip(self, reason: str):
        self.skipped[reason] += 1

    def add_export(self, export: PartitionedExport):
        self.exports.append(export)

    @property
    def failed(self) -> bool:
        return any(export.failed for export in self.exports) or self.counts.get('failed', 0) > 0

    def partition_rows(self) -> List[Dict[str, Any]]:
        rows = []
        for export in self.exports:
            rows.extend(export.stats())
        return rows

    def rows_written(self, object_type: Optional[str] = None) -> int:
        return sum(r['rows_written'] for r in self.partition_rows()
                   if object_type is None or r['partition'] == object_type)

    def print_summary(self):
        print("\n" + "=" * 80)
        print(f"{self.name.upper()} SUMMARY")
        print("=" * 80)
        print(f"records_processed: {self.processed}")
        for reason, count in sorted(self.skipped.items()):
            print(f"  skipped ({reason}): {count}")
        for key, count in self.counts.items():
            print(f"{key}: {count}")

        rows = self.partition_rows()
        if rows:
            df = pd.DataFrame(rows, columns=['dataset', 'partition', 'rows_written', 'chunks', 'dropped', 'error'])
            print()
            print(df.to_string(index=False))
        else:
            print("\nNo rows written.")

        for note in self.notes:
            print(f"\nNOTE: {note}")
        print("=" * 80)


def stream_primary(path: Path) -> Iterator[Dict[str, str]]:
    if not Path(path).is_file():
        raise PrimaryInputMissing(path)
    try:
        with open(path, 'rb'):
            pass
    except OSError as e:
        raise PrimaryInputMissing(path, str(e)) from e
    return read_csv_rows(path)



def load_lookup_table(path: Path) -> pd.DataFrame:
    """Read a secondary export table; a missing or unreadable file gives an empty frame."""
    try:
        return pd.read_csv(path, dtype=str, keep_default_na=False, encoding='utf-8-sig')
    except FileNotFoundError:
        logging.warning(f"File not found: {path}. Continuing without it.")
    except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        logging.warning(f"Could not load {path}: {e}. Continuing without it.")
    return pd.DataFrame()


def load_email_bodies(path: Path) -> Dict[str, str]:
    """EmailMessage.csv: ActivityId -> HtmlBody (or TextBody)."""
    logging.info(f"Loading full email bodies from {path}...")
    df = load_lookup_table(path)
    bodies = {}
    for message in df.to_dict(orient='records'):
        activity_id = message.get('ActivityId', '')
        body = message.get('HtmlBody', '') or message.get('TextBody', '')
        if activity_id and body:
            bodies[activity_id] = body
    logging.info(f"  Loaded {len(bodies)} unique email bodies")
    return bodies


def load_document_links(path: Path) -> Dict[str, List[str]]:
    """ContentDocumentLink.csv: ContentDocumentId -> linked entity IDs in file order."""
    df = load_lookup_table(path)
    links: Dict[str, List[str]] = {}
    for link in df.to_dict(orient='records'):
        doc_id = link.get('ContentDocumentId', '')
        entity_id = link.get('LinkedEntityId', '')
        if doc_id and entity_id:
            entities = links.setdefault(doc_id, [])
            if entity_id not in entities:
                entities.append(entity_id)
    logging.info(f"Link data loaded. Found links for {len(links)} unique documents.")
    return links


def reverse_type_map(type_map: Dict[str, List[str]]) -> Dict[str, str]:
    return {sf_type: hs_type for hs_type, sf_types in type_map.items() for sf_type in sf_types}


def note_conflicts(summary: RunSummary, index: IdentityIndex):
    if index.conflicts:
        summary.notes.append(f"{len(index.conflicts)} Salesforce ID(s) had conflicting HubSpot IDs in the "
                             f"mapper files; the last one read was used.")


def fan_out(export: PartitionedExport, projector: RowProjector, record: Dict[str, str],
            associations: List[Association]) -> int:
    """Write one projected row per association; returns rows accepted."""
    written = 0
    for assoc in associations:
        if export.write(assoc.object_type, projector.project(record, assoc)):
            written += 1
    return written


def close_exports(summary: RunSummary, exports):
    for export in exports:
        export.close()
        summary.add_export(export)


def run_activities(config: MigrationConfig, index: IdentityIndex) -> RunSummary:
    """Event.csv -> call/meeting/email engagement imports, one file series per object type."""
    summary = RunSummary('activities')
    note_conflicts(summary, index)
    event_path = config.export_file(EVENT_CSV)
    events = stream_primary(event_path)

    type_lookup = reverse_type_map(ACTIVITY_TYPE_MAP)
    projectors = {hs_type: RowProjector(field_map) for hs_type, field_map in ACTIVITY_FIELD_MAPS.items()}
    exports = {
        hs_type: PartitionedExport(config.output_dir, f"hubspot_import_{hs_type}", projector.header,
                                   config.max_chunk_bytes)
        for hs_type, projector in projectors.items()
    }

    logging.info(f"Processing {event_path} (streaming)...")
    try:
        for event in events:
            summary.processed += 1
            engagement_type = type_lookup.get(event.get('Type', ''))
            if not engagement_type:
                summary.skip('unmapped_type')
                continue

            associations = resolve_associations(event, index, ACTIVITY_REFERENCE_FIELDS)
            if not associations:
                summary.skip('no_association')
                continue

            fan_out(exports[engagement_type], projectors[engagement_type], event, associations)
    finally:
        close_exports(summary, exports.values())

    return summary


def email_body(bodies: Dict[str, str]):
    """Full EmailMessage body for the task, falling back to its Description."""
    return lambda record, assoc: bodies.get(record.get('Id', '')) or record.get('Description') or ''


def run_task_emails(config: MigrationConfig, index: IdentityIndex) -> RunSummary:
    """Task.csv (Type=Email) -> email engagement imports, bodies taken from EmailMessage.csv."""
    summary = RunSummary('task emails')
    note_conflicts(summary, index)
    task_path = config.export_file(TASK_CSV)
    tasks = stream_primary(task_path)

    bodies = load_email_bodies(config.export_file(EMAIL_MESSAGE_CSV))
    body_source = email_body(bodies)
    type_lookup = reverse_type_map(TASK_TYPE_MAP)

    projector = RowProjector([
        (RECORD_ID_COLUMN, record_id()),
        ('Email body', body_source),
        ('Activity date', first_of('ActivityDate', 'CreatedDate')),
        ('Email direction', constant('UNKNOWN')),
        ('Email subject', field('Subject')),
    ])
    export = PartitionedExport(config.output_dir, 'hubspot_import_task_emails', projector.header,
                               config.max_chunk_bytes)

    logging.info(f"Processing {task_path} (streaming)...")
    try:
        for task in tasks:
            summary.processed += 1
            if type_lookup.get(task.get('Type', '')) != 'emails':
                summary.skip('unmapped_type')
                continue

            associations = resolve_associations(task, index, ACTIVITY_REFERENCE_FIELDS)
            if not associations:
                summary.skip('no_association')
                continue

            if config.skip_empty_bodies and not body_source(task, None):
                summary.skip('empty_body')
                continue

            fan_out(export, projector, task, associations)
    finally:
        close_exports(summary, [export])

    return summary


def run_classic_notes(config: MigrationConfig, index: IdentityIndex) -> RunSummary:
    """Note.csv -> note imports attached to each note's parent record."""
    summary = RunSummary('classic notes')
    note_conflicts(summary, index)
    notes_path = config.export_file(NOTE_CSV)
    notes = stream_primary(notes_path)

    projector = RowProjector(CLASSIC_NOTE_FIELD_MAP)
    export = PartitionedExport(config.output_dir, 'hubspot_import_classic_notes', projector.header,
                               config.max_chunk_bytes)

    logging.info(f"Processing classic notes from {notes_path}...")
    try:
        for note in notes:
            summary.processed += 1
            if not note.get('ParentId'):
                summary.skip('no_parent')
                continue
            if note.get('IsDeleted') == '1':
                summary.skip('deleted')
                continue

            assoc = resolve_parent(note['ParentId'], index)
            if assoc is None:
                summary.skip('no_association')
                continue

            fan_out(export, projector, note, [assoc])
    finally:
        close_exports(summary, [export])

    return summary


def resolve_links(entity_ids: List[str], index: IdentityIndex) -> List[Association]:
    associations = []
    for entity_id in entity_ids:
        assoc = resolve_parent(entity_id, index, source_field='LinkedEntityId')
        if assoc is not None and assoc not in associations:
            associations.append(assoc)
    return associations


def read_note_file(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        logging.warning(f"Could not read note file {path}: {e}. Skipping.")
        return None


def run_enhanced_notes(config: MigrationConfig, index: IdentityIndex) -> RunSummary:
    """
    ContentVersion SNOTE rows -> note imports.

    The note text lives in the ContentVersion folder under the version Id. A
    note linked to several mapped records is written once per record.
    """
    summary = RunSummary('enhanced notes')
    note_conflicts(summary, index)
    versions_path = config.export_file(CONTENT_VERSION_CSV)
    versions = stream_primary(versions_path)

    links = load_document_links(config.export_file(CONTENT_DOCUMENT_LINK_CSV))
    projector = RowProjector(ENHANCED_NOTE_FIELD_MAP)
    export = PartitionedExport(config.output_dir, 'hubspot_import_notes', projector.header,
                               config.max_chunk_bytes)

    logging.info(f"Processing enhanced notes from {versions_path}...")
    try:
        for version in versions:
            if version.get('IsLatest') != '1' or version.get('FileType') != 'SNOTE':
                continue
            summary.processed += 1

            associations = resolve_links(links.get(version.get('ContentDocumentId', ''), []), index)
            if not associations:
                summary.skip('no_association')
                continue

            body = read_note_file(config.content_version_dir / version.get('Id', '').strip())
            if body is None:
                summary.skip('unreadable_note_file')
                continue

            fan_out(export, projector, dict(version, Body=body), associations)
    finally:
        close_exports(summary, [export])

    return summary


def manifest_entry(assoc: Association, file_id: str, location: Path, filename: str) -> Dict[str, str]:
    return {
        'object_type': assoc.object_type,
        'hubspot_id': assoc.hubspot_id,
        'original_sf_id': assoc.source_id,
        'salesforce_file_id': file_id,
        'file_location': location.as_posix(),
        'original_filename': filename,
    }


def run_file_manifest(config: MigrationConfig, index: IdentityIndex) -> RunSummary:
    """
    Attachments and ContentVersion files -> JSON upload manifests per object type.

    Either source may be missing; the run only fails when neither can be read.
    """
    summary = RunSummary('file manifest')
    note_conflicts(summary, index)
    attachments_path = config.export_file(ATTACHMENT_CSV)
    versions_path = config.export_file(CONTENT_VERSION_CSV)

    if not attachments_path.is_file() and not versions_path.is_file():
        raise PrimaryInputMissing(f"{attachments_path} and {versions_path}")

    export = PartitionedExport(config.output_dir, MANIFEST_DATASET, MANIFEST_COLUMNS,
                               config.max_chunk_bytes, fmt='json')
    try:
        if attachments_path.is_file():
            logging.info("Processing Attachments...")
            for attachment in read_csv_rows(attachments_path):
                summary.processed += 1
                assoc = resolve_parent(attachment.get('ParentId'), index)
                if assoc is None:
                    summary.skip('no_association')
                    continue
                export.write(assoc.object_type, manifest_entry(
                    assoc, attachment.get('Id', ''), config.attachments_dir, attachment.get('Name', '')))
        else:
            logging.warning(f"File not found: {attachments_path}. Skipping attachments.")

        if versions_path.is_file():
            logging.info("Processing ContentVersions...")
            links = load_document_links(config.export_file(CONTENT_DOCUMENT_LINK_CSV))
            for version in read_csv_rows(versions_path):
                if version.get('IsLatest') != '1' or version.get('FileType') == 'SNOTE':
                    continue
                summary.processed += 1
                associations = resolve_links(links.get(version.get('ContentDocumentId', ''), []), index)
                if not associations:
                    summary.skip('no_association')
                    continue
                for assoc in associations:
                    export.write(assoc.object_type, manifest_entry(
                        assoc, version.get('Id', ''), config.content_version_dir, version.get('Title', '')))
        else:
            logging.warning(f"File not found: {versions_path}. Skipping content versions.")
    finally:
        close_exports(summary, [export])

    return summary


def run_rename(name: str, directory: Path, metadata_path: Path, loader,
               max_name_length: Optional[int] = None) -> RunSummary:
    summary = RunSummary(name)
    if not Path(metadata_path).is_file():
        raise PrimaryInputMissing(metadata_path)
    if not Path(directory).is_dir():
        raise PrimaryInputMissing(directory, 'directory not found')

    metadata = loader(metadata_path)
    if not metadata:
        raise PrimaryInputMissing(metadata_path, 'no usable metadata rows')

    result = rename_files(directory, metadata, max_name_length)
    summary.processed = sum(result.as_dict().values())
    summary.counts['renamed'] = result.renamed
    for reason in ('already_processed', 'unknown', 'no_extension'):
        count = getattr(result, reason)
        if count:
            summary.skipped[reason] = count
    if result.failed:
        summary.counts['failed'] = result.failed
    if result.no_extension_ids:
        sample = ', '.join(result.no_extension_ids[:20])
        summary.notes.append(f"No extension could be determined for {len(result.no_extension_ids)} file(s): {sample}")
    return summary


def run_rename_attachments(config: MigrationConfig) -> RunSummary:
    return run_rename('rename attachments', config.attachments_dir, config.export_file(ATTACHMENT_CSV),
                      load_attachment_metadata)


def run_rename_content_versions(config: MigrationConfig) -> RunSummary:
    return run_rename('rename content versions', config.content_version_dir,
                      config.export_file(CONTENT_VERSION_CSV), load_content_version_metadata,
                      max_name_length=MAX_FILENAME_BODY_LENGTH)
