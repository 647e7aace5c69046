"""
Match Salesforce export files on disk to their records and rename them.

The Salesforce data export stores Attachment and ContentVersion binaries in
folders where each file is named after its 18-character record ID and has no
extension. Renaming gives each file a readable name of the form

    <record id> -- <title>.<ext>

The record ID stays at the front so later steps can find a file again by ID
prefix, and the " -- " marker tells an already renamed file apart from a raw
one.
"""

import logging
import mimetypes
import os
import re
from pathlib import Path
from typing import Dict, Iterable, NamedTuple, Optional

import filetype

from hubspot_csv import read_csv_rows

JOIN_MARKER = ' -- '

SF_ID_LENGTH = 18

# Keeps renamed ContentVersion files under common filesystem name limits
MAX_FILENAME_BODY_LENGTH = 200

INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')


class FileRecord(NamedTuple):
    record_id: str
    title: str
    # Declared client-side filename; may carry the extension
    filename: str = ''
    content_type: str = ''


class RenameSummary:
    def __init__(self):
        self.renamed = 0
        self.already_processed = 0
        self.unknown = 0
        self.no_extension = 0
        self.failed = 0
        self.no_extension_ids = []

    @property
    def skipped(self) -> int:
        return self.already_processed + self.unknown + self.no_extension + self.failed

    def as_dict(self) -> Dict[str, int]:
        return {
            'renamed': self.renamed,
            'already_processed': self.already_processed,
            'unknown': self.unknown,
            'no_extension': self.no_extension,
            'failed': self.failed,
        }


def match(listing: Iterable[str], record_id: str) -> Optional[str]:
    """First filename in the listing that starts with record_id (listing order)."""
    if not record_id:
        return None
    for name in listing:
        if name.startswith(record_id):
            return name
    return None


def find_file_by_id(directory, record_id: str) -> Optional[Path]:
    """
    Find the file in a directory whose name starts with a Salesforce ID.

    Returns the full path, or None when nothing matches or the directory
    cannot be listed.
    """
    directory = Path(directory)
    try:
        listing = os.listdir(directory)
    except OSError as e:
        logging.error(f"Error reading directory {directory}: {e}")
        return None

    found = match(listing, record_id)
    return directory / found if found else None


def sanitize_filename(name: str) -> str:
    return INVALID_FILENAME_CHARS.sub('_', name)


def extension_from_filename(filename: Optional[str]) -> str:
    if not filename:
        return ''
    return os.path.splitext(filename.strip())[1].lstrip('.')


def extension_from_content_type(content_type: Optional[str]) -> str:
    if not content_type:
        return ''
    mime = content_type.split(';', 1)[0].strip().lower()
    ext = mimetypes.guess_extension(mime)
    return ext.lstrip('.') if ext else ''


def extension_from_content(file_path) -> str:
    """Sniff the extension from the file's magic bytes."""
    if file_path is None or not Path(file_path).is_file():
        return ''
    try:
        kind = filetype.guess(str(file_path))
    except OSError as e:
        logging.error(f"Error while inspecting file {file_path}: {e}")
        return ''
    if kind is None:
        return ''
    logging.info(f"File content of {Path(file_path).name} identified as '{kind.mime}'. Using extension '.{kind.extension}'.")
    return kind.extension


def infer_extension(record: FileRecord, file_path=None) -> str:
    """
    Work out a file extension: declared filename first, then content type,
    then the file's own bytes. Returns '' when no source gives one.
    """
    ext = extension_from_filename(record.filename)
    if not ext:
        ext = extension_from_content_type(record.content_type)
    if not ext:
        logging.debug(f"No extension info for [{record.record_id}], inspecting file content...")
        ext = extension_from_content(file_path)
    return ext


def build_target_name(record: FileRecord, extension: str,
                      max_name_length: Optional[int] = None) -> str:
    stem = os.path.splitext(record.title)[0] if record.title else record.record_id
    body = sanitize_filename(stem)
    if max_name_length and len(body) > max_name_length:
        body = body[:max_name_length]
    return f"{record.record_id}{JOIN_MARKER}{body}.{extension}"


def rename_files(directory, metadata: Dict[str, FileRecord],
                 max_name_length: Optional[int] = None) -> RenameSummary:
    """
    Rename raw export files in a directory to '<id> -- <title>.<ext>'.

    Files already carrying the join marker are left alone, so running this
    twice renames nothing the second time. Files whose extension cannot be
    determined are skipped and listed in the summary.

    Args:
        directory: Folder holding the exported binaries
        metadata: Record ID -> FileRecord
        max_name_length: Optional cap on the title part of the new name

    Returns:
        RenameSummary with per-outcome counts
    """
    directory = Path(directory)
    summary = RenameSummary()

    filenames = os.listdir(directory)
    logging.info(f"Found {len(filenames)} files in {directory}")

    for original in filenames:
        if JOIN_MARKER in original:
            summary.already_processed += 1
            continue

        file_id = original.strip()
        record = metadata.get(file_id)
        if record is None:
            summary.unknown += 1
            continue

        original_path = directory / original
        extension = infer_extension(record, original_path)
        if not extension:
            logging.warning(f"Skipping [{file_id}]: could not determine extension from any source")
            summary.no_extension += 1
            summary.no_extension_ids.append(file_id)
            continue

        target = directory / build_target_name(record, extension, max_name_length)
        try:
            original_path.rename(target)
            summary.renamed += 1
        except OSError as e:
            logging.error(f"Error renaming file '{original}': {e}")
            summary.failed += 1

    return summary


def load_attachment_metadata(csv_path) -> Dict[str, FileRecord]:
    """Attachment.csv: Id, Name, ContentType."""
    metadata = {}
    for row in read_csv_rows(csv_path):
        record_id = row.get('Id', '').strip()
        name = row.get('Name', '')
        if record_id and name:
            metadata[record_id] = FileRecord(record_id, name, name, row.get('ContentType', ''))
    logging.info(f"Loaded metadata for {len(metadata)} attachments from {csv_path}")
    return metadata


def load_content_version_metadata(csv_path) -> Dict[str, FileRecord]:
    """ContentVersion.csv: latest versions only, excluding enhanced notes (SNOTE)."""
    metadata = {}
    for row in read_csv_rows(csv_path):
        if row.get('IsLatest') != '1' or row.get('FileType') == 'SNOTE':
            continue
        record_id = row.get('Id', '').strip()
        if record_id:
            metadata[record_id] = FileRecord(record_id, row.get('Title', ''), row.get('PathOnClient', ''))
    logging.info(f"Loaded metadata for {len(metadata)} file versions from {csv_path}")
    return metadata
