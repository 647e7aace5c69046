"""
Upload migrated Salesforce files to HubSpot and attach them to records.

Reads the JSON manifests written by the file manifest pipeline, finds each
renamed file on disk by its Salesforce ID prefix, uploads it to the HubSpot
File Manager and attaches it to the mapped record through a NOTE engagement.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from file_matcher import find_file_by_id
from migration_config import MigrationConfig
from sf_identity import COMPANIES, CONTACTS, DEALS
from sf_pipelines import MANIFEST_DATASET, RunSummary

# HubSpot API base URL
BASE_URL = "https://api.hubapi.com"

# User-Agent for requests
USER_AGENT = "Salesforce-HubSpot-Migration/1.0"

# All migrated files land in this File Manager folder
UPLOAD_FOLDER = '/salesforce_import'

MAX_RETRIES = 8

# Engagement association key per object type
ASSOCIATION_KEYS = {
    CONTACTS: 'contactIds',
    COMPANIES: 'companyIds',
    DEALS: 'dealIds',
}


def make_request(method: str, url: str, token: str, **kwargs) -> requests.Response:
    """
    Make HTTP request to HubSpot API with retry logic.

    Handles:
    - 429 rate limits (with Retry-After header support)
    - 5xx server errors (with exponential backoff)
    - Max retries: ~8 per request

    Returns the response object.
    """
    headers = kwargs.pop('headers', {})
    headers['Authorization'] = f'Bearer {token}'
    headers['User-Agent'] = USER_AGENT

    retry_count = 0

    while retry_count < MAX_RETRIES:
        try:
            response = requests.request(method, url, headers=headers, **kwargs)

            if response.status_code in (200, 201):
                return response

            if response.status_code == 429:
                retry_after = response.headers.get('Retry-After')
                if retry_after:
                    try:
                        wait_seconds = int(retry_after)
                    except ValueError:
                        wait_seconds = 60
                else:
                    wait_seconds = min(2 ** retry_count, 60)

                logging.warning(f"Rate limited (429). Waiting {wait_seconds}s before retry {retry_count + 1}/{MAX_RETRIES}...")
                time.sleep(wait_seconds)
                retry_count += 1
                continue

            if 500 <= response.status_code < 600:
                wait_seconds = min(2 ** retry_count, 60)
                logging.warning(f"Server error ({response.status_code}). Retrying in {wait_seconds}s ({retry_count + 1}/{MAX_RETRIES})...")
                time.sleep(wait_seconds)
                retry_count += 1
                continue

            # Other errors - don't retry
            response.raise_for_status()
            return response

        except requests.exceptions.HTTPError:
            raise
        except requests.exceptions.RequestException as e:
            if retry_count < MAX_RETRIES - 1:
                wait_seconds = min(2 ** retry_count, 60)
                logging.warning(f"Request error: {e}. Retrying in {wait_seconds}s ({retry_count + 1}/{MAX_RETRIES})...")
                time.sleep(wait_seconds)
                retry_count += 1
                continue
            else:
                raise

    raise requests.exceptions.RetryError(f"Max retries ({MAX_RETRIES}) exceeded for {url}")


def upload_file(token: str, file_path: Path) -> Optional[str]:
    """
    Upload a single file to the HubSpot File Manager.

    Returns the HubSpot file ID, or None on failure.
    """
    options = {
        'access': 'PRIVATE',
        'folderPath': UPLOAD_FOLDER,
        'overwrite': False,
    }
    try:
        with open(file_path, 'rb') as f:
            response = make_request('POST', f"{BASE_URL}/files/v3/files", token,
                                    files={'file': (file_path.name, f)},
                                    data={'options': json.dumps(options)})
        file_id = response.json().get('id')
    except (requests.exceptions.RequestException, OSError, ValueError) as e:
        logging.error(f"Failed to upload \"{file_path.name}\": {e}")
        return None

    if not file_id:
        logging.error(f"Upload of \"{file_path.name}\" returned no file ID")
        return None

    logging.info(f"Uploaded \"{file_path.name}\". HS File ID: {file_id}")
    return str(file_id)


def attach_file(token: str, entry: Dict[str, Any], hubspot_file_id: str) -> bool:
    """Attach an uploaded file to a CRM record by creating a NOTE engagement."""
    association_key = ASSOCIATION_KEYS.get(entry['object_type'])
    if association_key is None:
        logging.error(f"Cannot attach files to object type '{entry['object_type']}'")
        return False

    payload = {
        'engagement': {
            'active': True,
            'type': 'NOTE',
        },
        'associations': {
            association_key: [int(entry['hubspot_id'])] if str(entry['hubspot_id']).isdigit()
            else [entry['hubspot_id']],
        },
        'attachments': [{'id': int(hubspot_file_id) if hubspot_file_id.isdigit() else hubspot_file_id}],
        'metadata': {
            'body': f"Attached file migrated from Salesforce: {entry.get('original_filename', '')}",
        },
    }

    try:
        make_request('POST', f"{BASE_URL}/engagements/v1/engagements", token, json=payload)
    except requests.exceptions.RequestException as e:
        logging.error(f"Failed to attach file to {entry['object_type']} {entry['hubspot_id']}: {e}")
        return False

    logging.info(f"Attached file to {entry['object_type']} ID {entry['hubspot_id']}")
    return True


def manifest_paths(manifest_dir: Path, object_type: str) -> List[Path]:
    """Manifest chunks for one object type, in chunk order."""
    pattern = f"{MANIFEST_DATASET}_{object_type}_chunk*.json"
    paths = list(Path(manifest_dir).glob(pattern))

    def chunk_number(path: Path) -> int:
        suffix = path.stem.rsplit('_chunk', 1)[-1]
        return int(suffix) if suffix.isdigit() else 0

    return sorted(paths, key=chunk_number)


def load_manifest(path: Path) -> List[Dict[str, Any]]:
    """Entries of one manifest chunk; raises ValueError when the chunk is not a complete JSON array."""
    with open(path, 'r', encoding='utf-8') as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        raise ValueError(f"expected a JSON array, got {type(entries).__name__}")
    return entries


def import_entry(config: MigrationConfig, token: Optional[str], object_type: str, entry: Dict[str, Any],
                 summary: RunSummary):
    sf_file_id = entry.get('salesforce_file_id', '')
    file_path = find_file_by_id(entry.get('file_location', ''), sf_file_id)
    if file_path is None:
        logging.warning(f"Could not find a renamed file for ID {sf_file_id} in "
                        f"{entry.get('file_location')}. Skipping.")
        summary.skip('file_not_found')
        return

    if config.dry_run:
        logging.info(f"[DRY RUN] Would upload {file_path.name} and attach to {object_type} ID {entry['hubspot_id']}")
        summary.counts['would_upload'] += 1
        return

    hubspot_file_id = upload_file(token, file_path)
    if hubspot_file_id is None:
        summary.counts['failed'] += 1
        return
    summary.counts['uploaded'] += 1

    if attach_file(token, entry, hubspot_file_id):
        summary.counts['attached'] += 1
    else:
        summary.counts['failed'] += 1


def run_import_files(config: MigrationConfig, token: Optional[str]) -> RunSummary:
    """
    Upload and attach every file listed in the manifests.

    With config.dry_run set nothing is sent to HubSpot; the run only reports
    which files were found. A manifest chunk that cannot be parsed, such as
    the last chunk of an aborted run, is skipped and counted.
    """
    summary = RunSummary('import files')

    if config.dry_run:
        print("\n" + "=" * 48)
        print("              - - - DRY RUN - - -")
        print("   No files will be uploaded or attached.")
        print("=" * 48 + "\n")

    for object_type in ASSOCIATION_KEYS:
        paths = manifest_paths(config.output_dir, object_type)
        if not paths:
            logging.info(f"No manifest found for {object_type} in {config.output_dir}. Skipping.")
            continue

        for path in paths:
            try:
                entries = load_manifest(path)
            except (OSError, ValueError) as e:
                logging.warning(f"Could not read manifest {path.name}: {e}. Skipping it.")
                summary.skip('unreadable_manifest')
                continue

            logging.info(f"Processing {len(entries)} files for {object_type} from {path.name}...")
            for entry in entries:
                summary.processed += 1
                try:
                    import_entry(config, token, object_type, entry, summary)
                finally:
                    time.sleep(config.api_delay)

    return summary
