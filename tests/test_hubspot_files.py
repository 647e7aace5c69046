import json

import pytest
import requests

import hubspot_files
from hubspot_csv import PartitionedExport
from hubspot_files import attach_file, make_request, manifest_paths, run_import_files, upload_file
from migration_config import MigrationConfig
from sf_pipelines import MANIFEST_COLUMNS, MANIFEST_DATASET

FILE_ID = '00P000000000001AAA'


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.headers = headers or {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(hubspot_files.time, 'sleep', lambda seconds: None)


class CallLog(list):
    pass


@pytest.fixture
def api(monkeypatch):
    log = CallLog()
    log.responses = []

    def fake_request(method, url, headers=None, **kwargs):
        log.append({'method': method, 'url': url, 'headers': headers, **kwargs})
        return log.responses.pop(0)

    monkeypatch.setattr(hubspot_files.requests, 'request', fake_request)
    return log


def test_make_request_retries_rate_limit(api):
    api.responses.extend([FakeResponse(429, headers={'Retry-After': '1'}), FakeResponse(200, {'ok': True})])

    response = make_request('GET', 'https://example.test', 'token')

    assert response.json() == {'ok': True}
    assert len(api) == 2
    assert api[0]['headers']['Authorization'] == 'Bearer token'


def test_make_request_does_not_retry_client_errors(api):
    api.responses.append(FakeResponse(400))
    with pytest.raises(requests.exceptions.HTTPError):
        make_request('GET', 'https://example.test', 'token')
    assert len(api) == 1


def test_upload_file(api, tmp_path):
    path = tmp_path / f"{FILE_ID} -- contract.pdf"
    path.write_bytes(b'%PDF-1.4')
    api.responses.append(FakeResponse(201, {'id': '9001'}))

    assert upload_file('token', path) == '9001'
    options = json.loads(api[0]['data']['options'])
    assert options == {'access': 'PRIVATE', 'folderPath': '/salesforce_import', 'overwrite': False}
    assert api[0]['url'].endswith('/files/v3/files')


def test_upload_failure_returns_none(api, tmp_path):
    path = tmp_path / 'f.pdf'
    path.write_bytes(b'x')
    api.responses.append(FakeResponse(403))
    assert upload_file('token', path) is None


def test_attach_file_builds_note_engagement(api):
    api.responses.append(FakeResponse(200, {}))
    entry = {'object_type': 'deals', 'hubspot_id': '444', 'original_filename': 'deck.pdf'}

    assert attach_file('token', entry, '9001') is True
    payload = api[0]['json']
    assert payload['engagement'] == {'active': True, 'type': 'NOTE'}
    assert payload['associations'] == {'dealIds': [444]}
    assert payload['attachments'] == [{'id': 9001}]
    assert 'deck.pdf' in payload['metadata']['body']


def test_attach_file_rejects_unsupported_object_type(api):
    assert attach_file('token', {'object_type': 'other', 'hubspot_id': '1'}, '2') is False
    assert api == []


def write_manifest(output_dir, entries, max_chunk_bytes=10_000):
    with PartitionedExport(output_dir, MANIFEST_DATASET, MANIFEST_COLUMNS, max_chunk_bytes, fmt='json') as export:
        for entry in entries:
            export.write(entry['object_type'], entry)


def test_manifest_paths_in_chunk_order(tmp_path):
    for n in (10, 2, 1):
        (tmp_path / f"{MANIFEST_DATASET}_contacts_chunk{n}.json").write_text('[]')
    names = [p.name for p in manifest_paths(tmp_path, 'contacts')]
    assert names == [f"{MANIFEST_DATASET}_contacts_chunk{n}.json" for n in (1, 2, 10)]


def test_run_import_files(api, tmp_path):
    files_dir = tmp_path / 'Attachments'
    files_dir.mkdir()
    (files_dir / f"{FILE_ID} -- contract.pdf").write_bytes(b'%PDF-1.4')
    config = MigrationConfig(output_dir=tmp_path / 'out', api_delay=0)
    write_manifest(config.output_dir, [
        {'object_type': 'companies', 'hubspot_id': '111', 'original_sf_id': '001A',
         'salesforce_file_id': FILE_ID, 'file_location': files_dir.as_posix(), 'original_filename': 'contract.pdf'},
        {'object_type': 'companies', 'hubspot_id': '111', 'original_sf_id': '001A',
         'salesforce_file_id': '00P000000000009AAA', 'file_location': files_dir.as_posix(),
         'original_filename': 'missing.pdf'},
    ])
    api.responses.extend([FakeResponse(201, {'id': '9001'}), FakeResponse(200, {})])

    summary = run_import_files(config, 'token')

    assert summary.processed == 2
    assert summary.counts['uploaded'] == 1
    assert summary.counts['attached'] == 1
    assert summary.skipped == {'file_not_found': 1}
    assert api[1]['json']['associations'] == {'companyIds': [111]}
    assert not summary.failed


def test_run_import_files_dry_run_sends_nothing(api, tmp_path):
    files_dir = tmp_path / 'Attachments'
    files_dir.mkdir()
    (files_dir / f"{FILE_ID} -- contract.pdf").write_bytes(b'%PDF-1.4')
    config = MigrationConfig(output_dir=tmp_path / 'out', dry_run=True)
    write_manifest(config.output_dir, [
        {'object_type': 'contacts', 'hubspot_id': '222', 'original_sf_id': '003A',
         'salesforce_file_id': FILE_ID, 'file_location': files_dir.as_posix(), 'original_filename': 'contract.pdf'},
    ])

    summary = run_import_files(config, None)

    assert summary.counts['would_upload'] == 1
    assert api == []


def test_run_import_files_skips_incomplete_manifest_chunk(api, tmp_path):
    files_dir = tmp_path / 'Attachments'
    files_dir.mkdir()
    (files_dir / f"{FILE_ID} -- contract.pdf").write_bytes(b'%PDF-1.4')
    config = MigrationConfig(output_dir=tmp_path / 'out', dry_run=True)
    write_manifest(config.output_dir, [
        {'object_type': 'contacts', 'hubspot_id': '222', 'original_sf_id': '003A',
         'salesforce_file_id': FILE_ID, 'file_location': files_dir.as_posix(), 'original_filename': 'contract.pdf'},
    ])
    # Left behind by an aborted run
    (config.output_dir / f"{MANIFEST_DATASET}_contacts_chunk2.json").write_text('[\n{"object_type": "contacts"',
                                                                             encoding='utf-8')

    summary = run_import_files(config, None)

    assert summary.skipped == {'unreadable_manifest': 1}
    assert summary.processed == 1
    assert summary.counts['would_upload'] == 1


def test_run_import_files_pauses_after_every_entry(api, tmp_path, monkeypatch):
    pauses = []
    monkeypatch.setattr(hubspot_files.time, 'sleep', pauses.append)
    files_dir = tmp_path / 'Attachments'
    files_dir.mkdir()
    (files_dir / f"{FILE_ID} -- contract.pdf").write_bytes(b'%PDF-1.4')
    config = MigrationConfig(output_dir=tmp_path / 'out', api_delay=0.5)
    write_manifest(config.output_dir, [
        {'object_type': 'deals', 'hubspot_id': '444', 'original_sf_id': '006A',
         'salesforce_file_id': FILE_ID, 'file_location': files_dir.as_posix(), 'original_filename': 'contract.pdf'},
        {'object_type': 'deals', 'hubspot_id': '444', 'original_sf_id': '006A',
         'salesforce_file_id': '00P000000000009AAA', 'file_location': files_dir.as_posix(),
         'original_filename': 'missing.pdf'},
    ])
    api.responses.append(FakeResponse(403))

    summary = run_import_files(config, 'token')

    assert summary.counts['failed'] == 1
    assert summary.skipped == {'file_not_found': 1}
    assert pauses == [0.5, 0.5]
