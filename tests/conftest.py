import csv
from pathlib import Path

import pytest

from sf_identity import DEFAULT_MAPPING_SOURCES, IdentityIndex

ACCOUNT_ID = '001000000000001AAA'
CONTACT_ID = '003000000000001AAA'
LEAD_ID = '00Q000000000001AAA'
DEAL_ID = '006000000000001AAA'
UNMAPPED_CONTACT_ID = '003000000000999AAA'


def write_csv_file(path: Path, rows, fieldnames=None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if fieldnames is None:
        fieldnames = []
        for row in rows:
            for key in row:
                if key not in fieldnames:
                    fieldnames.append(key)
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
    return path


@pytest.fixture
def write_csv():
    return write_csv_file


@pytest.fixture
def maps_dir(tmp_path):
    directory = tmp_path / 'maps'
    write_csv_file(directory / 'company-mapper.csv', [
        {'SF ID': ACCOUNT_ID, 'Record ID': '111'},
    ])
    write_csv_file(directory / 'contact-mapper.csv', [
        {'SF ID': CONTACT_ID, 'SF Contact ID': '', 'SF Lead ID': '', 'Record ID': '222'},
        {'SF ID': '', 'SF Contact ID': '', 'SF Lead ID': LEAD_ID, 'Record ID': '333'},
    ])
    write_csv_file(directory / 'deal-mapper.csv', [
        {'sf_id': DEAL_ID, 'Record ID': '444'},
    ])
    return directory


@pytest.fixture
def index(maps_dir):
    return IdentityIndex.load(DEFAULT_MAPPING_SOURCES, maps_dir)
