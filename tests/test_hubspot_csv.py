import csv
import io
import json

import pytest

from hubspot_csv import (ChunkedExportWriter, ExportWriteError, PartitionedExport, RowProjector, build_csv_row,
                         constant, end_time, field, first_of, format_csv_field, iso_timestamp, parse_iso,
                         read_csv_rows, record_id, titled_body)
from sf_associations import Association

ASSOC = Association('contacts', '222', 'WhoId', '003A')


def read_back(path):
    with open(path, newline='', encoding='utf-8') as f:
        return list(csv.reader(f))


def test_format_csv_field_quotes_only_when_needed():
    assert format_csv_field('plain') == 'plain'
    assert format_csv_field(None) == ''
    assert format_csv_field('a,b') == '"a,b"'
    assert format_csv_field('say "hi"') == '"say ""hi"""'
    assert format_csv_field('line\nbreak') == '"line\nbreak"'
    assert format_csv_field('cr\rhere') == '"cr\rhere"'


def test_build_csv_row_uses_newline_separator():
    assert build_csv_row(['a', None, 'x\ry', 'q"', 3]) == 'a,,"x\ry","q""",3\n'
    assert build_csv_row(['Record ID', 'Title']) == 'Record ID,Title\n'


def test_escaping_round_trip_through_csv_reader():
    value = 'Hello, "world"\nsecond line'
    line = build_csv_row(['222', value, ''])

    parsed = next(csv.reader(io.StringIO(line)))

    assert parsed == ['222', value, '']


def test_read_csv_rows_is_lazy_and_strips_bom(tmp_path):
    path = tmp_path / 'Event.csv'
    path.write_text('\ufeffId,Subject\n1,"a, b"\n', encoding='utf-8')

    rows = read_csv_rows(path)
    assert next(rows) == {'Id': '1', 'Subject': 'a, b'}

    missing = read_csv_rows(tmp_path / 'nope.csv')
    with pytest.raises(FileNotFoundError):
        next(missing)


def test_projector_fills_every_column():
    projector = RowProjector([
        ('Record ID', record_id()),
        ('Title', field('Subject')),
        ('Direction', constant('Outbound')),
        ('Date', first_of('ActivityDateTime', 'CreatedDate')),
        ('Missing', field('NotThere')),
    ])

    row = projector.project({'Subject': 'Call', 'CreatedDate': '2024-01-01'}, ASSOC)

    assert projector.header == ['Record ID', 'Title', 'Direction', 'Date', 'Missing']
    assert row == {'Record ID': '222', 'Title': 'Call', 'Direction': 'Outbound',
                   'Date': '2024-01-01', 'Missing': ''}


def test_meeting_end_time_adds_duration():
    start = iso_timestamp('ActivityDateTime')
    end = end_time(['ActivityDateTime'], 'DurationInMinutes')
    record = {'ActivityDateTime': '2024-03-01T14:30:00.000Z', 'DurationInMinutes': '45'}

    assert start(record, ASSOC) == '2024-03-01T14:30:00.000Z'
    assert end(record, ASSOC) == '2024-03-01T15:15:00.000Z'


def test_end_time_handles_offsets_and_bad_input():
    end = end_time(['ActivityDateTime'], 'DurationInMinutes')

    assert end({'ActivityDateTime': '2024-03-01T10:00:00.000+0200', 'DurationInMinutes': ''}, ASSOC) == \
        '2024-03-01T08:00:00.000Z'
    assert end({'ActivityDateTime': 'not a date', 'DurationInMinutes': '30'}, ASSOC) == ''
    assert end({}, ASSOC) == ''


def test_parse_iso_date_only_is_utc_midnight():
    dt = parse_iso('2024-05-06')
    assert dt.isoformat() == '2024-05-06T00:00:00+00:00'


def test_titled_body():
    source = titled_body('Title', 'Body')
    assert source({'Title': 'Hi', 'Body': 'text'}, ASSOC) == 'Title: Hi\n\ntext'
    assert source({'Title': '', 'Body': 'text'}, ASSOC) == 'text'


def test_rollover_happens_before_limit_is_crossed(tmp_path):
    # 39 chars + newline = 40-byte header, 24 chars + newline = 25-byte rows
    writer = ChunkedExportWriter(tmp_path, 'ds', 'contacts', ['H' * 39], max_chunk_bytes=100)
    for i in range(4):
        writer.write({'H' * 39: str(i) * 24})
    writer.close()

    assert writer.chunk_index == 2
    first, second = writer.chunk_paths
    assert first.name == 'ds_contacts_chunk1.csv'
    assert second.name == 'ds_contacts_chunk2.csv'
    # 40 + 25 + 25 = 90; a third row would make 115 > 100
    assert first.stat().st_size == 90
    assert second.stat().st_size == 90
    assert read_back(first) == [['H' * 39], ['0' * 24], ['1' * 24]]
    assert read_back(second) == [['H' * 39], ['2' * 24], ['3' * 24]]


def test_row_that_exactly_fills_chunk_stays(tmp_path):
    writer = ChunkedExportWriter(tmp_path, 'ds', 'deals', ['H' * 39], max_chunk_bytes=90)
    writer.write({'H' * 39: 'a' * 24})
    writer.write({'H' * 39: 'b' * 24})
    writer.close()

    assert writer.chunk_index == 1
    assert writer.chunk_paths[0].stat().st_size == 90


def test_oversized_row_is_written_alone(tmp_path):
    writer = ChunkedExportWriter(tmp_path, 'ds', 'companies', ['Body'], max_chunk_bytes=50)
    writer.write({'Body': 'small'})
    writer.write({'Body': 'x' * 200})
    writer.write({'Body': 'after'})
    writer.close()

    assert writer.chunk_index == 3
    assert read_back(writer.chunk_paths[1]) == [['Body'], ['x' * 200]]
    for path in (writer.chunk_paths[0], writer.chunk_paths[2]):
        assert path.stat().st_size <= 50


def test_chunk_sizes_count_utf8_bytes(tmp_path):
    writer = ChunkedExportWriter(tmp_path, 'ds', 'contacts', ['Body'], max_chunk_bytes=40)
    for _ in range(10):
        writer.write({'Body': 'é' * 5})  # 10 bytes + newline
    writer.close()

    for path in writer.chunk_paths:
        assert path.stat().st_size <= 40
    assert sum(len(read_back(p)) - 1 for p in writer.chunk_paths) == 10


def test_no_file_until_first_row(tmp_path):
    writer = ChunkedExportWriter(tmp_path / 'out', 'ds', 'other', ['Body'], max_chunk_bytes=100)
    writer.close()
    assert writer.chunk_paths == []
    assert not (tmp_path / 'out').exists()


def test_json_chunks_are_valid_arrays_within_limit(tmp_path):
    writer = ChunkedExportWriter(tmp_path, 'manifest', 'deals', ['id', 'name'], max_chunk_bytes=80, fmt='json')
    rows = [{'id': str(i), 'name': f"file {i}.pdf"} for i in range(6)]
    for row in rows:
        writer.write(row)
    writer.close()

    assert writer.chunk_index > 1
    loaded = []
    for path in writer.chunk_paths:
        assert path.suffix == '.json'
        assert path.stat().st_size <= 80
        with open(path, encoding='utf-8') as f:
            loaded.extend(json.load(f))
    assert loaded == rows


class BrokenHandle:
    def write(self, data):
        raise OSError('disk full')

    def close(self):
        pass


def test_write_failure_marks_writer_failed(tmp_path, monkeypatch):
    writer = ChunkedExportWriter(tmp_path, 'ds', 'contacts', ['Body'], max_chunk_bytes=100)
    writer.write({'Body': 'ok'})

    real_handle = writer._handle
    monkeypatch.setattr(writer, '_handle', BrokenHandle())
    with pytest.raises(ExportWriteError):
        writer.write({'Body': 'boom'})
    assert writer.failed
    with pytest.raises(ExportWriteError):
        writer.write({'Body': 'again'})
    real_handle.close()


def test_partition_failure_does_not_stop_other_partitions(tmp_path):
    export = PartitionedExport(tmp_path, 'ds', ['Body'], max_chunk_bytes=1000)
    # A directory where the chunk file should go makes open() fail
    (tmp_path / 'ds_companies_chunk1.csv').mkdir()

    assert export.write('contacts', {'Body': 'a'}) is True
    assert export.write('companies', {'Body': 'b'}) is False
    assert export.write('companies', {'Body': 'c'}) is False
    assert export.write('contacts', {'Body': 'd'}) is True
    export.close()

    stats = {s['partition']: s for s in export.stats()}
    assert export.failed
    assert stats['contacts']['rows_written'] == 2
    assert stats['contacts']['error'] == ''
    assert stats['companies']['dropped'] == 2
    assert 'ds_companies_chunk1.csv' in stats['companies']['error']
    assert read_back(tmp_path / 'ds_contacts_chunk1.csv') == [['Body'], ['a'], ['d']]


def test_rerun_overwrites_chunks(tmp_path):
    for body in ('first', 'second'):
        with PartitionedExport(tmp_path, 'ds', ['Body'], max_chunk_bytes=1000) as export:
            export.write('contacts', {'Body': body})

    assert read_back(tmp_path / 'ds_contacts_chunk1.csv') == [['Body'], ['second']]


def test_invalid_writer_settings(tmp_path):
    with pytest.raises(ValueError):
        ChunkedExportWriter(tmp_path, 'ds', 'contacts', ['Body'], max_chunk_bytes=0)
    with pytest.raises(ValueError):
        ChunkedExportWriter(tmp_path, 'ds', 'contacts', ['Body'], max_chunk_bytes=10, fmt='xml')
