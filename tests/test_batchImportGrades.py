# tests/test_batchImportGrades.py

import base64
from decimal import Decimal
from io import BytesIO

import pandas as pd
import pytest
from botocore.exceptions import ClientError

import batchImportGrades
from batchImportGrades import handle_request, parse_rows
from conftest import read_body

HEADER = 'studentId,subject,grade,semester'


def _encode(raw):
    return base64.b64encode(raw).decode('ascii')


def _csv(*lines):
    return '\n'.join((HEADER,) + lines).encode('utf-8')


@pytest.fixture
def math_teacher(seed_teacher):
    return seed_teacher('t001', ['Math'])


@pytest.fixture
def upload(grade_table, allow_all, make_event):
    def _upload(raw=None, file_type='csv', teacher_id='t001', file_data=None,
                authenticator=None, token=None):
        body = {
            'action': 'uploadGrades',
            'teacherId': teacher_id,
            'fileData': file_data if file_data is not None else _encode(raw),
            'fileType': file_type
        }
        event = make_event('POST', '/grades/upload', body=body, token=token)
        return handle_request(event, grade_table, authenticator or allow_all)
    return _upload


# === request validation ===


def test_missing_teacher_id(upload):
    assert upload(_csv('s001,Math,90,2024-1'), teacher_id='')['statusCode'] == 400


def test_missing_file_data(upload):
    assert upload(file_data='')['statusCode'] == 400


def test_unsupported_file_type(upload):
    assert upload(b'{}', file_type='json')['statusCode'] == 400


def test_invalid_base64(upload):
    assert upload(file_data='%%% not base64 %%%')['statusCode'] == 400


def test_unparsable_spreadsheet(upload, math_teacher):
    response = upload(b'definitely not a workbook', file_type='xlsx')
    assert response['statusCode'] == 400
    assert 'detail' in read_body(response)


def test_token_must_match_teacher(upload, jwt_auth, make_token, math_teacher):
    response = upload(_csv('s001,Math,90,2024-1'), authenticator=jwt_auth,
                      token=make_token('t002', 'teacher'))
    assert response['statusCode'] == 403


# === row handling ===


def test_mixed_rows(upload, grade_table, math_teacher):
    raw = _csv(
        's001,Math,90,2024-1',
        's002,Math,75.5,2024-1',
        ',Math,80,2024-1',
        's003,Math,150,2024-1',
        's004,Math,60,2024-1',
    )
    response = upload(raw)
    body = read_body(response)

    assert response['statusCode'] == 200
    assert body['successCount'] == 3
    assert body['failureCount'] == 2
    rows = [failure['row'] for failure in body['failures']]
    assert {'studentId': '', 'subject': 'Math', 'grade': '80', 'semester': '2024-1'} in rows
    assert {'studentId': 's003', 'subject': 'Math', 'grade': '150', 'semester': '2024-1'} in rows

    item = grade_table.get_item('STUDENT#s002', 'GRADE#Math#2024-1')
    assert item['grade'] == Decimal('75.5')
    assert item['teacherId'] == 't001'


def test_upload_uses_single_update_key_scheme(upload, grade_table, math_teacher):
    upload(_csv('s001,Math,90,2024-1'))
    assert grade_table.get_item('STUDENT#s001', 'GRADE#Math#2024-1') is not None
    assert grade_table.get_item('STUDENT#s001', 'GRADE#Math') is None


def test_unowned_subject_rows_fail(upload, grade_table, math_teacher):
    body = read_body(upload(_csv('s001,Math,90,2024-1', 's001,History,70,2024-1')))
    assert body['successCount'] == 1
    assert body['failures'][0]['row']['subject'] == 'History'
    assert grade_table.get_item('STUDENT#s001', 'GRADE#History#2024-1') is None


def test_many_rows_span_batches(upload, grade_table, math_teacher):
    lines = [f's{i:03d},Math,{i % 101},2024-1' for i in range(60)]
    body = read_body(upload(_csv(*lines)))
    assert body['successCount'] == 60
    assert body['failureCount'] == 0
    assert len(grade_table.scan()) == 61


def test_over_precise_grade_fails_only_its_row(upload, grade_table, math_teacher):
    lines = [f's{i:03d},Math,80,2024-1' for i in range(25)]
    lines.append('s999,Math,50.000000000000000000000000000000000000000001,2024-1')
    response = upload(_csv(*lines))
    body = read_body(response)

    assert response['statusCode'] == 200
    assert body['successCount'] == 25
    assert body['failureCount'] == 1
    assert body['failures'][0]['row']['studentId'] == 's999'
    assert body['failures'][0]['error'] == '成绩无效'
    assert grade_table.get_item('STUDENT#s999', 'GRADE#Math#2024-1') is None


def test_repeated_row_last_write_wins(upload, grade_table, math_teacher):
    body = read_body(upload(_csv('s001,Math,60,2024-1', 's001,Math,85,2024-1')))
    assert body['successCount'] == 2
    assert grade_table.get_item('STUDENT#s001', 'GRADE#Math#2024-1')['grade'] == Decimal('85')


def test_failed_batch_does_not_stop_later_batches(upload, grade_table, math_teacher, monkeypatch):
    real_batch_put = grade_table.batch_put
    calls = []

    def flaky_batch_put(items):
        calls.append(len(items))
        if len(calls) == 1:
            raise ClientError({'Error': {'Code': 'InternalServerError', 'Message': 'boom'}},
                              'BatchWriteItem')
        return real_batch_put(items)

    monkeypatch.setattr(grade_table, 'batch_put', flaky_batch_put)
    lines = [f's{i:03d},Math,80,2024-1' for i in range(30)]
    body = read_body(upload(_csv(*lines)))

    assert calls == [25, 5]
    assert body['successCount'] == 5
    assert body['failureCount'] == 25
    assert all(failure['error'] == 'boom' for failure in body['failures'])
    assert body['failures'][0]['row']['studentId'] == 's000'


def test_unprocessed_items_reported(upload, grade_table, math_teacher, monkeypatch):
    real_batch_put = grade_table.batch_put

    def partial_batch_put(items):
        real_batch_put(items[1:])
        return items[:1]

    monkeypatch.setattr(grade_table, 'batch_put', partial_batch_put)
    body = read_body(upload(_csv('s001,Math,90,2024-1', 's002,Math,91,2024-1')))
    assert body['successCount'] == 1
    assert body['failures'][0]['row']['studentId'] == 's001'


def test_xlsx_upload(upload, grade_table, math_teacher):
    df = pd.DataFrame([
        {'studentId': 's001', 'subject': 'Math', 'grade': 88, 'semester': '2024-1'},
        {'studentId': 's002', 'subject': 'Math', 'grade': None, 'semester': '2024-1'},
    ])
    buffer = BytesIO()
    df.to_excel(buffer, index=False, engine='openpyxl')

    body = read_body(upload(buffer.getvalue(), file_type='xlsx'))
    assert body['successCount'] == 1
    assert body['failureCount'] == 1
    assert grade_table.get_item('STUDENT#s001', 'GRADE#Math#2024-1')['grade'] == Decimal('88')


def test_parse_rows_strips_headers_and_bom():
    raw = '\ufeff studentId , subject,grade,semester\ns001,Math,90,2024-1\n'.encode('utf-8')
    assert parse_rows(raw, 'csv') == [
        {'studentId': 's001', 'subject': 'Math', 'grade': '90', 'semester': '2024-1'}
    ]


# === internal errors ===


def _explode(table, teacher_id, rows):
    raise RuntimeError('store exploded')


def test_internal_error_hides_detail(upload, math_teacher, monkeypatch):
    monkeypatch.delenv('DEBUG', raising=False)
    monkeypatch.delenv('APP_ENV', raising=False)
    monkeypatch.setattr(batchImportGrades, 'import_rows', _explode)

    response = upload(_csv('s001,Math,90,2024-1'))
    body = read_body(response)
    assert response['statusCode'] == 500
    assert 'stack' not in body
    assert 'detail' not in body


def test_internal_error_detail_in_debug(upload, math_teacher, monkeypatch):
    monkeypatch.setenv('DEBUG', 'true')
    monkeypatch.setattr(batchImportGrades, 'import_rows', _explode)

    body = read_body(upload(_csv('s001,Math,90,2024-1')))
    assert body['detail'] == 'store exploded'
    assert 'RuntimeError' in body['stack']


def test_missing_excel_engine_is_server_error(upload, math_teacher, monkeypatch):
    def _no_engine(raw, file_type):
        raise ImportError("Missing optional dependency 'xlrd'")

    monkeypatch.setattr(batchImportGrades, 'parse_rows', _no_engine)
    response = upload(b'legacy workbook', file_type='xls')
    assert response['statusCode'] == 500
