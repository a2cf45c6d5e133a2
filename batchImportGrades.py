import base64
import binascii
from io import BytesIO

import pandas as pd
from botocore.exceptions import ClientError

from apiResponse import (
    AccessDeniedError,
    InputValidationError,
    clean_str,
    cors_headers,
    get_logger,
    parse_json_body,
    respond,
)
from authProvider import authenticator_from_environment
from gradeTable import (
    BATCH_WRITE_LIMIT,
    METADATA_SK,
    build_grade_item,
    get_default_table,
    parse_grade,
    user_pk,
)

logger = get_logger(__name__)

HEADERS = cors_headers('POST,OPTIONS', allow_headers='Content-Type,Authorization')

SUPPORTED_FILE_TYPES = ('csv', 'xlsx', 'xls')
REQUIRED_COLUMNS = ('studentId', 'subject', 'grade', 'semester')


def lambda_handler(event, context):
    return handle_request(event, get_default_table(), authenticator_from_environment())


def handle_request(event, table, authenticator):
    def route():
        identity = authenticator.authenticate(event)
        body = parse_json_body(event)

        teacher_id = clean_str(body.get('teacherId'))
        file_data = body.get('fileData')
        file_type = clean_str(body.get('fileType')).lower()
        if not teacher_id:
            raise InputValidationError('缺少 teacherId')
        if not file_data or not isinstance(file_data, str):
            raise InputValidationError('缺少 fileData')
        if file_type not in SUPPORTED_FILE_TYPES:
            raise InputValidationError('不支持的文件类型')
        if not (identity.has_role('teacher') and identity.is_user(teacher_id)):
            raise AccessDeniedError('无权以该教师身份导入成绩')

        raw = decode_file_data(file_data)
        try:
            rows = parse_rows(raw, file_type)
        except ImportError:
            # 缺少解析引擎（如 xlrd）属于部署问题
            raise
        except Exception as e:
            logger.warning('文件解析失败 (%s): %s', file_type, e)
            raise InputValidationError('文件解析失败，可能是编码问题或格式错误', detail=str(e))

        logger.info('教师 %s 上传 %s 文件，共 %d 行', teacher_id, file_type, len(rows))
        return import_rows(table, teacher_id, rows)

    return respond(event, HEADERS, route, expose_detail=True)


def decode_file_data(file_data):
    try:
        return base64.b64decode(file_data, validate=True)
    except (binascii.Error, ValueError):
        raise InputValidationError('Base64 解码失败')


def parse_rows(raw, file_type):
    """把上传文件解析成字符串字典列表，空单元格保留为空串"""
    with BytesIO(raw) as buffer:
        if file_type == 'csv':
            df = pd.read_csv(buffer, dtype=str, na_filter=False,
                             encoding='utf-8-sig', skipinitialspace=True)
        else:
            # xls 交给 pandas 自动选择引擎（xlrd）
            engine = 'openpyxl' if file_type == 'xlsx' else None
            df = pd.read_excel(buffer, sheet_name=0, dtype=str,
                               na_filter=False, engine=engine)

    df = df.fillna('')
    df.columns = [str(col).strip() for col in df.columns]
    return df.to_dict(orient='records')


def validate_row(row, teacher_subjects):
    """校验一行数据，返回 (成绩记录字段, 错误信息)"""
    values = {col: clean_str(row.get(col)) for col in REQUIRED_COLUMNS}
    if not all(values.values()):
        return None, '缺少必要字段'

    try:
        grade = parse_grade(values['grade'])
    except ValueError:
        return None, '成绩无效'

    if values['subject'] not in teacher_subjects:
        return None, '无权录入该科目成绩'

    values['grade'] = grade
    return values, None


def _batches(entries):
    """按 25 条分批；同一批内主键重复时另起一批，保证后写覆盖先写"""
    batch, keys = [], set()
    for entry in entries:
        key = (entry[1]['PK'], entry[1]['SK'])
        if len(batch) == BATCH_WRITE_LIMIT or key in keys:
            yield batch
            batch, keys = [], set()
        batch.append(entry)
        keys.add(key)
    if batch:
        yield batch


def import_rows(table, teacher_id, rows):
    profile = table.get_item(user_pk('teacher', teacher_id), METADATA_SK) or {}
    teacher_subjects = set(profile.get('subjects') or [])

    failures = []
    valid = []
    for row in rows:
        values, error = validate_row(row, teacher_subjects)
        if error:
            failures.append({'row': row, 'error': error})
            continue
        item = build_grade_item(values['studentId'], values['subject'], values['grade'],
                                values['semester'], teacher_id)
        valid.append((row, item))

    success_count = 0
    for number, batch in enumerate(_batches(valid), start=1):
        try:
            unprocessed = table.batch_put([item for _, item in batch])
        except ClientError as e:
            message = e.response['Error'].get('Message', str(e))
            logger.error('第 %d 批写入失败: %s', number, message)
            failures.extend({'row': row, 'error': message} for row, _ in batch)
            continue

        unprocessed_keys = {(item['PK'], item['SK']) for item in unprocessed}
        for row, item in batch:
            if (item['PK'], item['SK']) in unprocessed_keys:
                failures.append({'row': row, 'error': '写入未被处理'})
            else:
                success_count += 1

    logger.info('批量导入完成：成功 %d 条，失败 %d 条', success_count, len(failures))
    return {
        'success': True,
        'successCount': success_count,
        'failureCount': len(failures),
        'failures': failures
    }
