from boto3.dynamodb.conditions import Attr

from apiResponse import (
    AccessDeniedError,
    InputValidationError,
    NotFoundError,
    clean_str,
    cors_headers,
    get_logger,
    parse_json_body,
    path_params,
    query_params,
    respond,
)
from authProvider import authenticator_from_environment
from gradeTable import (
    GRADE_PREFIX,
    METADATA_SK,
    build_grade_item,
    get_default_table,
    parse_grade,
    student_pk,
    user_pk,
)
from viewPeriod import load_view_period, safe_parse_iso_time, save_view_period

logger = get_logger(__name__)

HEADERS = cors_headers(
    'GET,PUT,POST,OPTIONS',
    allow_headers='Content-Type,Authorization,X-Amz-Date,Cache-Control,X-API-Key'
)


def lambda_handler(event, context):
    return handle_request(event, get_default_table(), authenticator_from_environment())


def resolve_teacher_id(event):
    """教师 ID 依次取自请求体、查询参数、路径参数"""
    # 1. 请求体（POST）
    if event.get('body'):
        try:
            body = parse_json_body(event)
        except InputValidationError:
            logger.warning('解析请求体失败，忽略其中的 teacherId')
        else:
            teacher_id = clean_str(body.get('teacherId'))
            if teacher_id:
                return teacher_id

    # 2. 查询参数（GET）
    teacher_id = clean_str(query_params(event).get('teacherId'))
    if teacher_id:
        return teacher_id

    # 3. 路径参数（/teachers/T001）
    return clean_str(path_params(event).get('id')) or None


def _path_teacher_id(event):
    path_id = clean_str(path_params(event).get('id'))
    if path_id:
        return path_id
    # /teachers/t001 -> t001
    parts = event.get('path', '').split('/')
    return parts[2] if len(parts) > 2 else ''


def handle_request(event, table, authenticator):
    def route():
        identity = authenticator.authenticate(event)

        teacher_id = resolve_teacher_id(event)
        if not teacher_id:
            raise AccessDeniedError('无权访问：缺少教师ID')
        if not (identity.has_role('teacher') and identity.is_user(teacher_id)):
            raise AccessDeniedError('无权以该教师身份操作')

        http_method = event.get('httpMethod')
        path = event.get('path', '')
        logger.info('教师 %s 请求 %s %s', teacher_id, http_method, path)

        if http_method == 'GET' and path.startswith('/teachers/'):
            return handle_get_subjects(event, table, teacher_id)
        if http_method == 'GET' and path == '/grades/subject':
            return handle_subject_grades(event, table, teacher_id)
        if http_method == 'GET' and path == '/view-period':
            return handle_get_view_period(table)
        if http_method == 'POST' and path == '/view-period':
            return handle_set_view_period(event, table, teacher_id)
        if http_method == 'POST' and path.startswith('/teachers/'):
            return handle_teacher_info(event, table, teacher_id)
        if http_method == 'POST' and path == '/grades/update':
            return handle_update_grade(event, table, teacher_id)

        raise NotFoundError('Not Found')

    return respond(event, HEADERS, route)


def get_teacher_profile(table, teacher_id):
    return table.get_item(user_pk('teacher', teacher_id), METADATA_SK)


def get_teacher_subjects(table, teacher_id):
    profile = get_teacher_profile(table, teacher_id) or {}
    return list(profile.get('subjects') or [])


def _require_subject(table, teacher_id, subject, message):
    if subject not in get_teacher_subjects(table, teacher_id):
        raise AccessDeniedError(message)


# GET /teachers/{id}
def handle_get_subjects(event, table, teacher_id):
    if _path_teacher_id(event) != teacher_id:
        raise AccessDeniedError('无权访问')
    return {
        'success': True,
        'teacherId': teacher_id,
        'subjects': get_teacher_subjects(table, teacher_id)
    }


# GET /grades/subject?subject=xxx
def handle_subject_grades(event, table, teacher_id):
    subject = clean_str(query_params(event).get('subject'))
    if not subject:
        raise InputValidationError('缺少 subject')
    _require_subject(table, teacher_id, subject, '无权限查看该科目成绩')

    items = table.scan(
        Attr('SK').begins_with(GRADE_PREFIX) & Attr('subject').eq(subject)
    )

    # 一次批量读取补全学生姓名
    student_ids = sorted({item.get('studentId') for item in items if item.get('studentId')})
    names = {}
    for meta in table.batch_get((student_pk(sid), METADATA_SK) for sid in student_ids):
        names[meta['PK'].split('#', 1)[1]] = meta.get('name')

    grades = [{
        'studentId': item.get('studentId'),
        'name': names.get(item.get('studentId')) or '未知',
        'grade': item.get('grade'),
        'semester': item.get('semester'),
        'timestamp': item.get('timestamp')
    } for item in items]
    grades.sort(key=lambda g: (str(g['studentId']), str(g['semester'])))

    return {'success': True, 'subject': subject, 'grades': grades}


# GET /view-period
def handle_get_view_period(table):
    config = load_view_period(table)
    if not config:
        return {'success': True, 'configured': False}
    return {
        'success': True,
        'configured': True,
        'startTime': config.get('startTime'),
        'endTime': config.get('endTime'),
        'updatedBy': config.get('updatedBy'),
        'timestamp': config.get('timestamp'),
        'version': config.get('version')
    }


# POST /view-period
def handle_set_view_period(event, table, teacher_id):
    body = parse_json_body(event)
    start_time = clean_str(body.get('startTime'))
    end_time = clean_str(body.get('endTime'))
    if not start_time or not end_time:
        raise InputValidationError('缺少时间')

    start = safe_parse_iso_time(start_time)
    end = safe_parse_iso_time(end_time)
    if start is None or end is None:
        raise InputValidationError('时间格式无效，应为 ISO 8601')
    if start > end:
        raise InputValidationError('开始时间不能晚于结束时间')

    config = save_view_period(table, start_time, end_time, teacher_id)
    logger.info('教师 %s 设置查看时间段 %s 至 %s', teacher_id, start_time, end_time)
    return {
        'success': True,
        'message': '设置成功',
        'startTime': start_time,
        'endTime': end_time,
        'version': config.get('version')
    }


# POST /teachers/{id}，action=getTeacherInfo
def handle_teacher_info(event, table, teacher_id):
    if _path_teacher_id(event) != teacher_id:
        raise AccessDeniedError('无权访问该教师信息')

    body = parse_json_body(event)
    if body.get('action') != 'getTeacherInfo':
        raise InputValidationError('不支持的操作')

    profile = get_teacher_profile(table, teacher_id)
    if not profile:
        raise NotFoundError('教师信息未找到')

    return {
        'success': True,
        'teacherId': teacher_id,
        'name': profile.get('name') or '未知教师',
        'subject': profile.get('subject') or '未知科目',
        'subjects': list(profile.get('subjects') or []),
        'email': profile.get('email')
    }


# POST /grades/update - 修改或录入成绩
def handle_update_grade(event, table, teacher_id):
    body = parse_json_body(event)
    student_id = clean_str(body.get('studentId'))
    subject = clean_str(body.get('subject'))
    semester = clean_str(body.get('semester'))
    try:
        grade = parse_grade(body.get('grade'))
    except ValueError as e:
        raise InputValidationError(str(e))

    if not student_id or not subject or grade is None or not semester:
        raise InputValidationError('缺少必要参数：studentId, subject, grade, semester')

    # 验证教师是否有权限教授该科目
    _require_subject(table, teacher_id, subject, '无权修改该科目成绩')

    table.put_item(build_grade_item(student_id, subject, grade, semester, teacher_id))
    logger.info('教师 %s 更新成绩: %s %s %s = %s',
                teacher_id, student_id, subject, semester, grade)
    return {
        'success': True,
        'message': '成绩更新成功',
        'studentId': student_id,
        'subject': subject,
        'grade': grade,
        'semester': semester
    }
