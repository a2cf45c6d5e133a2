from apiResponse import (
    AccessDeniedError,
    InputValidationError,
    clean_str,
    cors_headers,
    get_logger,
    query_params,
    respond,
)
from authProvider import authenticator_from_environment
from gradeTable import GRADE_PREFIX, METADATA_SK, get_default_table, student_pk
from viewPeriod import is_view_period_open

logger = get_logger(__name__)

HEADERS = cors_headers('GET,OPTIONS')


def lambda_handler(event, context):
    return handle_request(event, get_default_table(), authenticator_from_environment())


def handle_request(event, table, authenticator, now=None):
    def route():
        identity = authenticator.authenticate(event)

        # 1. 获取并校验 studentId
        student_id = clean_str(query_params(event).get('studentId'))
        if not student_id:
            raise InputValidationError('缺少 studentId')

        if not identity.has_role('student', 'teacher', 'admin'):
            raise AccessDeniedError('无权访问')
        # 学生只能查看自己的成绩
        if identity.role == 'student' and not identity.is_user(student_id):
            raise AccessDeniedError('只能查看本人成绩')

        # 2. 校验是否在查看时间段内
        if not is_view_period_open(table, now=now):
            raise AccessDeniedError('成绩暂未开放查看')

        # 3. 读取学生分区下的全部记录
        return get_student_grades(table, student_id)

    return respond(event, HEADERS, route)


def get_student_grades(table, student_id):
    """学生分区里拆出 METADATA 和 GRADE# 记录"""
    metadata = None
    grades = []
    for item in table.query_partition(student_pk(student_id)):
        sk = item.get('SK', '')
        if sk == METADATA_SK:
            metadata = item
        elif sk.startswith(GRADE_PREFIX):
            grades.append({
                'subject': item.get('subject'),
                'grade': item.get('grade'),
                'semester': item.get('semester')
            })

    logger.info('学生 %s 共查询到 %d 条成绩', student_id, len(grades))
    metadata = metadata or {}
    return {
        'success': True,
        'studentId': student_id,
        'name': metadata.get('name') or '未知',
        'class': metadata.get('class'),
        'grades': grades
    }
