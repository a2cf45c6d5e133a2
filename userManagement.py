import os
import math

from boto3.dynamodb.conditions import Attr
from pypinyin import lazy_pinyin

from apiResponse import (
    AccessDeniedError,
    ConflictError,
    InputValidationError,
    NotFoundError,
    clean_str,
    cors_headers,
    get_logger,
    parse_json_body,
    respond,
)
from authProvider import authenticator_from_environment
from gradeTable import (
    METADATA_SK,
    ROLE_PREFIXES,
    RecordExistsError,
    RecordMissingError,
    get_default_table,
    split_user_pk,
    user_pk,
    utc_now_iso,
)

logger = get_logger(__name__)

HEADERS = cors_headers('GET,POST,PUT,DELETE,OPTIONS')

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
UNASSIGNED_CLASS = '未分配班级'
UNASSIGNED_SUBJECT = '未分配科目'


def lambda_handler(event, context):
    return handle_request(event, get_default_table(), authenticator_from_environment())


def handle_request(event, table, authenticator):
    def route():
        identity = authenticator.authenticate(event)
        if not identity.has_role('admin'):
            raise AccessDeniedError('无管理员权限')

        body = parse_json_body(event)
        action = clean_str(body.get('action'))
        if not action:
            raise InputValidationError('缺少 action 参数')

        handler = ACTIONS.get(action)
        if handler is None:
            raise InputValidationError(f'不支持的操作: {action}')
        logger.info('用户管理请求: %s (%s)', action, identity)
        return handler(table, body)

    return respond(event, HEADERS, route)


# ------------------------------
# 核心功能函数
# ------------------------------

def _int_or_none(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def page_window(body):
    """解析分页参数：page 至少为 1，limit 限制在 1-100"""
    page = _int_or_none(body.get('page'))
    if page is None or page < 1:
        page = 1
    limit = _int_or_none(body.get('limit'))
    if not limit:
        limit = DEFAULT_PAGE_SIZE
    limit = min(MAX_PAGE_SIZE, max(1, limit))
    return page, limit


def _sort_key(user):
    # 中文姓名按拼音排序，英文不区分大小写
    name = user['name']
    return ' '.join(lazy_pinyin(name)).casefold(), name, user['role'], user['id']


def get_users(table, body):
    """查询用户列表（搜索 + 按姓名排序 + 分页）"""
    search_term = clean_str(body.get('search')).lower()
    page, limit = page_window(body)

    users = []
    for item in table.scan(Attr('SK').eq(METADATA_SK)):
        parsed = split_user_pk(item.get('PK', ''))
        if parsed is None:
            continue
        role, user_id = parsed
        user = {
            'id': user_id,
            'name': item.get('name') or '未知',
            'role': role,
            'class': item.get('class') or item.get('subject') or ''
        }
        if search_term and not any(search_term in str(user[field]).lower()
                                   for field in ('id', 'name', 'class')):
            continue
        users.append(user)

    users.sort(key=_sort_key)

    total = len(users)
    offset = (page - 1) * limit
    return {
        'success': True,
        'data': users[offset:offset + limit],
        'total': total,
        'totalPages': math.ceil(total / limit),
        'page': page,
        'limit': limit
    }


def _teacher_subjects(user, subject):
    subjects = user.get('subjects')
    if isinstance(subjects, list):
        return [s for s in (clean_str(s) for s in subjects) if s]
    return [subject] if subject else []


def create_user(table, body):
    """创建用户，依靠条件写入保证同一主键只会创建一次"""
    user = body.get('user') or {}
    if not isinstance(user, dict):
        raise InputValidationError('user 必须是对象')

    user_id = clean_str(user.get('id'))
    name = clean_str(user.get('name'))
    role = clean_str(user.get('role'))
    if not user_id or not name or not role:
        raise InputValidationError('缺少必要字段: id, name, role')
    if role not in ROLE_PREFIXES:
        raise InputValidationError('角色必须是 student、teacher 或 admin')

    # TODO: 密码改为 bcrypt 哈希后再存储
    password = clean_str(user.get('password')) or os.environ.get('DEFAULT_PASSWORD', '123123')
    item = {
        'PK': user_pk(role, user_id),
        'SK': METADATA_SK,
        'name': name,
        'password': password,
        'role': role,
        'timestamp': utc_now_iso()
    }

    # 扩展字段
    class_name = clean_str(user.get('class'))
    if role == 'student':
        item['class'] = class_name or UNASSIGNED_CLASS
    elif role == 'teacher':
        item['subject'] = class_name or UNASSIGNED_SUBJECT
        item['subjects'] = _teacher_subjects(user, class_name)
        email = clean_str(user.get('email'))
        if email:
            item['email'] = email

    try:
        table.insert_item(item)
    except RecordExistsError:
        raise ConflictError('用户已存在')

    logger.info('已创建 %s 用户 %s', role, user_id)
    return {'success': True, 'message': '用户创建成功'}


def delete_user(table, body):
    """删除用户（只删 METADATA 记录，成绩记录保留）"""
    user = body.get('user') or {}
    if not isinstance(user, dict):
        raise InputValidationError('user 必须是对象')

    user_id = clean_str(user.get('id'))
    role = clean_str(user.get('role'))
    if not user_id or not role:
        raise InputValidationError('删除操作需要提供 id 和 role')
    if role not in ROLE_PREFIXES:
        raise InputValidationError('角色必须是 student、teacher 或 admin')

    try:
        table.delete_existing(user_pk(role, user_id), METADATA_SK)
    except RecordMissingError:
        raise NotFoundError('用户不存在')

    logger.info('已删除 %s 用户 %s', role, user_id)
    return {'success': True, 'message': '用户删除成功'}


ACTIONS = {
    'getUsers': get_users,
    'createUser': create_user,
    'deleteUser': delete_user
}
