import os
from datetime import datetime, timezone
from decimal import Decimal, DecimalException, InvalidOperation

import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import DYNAMODB_CONTEXT
from botocore.exceptions import ClientError

from apiResponse import get_logger

logger = get_logger(__name__)

# 从环境变量获取表名和区域
TABLE_NAME = os.environ.get('TABLE_NAME', 'grades-system-table')
AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

# DynamoDB 单次批量操作上限
BATCH_WRITE_LIMIT = 25
BATCH_GET_LIMIT = 100

METADATA_SK = 'METADATA'
GRADE_PREFIX = 'GRADE#'
VIEW_PERIOD_PK = 'SYSTEM#VIEW_PERIOD'
VIEW_PERIOD_SK = 'CONFIG'

ROLE_PREFIXES = {
    'student': 'STUDENT#',
    'teacher': 'TEACHER#',
    'admin': 'ADMIN#'
}


class RecordExistsError(Exception):
    """条件写入时主键已存在"""


class RecordMissingError(Exception):
    """条件删除时记录不存在"""


def user_pk(role, user_id):
    return f'{ROLE_PREFIXES[role]}{user_id}'


def student_pk(student_id):
    return user_pk('student', student_id)


def grade_sk(subject, semester):
    return f'{GRADE_PREFIX}{subject}#{semester}'


def split_user_pk(pk):
    """从用户分区键解析出 (角色, ID)，非用户记录返回 None"""
    for role, prefix in ROLE_PREFIXES.items():
        if pk.startswith(prefix):
            return role, pk[len(prefix):]
    return None


def utc_now_iso():
    return datetime.now(timezone.utc).isoformat()


def parse_grade(value):
    """把成绩解析为 0-100 之间的 Decimal

    值为空时返回 None；值存在但不是合法成绩时抛出 ValueError。
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValueError('成绩必须是数字')
    try:
        grade = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError('成绩必须是数字')
    if not grade.is_finite():
        raise ValueError('成绩必须是数字')
    if not (0 <= grade <= 100):
        raise ValueError('成绩必须在0-100之间')
    # DynamoDB 数字最多 38 位有效数字
    try:
        return DYNAMODB_CONTEXT.create_decimal(grade)
    except DecimalException:
        raise ValueError('成绩精度超出范围')


def build_grade_item(student_id, subject, grade, semester, teacher_id):
    return {
        'PK': student_pk(student_id),
        'SK': grade_sk(subject, semester),
        'studentId': student_id,
        'subject': subject,
        'grade': grade,
        'semester': semester,
        'teacherId': teacher_id,
        'timestamp': utc_now_iso()
    }


class GradeTable:
    """单表访问：用户、成绩和系统配置共用一张表"""

    def __init__(self, table):
        self.table = table

    @classmethod
    def from_environment(cls):
        dynamodb = boto3.resource('dynamodb', region_name=AWS_REGION)
        return cls(dynamodb.Table(TABLE_NAME))

    @property
    def name(self):
        return self.table.name

    def get_item(self, pk, sk):
        response = self.table.get_item(Key={'PK': pk, 'SK': sk})
        return response.get('Item')

    def query_partition(self, pk):
        kwargs = {'KeyConditionExpression': Key('PK').eq(pk)}
        items = []
        while True:
            response = self.table.query(**kwargs)
            items.extend(response.get('Items', []))
            if 'LastEvaluatedKey' not in response:
                return items
            kwargs['ExclusiveStartKey'] = response['LastEvaluatedKey']

    def scan(self, filter_expression=None):
        kwargs = {}
        if filter_expression is not None:
            kwargs['FilterExpression'] = filter_expression
        items = []
        while True:
            response = self.table.scan(**kwargs)
            items.extend(response.get('Items', []))
            if 'LastEvaluatedKey' not in response:
                return items
            kwargs['ExclusiveStartKey'] = response['LastEvaluatedKey']

    def put_item(self, item):
        self.table.put_item(Item=item)

    def insert_item(self, item):
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(PK)'
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise RecordExistsError(item['PK'])
            raise

    def delete_existing(self, pk, sk):
        try:
            self.table.delete_item(
                Key={'PK': pk, 'SK': sk},
                ConditionExpression='attribute_exists(PK)'
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise RecordMissingError(pk)
            raise

    def update_item(self, key, update_expression, values, names=None):
        kwargs = {
            'Key': key,
            'UpdateExpression': update_expression,
            'ExpressionAttributeValues': values,
            'ReturnValues': 'ALL_NEW'
        }
        if names:
            kwargs['ExpressionAttributeNames'] = names
        response = self.table.update_item(**kwargs)
        return response.get('Attributes', {})

    def batch_put(self, items):
        """单次批量写入（最多 25 条），返回未被处理的记录"""
        if len(items) > BATCH_WRITE_LIMIT:
            raise ValueError(f'每批最多 {BATCH_WRITE_LIMIT} 条记录')
        if not items:
            return []
        response = self.table.meta.client.batch_write_item(
            RequestItems={self.name: [{'PutRequest': {'Item': item}} for item in items]}
        )
        unprocessed = response.get('UnprocessedItems', {}).get(self.name, [])
        return [request['PutRequest']['Item'] for request in unprocessed]

    def batch_get(self, keys):
        """按 (PK, SK) 批量读取，不存在的键直接忽略"""
        items = []
        keys = list(keys)
        for start in range(0, len(keys), BATCH_GET_LIMIT):
            chunk = [{'PK': pk, 'SK': sk} for pk, sk in keys[start:start + BATCH_GET_LIMIT]]
            response = self.table.meta.client.batch_get_item(
                RequestItems={self.name: {'Keys': chunk}}
            )
            items.extend(response.get('Responses', {}).get(self.name, []))
            # 未处理的键逐条读取
            leftover = response.get('UnprocessedKeys', {}).get(self.name, {}).get('Keys', [])
            for key in leftover:
                item = self.get_item(key['PK'], key['SK'])
                if item:
                    items.append(item)
        return items


_default_table = None


def get_default_table():
    """同一 Lambda 容器内复用的表实例"""
    global _default_table
    if _default_table is None:
        _default_table = GradeTable.from_environment()
        logger.debug('使用表 %s', _default_table.name)
    return _default_table
