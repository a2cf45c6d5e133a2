# tests/conftest.py

import json
import time

import boto3
import jwt
import pytest
from moto import mock_aws

from authProvider import AllowAllAuthenticator, JwtAuthenticator
from gradeTable import GradeTable, METADATA_SK

TEST_TABLE = 'grades-system-test'
TEST_SECRET = 'unit-test-secret-0123456789abcdef'


@pytest.fixture
def aws_credentials(monkeypatch):
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def grade_table(aws_credentials):
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        table = dynamodb.create_table(
            TableName=TEST_TABLE,
            KeySchema=[
                {'AttributeName': 'PK', 'KeyType': 'HASH'},
                {'AttributeName': 'SK', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'PK', 'AttributeType': 'S'},
                {'AttributeName': 'SK', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )
        yield GradeTable(table)


@pytest.fixture
def allow_all():
    return AllowAllAuthenticator()


@pytest.fixture
def jwt_auth():
    return JwtAuthenticator(TEST_SECRET)


@pytest.fixture
def make_token():
    def _make(sub, role, expires_in=3600, secret=TEST_SECRET):
        claims = {'sub': sub, 'role': role, 'exp': int(time.time()) + expires_in}
        return jwt.encode(claims, secret, algorithm='HS256')
    return _make


@pytest.fixture
def make_event():
    def _make(method='POST', path='/', body=None, query=None, path_params=None, token=None):
        headers = {'Content-Type': 'application/json'}
        if token:
            headers['Authorization'] = f'Bearer {token}'
        if body is not None and not isinstance(body, str):
            body = json.dumps(body)
        return {
            'httpMethod': method,
            'path': path,
            'body': body,
            'queryStringParameters': query,
            'pathParameters': path_params,
            'headers': headers
        }
    return _make


@pytest.fixture
def seed_teacher(grade_table):
    def _seed(teacher_id, subjects, name='Teacher', email=None):
        item = {
            'PK': f'TEACHER#{teacher_id}',
            'SK': METADATA_SK,
            'name': name,
            'role': 'teacher',
            'subject': subjects[0] if subjects else '',
            'subjects': list(subjects)
        }
        if email:
            item['email'] = email
        grade_table.put_item(item)
        return item
    return _seed


@pytest.fixture
def seed_student(grade_table):
    def _seed(student_id, name, class_name='Class 1'):
        item = {
            'PK': f'STUDENT#{student_id}',
            'SK': METADATA_SK,
            'name': name,
            'role': 'student',
            'class': class_name
        }
        grade_table.put_item(item)
        return item
    return _seed


def read_body(response):
    return json.loads(response['body'])
