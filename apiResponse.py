import os
import json
import logging
import traceback
from decimal import Decimal

_TRUE_VALUES = ('1', 'true', 'yes', 'on')


def is_debug():
    """DEBUG=true 或 APP_ENV=development 时开启调试模式"""
    if os.environ.get('DEBUG', '').strip().lower() in _TRUE_VALUES:
        return True
    return os.environ.get('APP_ENV', '').strip().lower() == 'development'


def get_logger(name):
    log = logging.getLogger(name)
    log.setLevel(logging.DEBUG if is_debug() else logging.INFO)
    return log


logger = get_logger(__name__)


# 自定义 JSON 编码器，处理 Decimal 类型
class DecimalEncoder(json.JSONEncoder):
    def default(self, o):
        if isinstance(o, Decimal):
            if o == o.to_integral_value():
                return int(o)
            return float(o)
        return super(DecimalEncoder, self).default(o)


def cors_headers(methods, allow_headers='Content-Type,Authorization'):
    return {
        'Content-Type': 'application/json',
        'Access-Control-Allow-Origin': '*',
        'Access-Control-Allow-Methods': methods,
        'Access-Control-Allow-Headers': allow_headers
    }


def build_response(status_code, payload, headers):
    return {
        'statusCode': status_code,
        'headers': headers,
        'body': json.dumps(payload, cls=DecimalEncoder, ensure_ascii=False)
    }


class ApiError(Exception):
    """可直接返回给调用方的业务错误"""

    status_code = 500

    def __init__(self, message, **extra):
        super(ApiError, self).__init__(message)
        self.message = message
        self.extra = extra

    def to_payload(self):
        payload = {'success': False, 'error': self.message}
        payload.update(self.extra)
        return payload


class InputValidationError(ApiError):
    status_code = 400


class AuthenticationError(ApiError):
    status_code = 401


class AccessDeniedError(ApiError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    status_code = 409


def parse_json_body(event):
    """解析请求体，空请求体视为 {}"""
    raw = event.get('body')
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        body = json.loads(raw)
    except (TypeError, ValueError):
        raise InputValidationError('无效的 JSON 格式')
    if not isinstance(body, dict):
        raise InputValidationError('请求体必须是 JSON 对象')
    return body


def query_params(event):
    return event.get('queryStringParameters') or {}


def path_params(event):
    return event.get('pathParameters') or {}


def request_headers(event):
    return {str(k).lower(): v for k, v in (event.get('headers') or {}).items()}


def clean_str(value):
    """去掉首尾空白；非字符串的标量转成字符串，空值返回空串"""
    if value is None or isinstance(value, (dict, list)):
        return ''
    return str(value).strip()


def respond(event, headers, route, expose_detail=False):
    """统一的请求边界：预检短路、业务错误转换、未处理异常转 500

    route 是无参可调用对象，返回成功时的响应体。
    """
    if event.get('httpMethod') == 'OPTIONS':
        return {'statusCode': 200, 'headers': headers, 'body': ''}

    try:
        return build_response(200, route(), headers)
    except ApiError as e:
        logger.info('请求被拒绝 (%s): %s', e.status_code, e.message)
        return build_response(e.status_code, e.to_payload(), headers)
    except Exception as e:
        logger.exception('处理请求失败: %s %s', event.get('httpMethod'), event.get('path'))
        payload = {'success': False, 'error': '服务器内部错误'}
        if expose_detail and is_debug():
            payload['detail'] = str(e)
            payload['stack'] = traceback.format_exc()
        return build_response(500, payload, headers)
