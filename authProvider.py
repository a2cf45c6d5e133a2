import os

import jwt

from apiResponse import AuthenticationError, get_logger, request_headers

logger = get_logger(__name__)

KNOWN_ROLES = ('student', 'teacher', 'admin')


class Identity:
    """已认证的调用方：用户 ID 加角色"""

    def __init__(self, user_id, role, unrestricted=False):
        self.user_id = user_id
        self.role = role
        self.unrestricted = unrestricted

    def has_role(self, *roles):
        return self.unrestricted or self.role in roles

    def is_user(self, user_id):
        return self.unrestricted or (self.user_id is not None and self.user_id == user_id)

    def __repr__(self):
        if self.unrestricted:
            return 'Identity(unrestricted)'
        return f'Identity({self.role}:{self.user_id})'


class JwtAuthenticator:
    """校验 Authorization: Bearer <JWT>，角色取自 role 声明或 cognito:groups"""

    def __init__(self, secret, algorithms=None, audience=None):
        self.secret = secret
        self.algorithms = algorithms or ['HS256']
        self.audience = audience

    def authenticate(self, event):
        if not self.secret:
            raise RuntimeError('未配置 JWT_SECRET')
        auth_header = request_headers(event).get('authorization', '')
        if not auth_header.startswith('Bearer '):
            raise AuthenticationError('未提供有效认证令牌')
        token = auth_header[len('Bearer '):].strip()

        options = {'require': ['sub', 'exp']}
        kwargs = {'algorithms': self.algorithms, 'options': options}
        if self.audience:
            kwargs['audience'] = self.audience
        try:
            claims = jwt.decode(token, self.secret, **kwargs)
        except jwt.InvalidTokenError as e:
            logger.info('令牌验证失败: %s', e)
            raise AuthenticationError(f'令牌验证失败: {e}')

        role = claims.get('role')
        if role not in KNOWN_ROLES:
            groups = claims.get('cognito:groups', [])
            role = next((g for g in groups if g in KNOWN_ROLES), None)
        if role is None:
            raise AuthenticationError('令牌中缺少用户角色')
        return Identity(str(claims['sub']), role)


class AllowAllAuthenticator:
    """开发/测试用：所有请求都视为已认证且不受限"""

    def authenticate(self, event):
        return Identity(None, None, unrestricted=True)


def authenticator_from_environment():
    auth_mode = os.environ.get('AUTH_MODE', 'jwt').strip().lower()
    if auth_mode == 'allow-all':
        logger.warning('AUTH_MODE=allow-all，已跳过身份认证')
        return AllowAllAuthenticator()

    secret = os.environ.get('JWT_SECRET')
    algorithm = os.environ.get('JWT_ALGORITHM', 'HS256')
    return JwtAuthenticator(secret, algorithms=[algorithm],
                            audience=os.environ.get('JWT_AUDIENCE'))
