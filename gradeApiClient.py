import os
import json
import base64
from pathlib import Path

import requests

from apiResponse import get_logger

logger = get_logger(__name__)

API_BASE = os.environ.get('GRADE_API_BASE', 'http://localhost:3000')
SESSION_FILE = os.environ.get(
    'GRADE_CLIENT_SESSION',
    str(Path.home() / '.grade-system' / 'session.json')
)

# 角色映射：中文 → 英文
ROLE_MAP = {
    '学生': 'student',
    '教师': 'teacher',
    '管理员': 'admin'
}

UPLOAD_TYPES = ('csv', 'xlsx', 'xls')

_EMPTY_MARKERS = ('', 'null', 'undefined')


def _present(value):
    return value is not None and not (isinstance(value, str) and value.strip() in _EMPTY_MARKERS)


def _trimmed(value):
    return value.strip() if isinstance(value, str) else value


class CredentialStore:
    """本地保存 token 和当前用户（相当于浏览器的 localStorage）"""

    def __init__(self, path=None):
        self.path = Path(path or SESSION_FILE)

    def _read(self):
        try:
            with self.path.open(encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.warning('会话文件已损坏，忽略: %s', self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open('w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False)

    def get(self, key):
        value = self._read().get(key)
        return value if _present(value) else None

    def set(self, key, value):
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key):
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    @property
    def token(self):
        return self.get('token')

    @property
    def user(self):
        return self.get('user')

    def clear(self):
        self.remove('user')
        self.remove('token')


class GradeApiClient:
    """成绩系统接口封装：每个后端操作一个方法，错误统一为 {'error': str}"""

    def __init__(self, base_url=None, store=None, session=None, on_logout=None, timeout=None):
        self.base_url = (base_url or API_BASE).rstrip('/')
        self.store = store or CredentialStore()
        self.session = session or requests.Session()
        self.on_logout = on_logout
        self.timeout = timeout

    def request(self, endpoint, data=None, method='POST', skip_auth=False):
        """统一请求方法；skip_auth 用于登录等无需 token 的请求"""
        data = data or {}
        url = f'{self.base_url}{endpoint}'

        headers = {'Content-Type': 'application/json'}
        token = None if skip_auth else self.store.token
        if token:
            headers['Authorization'] = f'Bearer {token}'

        kwargs = {'headers': headers, 'timeout': self.timeout}
        if method == 'GET':
            if data:
                kwargs['params'] = data
        else:
            kwargs['data'] = json.dumps(data, ensure_ascii=False).encode('utf-8')

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            logger.error('API 请求失败: %s %s: %s', method, url, e)
            return {'error': '网络错误，请检查连接或重试'}

        # 统一处理未授权：自动登出
        if response.status_code == 401:
            logger.warning('认证失效，正在登出...')
            self.logout()
            return {'error': '登录已过期，请重新登录'}

        try:
            result = response.json()
        except ValueError:
            return {'error': '服务器返回数据格式错误'}
        if not isinstance(result, dict):
            return {'error': '服务器返回数据格式错误'}

        if result.get('error'):
            return {'error': str(result['error'])}
        return result

    def logout(self):
        self.store.clear()
        if self.on_logout is not None:
            self.on_logout()

    # -----------------------------
    # 业务方法
    # -----------------------------

    def login(self, user_id, password):
        self.store.remove('token')
        result = self.request('/auth/login', {'action': 'login', 'id': user_id, 'password': password},
                              'POST', skip_auth=True)
        if 'error' not in result:
            if result.get('token'):
                self.store.set('token', result['token'])
            if result.get('user'):
                self.store.set('user', result['user'])
        return result

    def get_users(self, search='', page=1, limit=10):
        """获取用户列表（支持搜索、分页）"""
        return self.request('/users/manage', {
            'action': 'getUsers',
            'search': search,
            'page': page,
            'limit': limit
        })

    def create_user_record(self, user):
        role = _trimmed(user.get('role'))
        user_data = {
            'action': 'createUser',
            'user': {
                'id': _trimmed(user.get('id')),
                'name': _trimmed(user.get('name')),
                'role': ROLE_MAP.get(role, role),
                'class': _trimmed(user.get('className')),
                'password': _trimmed(user.get('password'))
            }
        }

        # 客户端先做必填校验
        if not user_data['user']['id']:
            return {'error': '缺少用户ID'}
        if not user_data['user']['name']:
            return {'error': '缺少用户名'}
        if not user_data['user']['role']:
            return {'error': '缺少用户角色'}

        return self.request('/users/manage', user_data)

    def delete_user_record(self, user):
        return self.request('/users/manage', {'action': 'deleteUser', 'user': user})

    def get_grades(self, student_id):
        logger.info('正在请求成绩: %s', student_id)
        return self.request('/grades', {'studentId': student_id}, 'GET')

    def get_teacher_subjects(self, teacher_id):
        return self.request(f'/teachers/{teacher_id}', {'teacherId': teacher_id}, 'GET')

    def get_teacher_info(self, teacher_id):
        return self.request(f'/teachers/{teacher_id}', {'action': 'getTeacherInfo', 'teacherId': teacher_id})

    def get_subject_grades(self, teacher_id, subject):
        return self.request('/grades/subject', {'teacherId': teacher_id, 'subject': subject}, 'GET')

    def get_view_period(self, teacher_id):
        return self.request('/view-period', {'teacherId': teacher_id}, 'GET')

    def set_view_period(self, teacher_id, start_time, end_time):
        return self.request('/view-period', {
            'action': 'setViewPeriod',
            'teacherId': teacher_id,
            'startTime': start_time,
            'endTime': end_time
        })

    def upload_grades(self, teacher_id, file_data, file_type):
        return self.request('/grades/upload', {
            'action': 'uploadGrades',
            'teacherId': teacher_id,
            'fileData': file_data,
            'fileType': file_type
        })

    def upload_grade_file(self, teacher_id, file_path):
        """读取本地 csv/xlsx/xls 文件并上传"""
        path = Path(file_path)
        file_type = path.suffix.lstrip('.').lower()
        if file_type not in UPLOAD_TYPES:
            return {'error': '不支持的文件类型'}
        try:
            raw = path.read_bytes()
        except OSError as e:
            logger.error('读取文件失败: %s: %s', path, e)
            return {'error': f'读取文件失败: {path.name}'}
        return self.upload_grades(teacher_id, base64.b64encode(raw).decode('ascii'), file_type)

    def update_grade(self, student_id, subject, grade, semester):
        user = self.store.user
        if not user:
            return {'error': '用户未登录，请重新登录'}
        if isinstance(user, str):
            try:
                user = json.loads(user)
            except ValueError:
                user = None
        if not isinstance(user, dict):
            logger.error('解析用户信息失败: %r', user)
            return {'error': '用户数据异常，请重新登录'}

        teacher_id = user.get('teacherId') or user.get('id')
        if not teacher_id:
            logger.error('用户信息中缺少 teacherId 或 id: %r', user)
            return {'error': '身份信息不完整，无法确定教师ID'}

        return self.request('/grades/update', {
            'studentId': student_id,
            'subject': subject,
            'grade': grade,
            'semester': semester,
            'teacherId': teacher_id
        }, 'POST')
