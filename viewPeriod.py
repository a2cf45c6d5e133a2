from datetime import datetime, timezone

from apiResponse import get_logger
from gradeTable import VIEW_PERIOD_PK, VIEW_PERIOD_SK, utc_now_iso

logger = get_logger(__name__)

VIEW_PERIOD_KEY = {'PK': VIEW_PERIOD_PK, 'SK': VIEW_PERIOD_SK}


def safe_parse_iso_time(time_str):
    """解析 ISO 时间，无时区的按 UTC 处理；无法解析返回 None"""
    if not isinstance(time_str, str) or not time_str.strip():
        return None
    value = time_str.strip()
    # 兼容 2025-10-31T10:50:00Z 这种写法
    if value.endswith('Z') or value.endswith('z'):
        value = value[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_view_period(table):
    return table.get_item(VIEW_PERIOD_PK, VIEW_PERIOD_SK)


def is_view_period_open(table, now=None):
    """当前时间是否在成绩查看时间段内

    未配置时间段时默认开放；配置损坏时视为关闭。
    """
    config = load_view_period(table)
    if not config:
        return True

    start = safe_parse_iso_time(config.get('startTime'))
    end = safe_parse_iso_time(config.get('endTime'))
    if start is None or end is None:
        logger.warning('查看时间段配置无法解析: %s 至 %s',
                       config.get('startTime'), config.get('endTime'))
        return False

    now = now or datetime.now(timezone.utc)
    return start <= now <= end


def save_view_period(table, start_time, end_time, updated_by):
    """写入全局查看时间段，版本号原子递增"""
    return table.update_item(
        VIEW_PERIOD_KEY,
        'SET startTime = :start, endTime = :end, updatedBy = :by, #ts = :ts '
        'ADD #ver :one',
        {
            ':start': start_time,
            ':end': end_time,
            ':by': updated_by,
            ':ts': utc_now_iso(),
            ':one': 1
        },
        names={'#ts': 'timestamp', '#ver': 'version'}
    )
