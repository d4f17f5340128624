# plp_telegram/api/analytics.py (统计分析接口)

import logging
from datetime import date, datetime, time, timedelta, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from plp_telegram.api.dependencies import ApiError, get_db, require_admin
from plp_telegram.core.analytics import MEMBER_JOINED, MEMBER_LEFT
from plp_telegram.database import AnalyticsEvent, Group, Message

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analytics"], dependencies=[Depends(require_admin)])


def _start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _percent_change(current: int, previous: int) -> float:
    """环比变化百分比，保留一位小数。没有基数时，有增长记为 100，否则为 0。"""
    if previous > 0:
        return round((current - previous) / previous * 100, 1)
    return 100.0 if current > 0 else 0.0


def _day_key(value) -> str:
    # SQLite 的 date() 返回字符串，PostgreSQL 返回 date 对象
    return value.isoformat() if isinstance(value, date) else str(value)


def _message_count(db: Session, start: datetime, end: datetime | None = None) -> int:
    query = db.query(func.count(Message.id)).filter(
        Message.is_deleted.is_(False), Message.telegram_date >= start
    )
    if end is not None:
        query = query.filter(Message.telegram_date < end)
    return query.scalar()


def _active_user_count(db: Session, start: datetime, end: datetime | None = None) -> int:
    query = db.query(func.count(func.distinct(Message.telegram_user_id))).filter(
        Message.is_deleted.is_(False), Message.telegram_date >= start
    )
    if end is not None:
        query = query.filter(Message.telegram_date < end)
    return query.scalar()


def _event_counts(db: Session, start: datetime) -> dict:
    rows = (
        db.query(AnalyticsEvent.event_type, func.count(AnalyticsEvent.id))
        .filter(AnalyticsEvent.created_at >= start)
        .group_by(AnalyticsEvent.event_type)
        .all()
    )
    return {event_type: count for event_type, count in rows}


@router.get("/overview")
def analytics_overview(db: Session = Depends(get_db)):
    """
    仪表盘概览: 今日与昨日的消息数、今日与过去一周的活跃用户数、
    近 30 天日均消息数，以及今日的成员加入/离开事件数。
    """
    today = datetime.now(timezone.utc).date()
    today_start = _start_of_day(today)
    yesterday_start = _start_of_day(today - timedelta(days=1))
    week_start = _start_of_day(today - timedelta(weeks=1))
    month_start = _start_of_day(today - timedelta(days=30))

    try:
        messages_today = _message_count(db, today_start)
        messages_yesterday = _message_count(db, yesterday_start, today_start)
        active_users_today = _active_user_count(db, today_start)
        active_users_last_week = _active_user_count(db, week_start, today_start)
        messages_last_30_days = _message_count(db, month_start)
        events_today = _event_counts(db, today_start)
    except SQLAlchemyError as e:
        logger.error(f"统计概览数据查询失败: {e}", exc_info=True)
        raise ApiError(500, "Failed to fetch analytics data", str(e))

    return {
        "messages_today": messages_today,
        "messages_yesterday": messages_yesterday,
        "message_change": _percent_change(messages_today, messages_yesterday),
        "active_users_today": active_users_today,
        "active_users_last_week": active_users_last_week,
        "user_change": _percent_change(active_users_today, active_users_last_week),
        "avg_messages_per_day": round(messages_last_30_days / 30),
        "members_joined_today": events_today.get(MEMBER_JOINED, 0),
        "members_left_today": events_today.get(MEMBER_LEFT, 0),
    }


@router.get("/activity")
def analytics_activity(days: int = Query(7, ge=1, le=90), db: Session = Depends(get_db)):
    """最近 N 天（含今天）的每日消息数、消息类型分布和分析事件计数。没有消息的日期计为 0。"""
    today = datetime.now(timezone.utc).date()
    first_day = today - timedelta(days=days - 1)
    start = _start_of_day(first_day)

    day_column = func.date(Message.telegram_date)
    try:
        daily_rows = (
            db.query(day_column, func.count(Message.id))
            .filter(Message.is_deleted.is_(False), Message.telegram_date >= start)
            .group_by(day_column)
            .all()
        )
        type_rows = (
            db.query(Message.message_type, func.count(Message.id))
            .filter(Message.is_deleted.is_(False), Message.telegram_date >= start)
            .group_by(Message.message_type)
            .order_by(func.count(Message.id).desc(), Message.message_type)
            .all()
        )
        events = _event_counts(db, start)
    except SQLAlchemyError as e:
        logger.error(f"活跃度数据查询失败: {e}", exc_info=True)
        raise ApiError(500, "Failed to fetch activity data", str(e))

    per_day = {_day_key(day): count for day, count in daily_rows}
    daily_activity = []
    for offset in range(days):
        key = (first_day + timedelta(days=offset)).isoformat()
        daily_activity.append({"date": key, "messages": per_day.get(key, 0)})

    return {
        "days": days,
        "daily_activity": daily_activity,
        "message_types": [{"type": t, "count": c} for t, c in type_rows],
        "events": events,
    }


@router.get("/groups")
def analytics_groups(
    days: int = Query(7, ge=1, le=90),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """最近 N 天消息最多的群组，附带发言人数和参与率，以及活跃/不活跃群组的数量。"""
    start = _start_of_day(datetime.now(timezone.utc).date() - timedelta(days=days))

    message_count = func.count(Message.id).label("messages")
    speakers = func.count(func.distinct(Message.telegram_user_id)).label("speakers")
    try:
        rows = (
            db.query(Group, message_count, speakers)
            .join(Message, Message.group_id == Group.id)
            .filter(Message.is_deleted.is_(False), Message.telegram_date >= start)
            .group_by(Group.id)
            .order_by(message_count.desc(), Group.id)
            .limit(limit)
            .all()
        )
        status_rows = db.query(Group.is_active, func.count(Group.id)).group_by(Group.is_active).all()
    except SQLAlchemyError as e:
        logger.error(f"群组排行数据查询失败: {e}", exc_info=True)
        raise ApiError(500, "Failed to fetch group analytics", str(e))

    top_groups = []
    for group, messages, active_members in rows:
        engagement = round(active_members / group.member_count * 100, 1) if group.member_count else 0.0
        top_groups.append({
            "id": group.id,
            "name": group.title,
            "messages": messages,
            "members": group.member_count,
            "active_members": active_members,
            "engagement_rate": engagement,
        })

    by_status = {bool(is_active): count for is_active, count in status_rows}
    active = by_status.get(True, 0)
    inactive = by_status.get(False, 0)
    return {
        "top_groups": top_groups,
        "group_stats": {"total": active + inactive, "active": active, "inactive": inactive},
    }
