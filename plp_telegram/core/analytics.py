# plp_telegram/core/analytics.py

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from plp_telegram.database import AnalyticsEvent

logger = logging.getLogger(__name__)

MESSAGE_RECEIVED = "message_received"
MEMBER_JOINED = "member_joined"
MEMBER_LEFT = "member_left"


def record_event(db_session: Session, group_id: int, event_type: str,
                 payload: Optional[Dict[str, Any]] = None) -> None:
    """
    追加一条分析事件并立即提交。
    分析数据是尽力而为的遥测，写入失败只记录日志，不会向调用方抛出。
    """
    try:
        db_session.add(AnalyticsEvent(group_id=group_id, event_type=event_type, event_data=payload or {}))
        db_session.commit()
    except Exception as e:
        db_session.rollback()
        logger.error(f"记录群组 {group_id} 的分析事件 '{event_type}' 失败: {e}", exc_info=True)
