"""
Data access layer for logs and the activity (audit) log.

The repository pattern isolates database operations from business logic.

Repository methods:
- LogRepository: create, bulk_create, search, aggregate counts, retention
- ActivityRepository: log, query with pagination, search, aggregate counts, cleanup
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import desc, func, or_, cast, String
from sqlalchemy.orm import Session

from store.models import ActivityLog, LogEntry, User, utc_now

logger = logging.getLogger(__name__)

LOG_COLUMNS = (
    "level", "source", "message", "protocol", "transport", "source_ip",
    "facility", "hostname", "app_name",
)


def to_naive_utc(value: Any) -> Optional[datetime]:
    """
    Coerce an ISO string, epoch number or datetime to a naive UTC datetime.

    Returns None when the value cannot be interpreted.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        if isinstance(value, datetime):
            dt = value
        elif isinstance(value, (int, float)):
            dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
        elif isinstance(value, str):
            raw = value.strip()
            if raw.endswith("Z"):
                raw = raw[:-1] + "+00:00"
            dt = datetime.fromisoformat(raw)
        else:
            return None

        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None
    return dt


def days_ago(days: int) -> datetime:
    """Naive UTC cutoff ``days`` before now, floored at datetime.min"""
    try:
        return utc_now() - timedelta(days=days)
    except OverflowError:
        return datetime.min


def like_pattern(text: str) -> str:
    """``%text%`` with LIKE wildcards in ``text`` escaped by backslash"""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _hour_bucket(db: Session, column):
    """Dialect-specific expression truncating a timestamp to the hour"""
    dialect = db.bind.dialect.name if db.bind is not None else "sqlite"
    if dialect == "sqlite":
        return func.strftime("%Y-%m-%d %H:00", column)
    if dialect == "postgresql":
        return func.to_char(func.date_trunc("hour", column), "YYYY-MM-DD HH24:00")
    return func.date_format(column, "%Y-%m-%d %H:00")


class LogRepository:
    """
    Repository for LogEntry database operations.
    """

    @staticmethod
    def build(entry: Dict[str, Any]) -> LogEntry:
        """
        Map a normalized entry dict onto a LogEntry row.

        Known columns are copied; every other key lands in metadata.
        """
        known = set(LOG_COLUMNS) | {"timestamp", "metadata", "received_at"}
        metadata = dict(entry.get("metadata") or {})
        for key, value in entry.items():
            if key not in known and value is not None:
                metadata[key] = value

        timestamp = to_naive_utc(entry.get("timestamp")) or utc_now()
        row = LogEntry(
            timestamp=timestamp,
            level=str(entry.get("level") or "info").lower()[:20],
            message=str(entry.get("message") if entry.get("message") is not None else ""),
            log_metadata=metadata or None,
        )
        for column in LOG_COLUMNS[1:]:
            if column == "message":
                continue
            value = entry.get(column)
            if value is not None:
                setattr(row, column, str(value)[:255])
        return row

    @staticmethod
    def create(db: Session, entry: Dict[str, Any]) -> LogEntry:
        row = LogRepository.build(entry)
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    @staticmethod
    def bulk_create(db: Session, entries: Iterable[Dict[str, Any]]) -> int:
        rows = [LogRepository.build(entry) for entry in entries]
        if not rows:
            return 0
        db.add_all(rows)
        db.commit()
        logger.debug(f"Persisted {len(rows)} log entries")
        return len(rows)

    @staticmethod
    def _filtered(
        db: Session,
        q: Optional[str] = None,
        level: Optional[str] = None,
        source: Optional[str] = None,
        protocol: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        query = db.query(LogEntry)
        if q:
            query = query.filter(LogEntry.message.ilike(like_pattern(q), escape="\\"))
        if level:
            levels = [lvl.strip().lower() for lvl in level.split(",") if lvl.strip()]
            query = query.filter(LogEntry.level.in_(levels))
        if source:
            query = query.filter(LogEntry.source == source)
        if protocol:
            query = query.filter(LogEntry.protocol == protocol)
        if start:
            query = query.filter(LogEntry.timestamp >= start)
        if end:
            query = query.filter(LogEntry.timestamp <= end)
        return query

    @staticmethod
    def search(
        db: Session,
        q: Optional[str] = None,
        level: Optional[str] = None,
        source: Optional[str] = None,
        protocol: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[LogEntry], int]:
        """
        Search logs, newest first.

        Returns:
            (rows, total matching)
        """
        query = LogRepository._filtered(db, q, level, source, protocol, start, end)
        total = query.count()
        rows = query.order_by(desc(LogEntry.timestamp), desc(LogEntry.id)).offset(skip).limit(limit).all()
        return rows, total

    @staticmethod
    def count_matching(db: Session, **filters) -> int:
        return LogRepository._filtered(db, **filters).count()

    @staticmethod
    def count(db: Session, since: Optional[datetime] = None) -> int:
        query = db.query(func.count(LogEntry.id))
        if since:
            query = query.filter(LogEntry.timestamp >= since)
        return query.scalar() or 0

    @staticmethod
    def recent(db: Session, limit: int = 20) -> List[LogEntry]:
        return db.query(LogEntry).order_by(desc(LogEntry.timestamp), desc(LogEntry.id)).limit(limit).all()

    @staticmethod
    def level_counts(db: Session, since: Optional[datetime] = None) -> Dict[str, int]:
        query = db.query(LogEntry.level, func.count(LogEntry.id))
        if since:
            query = query.filter(LogEntry.timestamp >= since)
        return {level: count for level, count in query.group_by(LogEntry.level).all()}

    @staticmethod
    def protocol_counts(db: Session, since: Optional[datetime] = None) -> Dict[str, int]:
        query = db.query(LogEntry.protocol, func.count(LogEntry.id))
        if since:
            query = query.filter(LogEntry.timestamp >= since)
        return {
            (protocol or "unknown"): count
            for protocol, count in query.group_by(LogEntry.protocol).all()
        }

    @staticmethod
    def column_counts(db: Session, column: str, since: Optional[datetime] = None, limit: int = 10) -> List[Dict[str, Any]]:
        """Top values of a column (source, source_ip, ...) by count"""
        attr = getattr(LogEntry, column)
        query = db.query(attr, func.count(LogEntry.id).label("count"))
        if since:
            query = query.filter(LogEntry.timestamp >= since)
        rows = (
            query.group_by(attr)
            .order_by(desc("count"))
            .limit(limit)
            .all()
        )
        return [{column: value or "unknown", "count": count} for value, count in rows]

    @staticmethod
    def source_counts(db: Session, since: Optional[datetime] = None, limit: int = 10) -> List[Dict[str, Any]]:
        return LogRepository.column_counts(db, "source", since, limit)

    @staticmethod
    def source_level_matrix(db: Session, since: Optional[datetime] = None, limit: int = 10) -> Dict[str, Dict[str, int]]:
        top = [row["source"] for row in LogRepository.source_counts(db, since, limit)]
        query = db.query(LogEntry.source, LogEntry.level, func.count(LogEntry.id))
        if since:
            query = query.filter(LogEntry.timestamp >= since)
        matrix: Dict[str, Dict[str, int]] = {source: {} for source in top}
        for source, level, count in query.group_by(LogEntry.source, LogEntry.level).all():
            key = source or "unknown"
            if key in matrix:
                matrix[key][level] = count
        return matrix

    @staticmethod
    def hourly_counts(
        db: Session,
        hours: int = 24,
        levels: Optional[List[str]] = None,
        by_level: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Per-hour counts for the last `hours` hours, current hour last
        (zero-filled).

        With by_level each bucket also carries a {level: count} breakdown.
        """
        current = utc_now().replace(minute=0, second=0, microsecond=0)
        start = current - timedelta(hours=hours - 1)

        bucket = _hour_bucket(db, LogEntry.timestamp)
        columns = [bucket.label("hour"), func.count(LogEntry.id)]
        if by_level:
            columns.insert(1, LogEntry.level)
        query = db.query(*columns).filter(LogEntry.timestamp >= start)
        if levels:
            query = query.filter(LogEntry.level.in_(levels))
        group = [bucket, LogEntry.level] if by_level else [bucket]
        rows = query.group_by(*group).all()

        buckets = []
        index = {}
        for i in range(hours):
            hour = start + timedelta(hours=i)
            key = hour.strftime("%Y-%m-%d %H:00")
            item = {"hour": key, "count": 0}
            if by_level:
                item["levels"] = {}
            index[key] = item
            buckets.append(item)

        for row in rows:
            if by_level:
                key, level, count = row
            else:
                key, count = row
            item = index.get(key)
            if item is None:
                continue
            item["count"] += count
            if by_level:
                item["levels"][level] = item["levels"].get(level, 0) + count
        return buckets

    @staticmethod
    def delete_older_than(db: Session, days: int) -> int:
        cutoff = days_ago(days)
        deleted = db.query(LogEntry).filter(LogEntry.timestamp < cutoff).delete(synchronize_session=False)
        db.commit()
        logger.info(f"Deleted {deleted} log entries older than {days} days")
        return deleted


class ActivityRepository:
    """
    Repository for ActivityLog (audit trail) operations.
    """

    @staticmethod
    def log(
        db: Session,
        action: str,
        user_id: Optional[int] = None,
        username: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        status: str = "success",
    ) -> ActivityLog:
        entry = ActivityLog(
            user_id=user_id,
            username=username,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details or {},
            ip_address=ip_address,
            user_agent=(user_agent or "")[:500] or None,
            status=status,
        )
        db.add(entry)
        db.commit()
        return entry

    @staticmethod
    def _filtered(
        db: Session,
        user: Optional[str] = None,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[str] = None,
    ):
        query = db.query(ActivityLog)
        if user:
            if str(user).isdigit():
                query = query.filter(or_(ActivityLog.user_id == int(user), ActivityLog.username == user))
            else:
                query = query.filter(ActivityLog.username == user)
        if action:
            query = query.filter(ActivityLog.action.ilike(like_pattern(action), escape="\\"))
        if resource:
            query = query.filter(ActivityLog.resource_type == resource)
        if start:
            query = query.filter(ActivityLog.created_at >= start)
        if end:
            query = query.filter(ActivityLog.created_at <= end)
        if status:
            query = query.filter(ActivityLog.status == status)
        return query

    @staticmethod
    def query(
        db: Session,
        user: Optional[str] = None,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[ActivityLog], int]:
        """
        Filtered, paginated activity entries, newest first.

        Returns:
            (entries, total matching)
        """
        query = ActivityRepository._filtered(db, user, action, resource, start, end)
        total = query.count()
        entries = (
            query.order_by(desc(ActivityLog.created_at), desc(ActivityLog.id))
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return entries, total

    @staticmethod
    def search(
        db: Session,
        text: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ActivityLog], int]:
        filters = filters or {}
        query = ActivityRepository._filtered(
            db,
            user=filters.get("user"),
            action=filters.get("action"),
            resource=filters.get("resource"),
            start=to_naive_utc(filters.get("startDate")),
            end=to_naive_utc(filters.get("endDate")),
            status=filters.get("status"),
        )
        if text:
            pattern = like_pattern(text)
            query = query.filter(
                or_(
                    ActivityLog.action.ilike(pattern, escape="\\"),
                    ActivityLog.resource_type.ilike(pattern, escape="\\"),
                    ActivityLog.username.ilike(pattern, escape="\\"),
                    cast(ActivityLog.details, String).ilike(pattern, escape="\\"),
                )
            )
        total = query.count()
        entries = query.order_by(desc(ActivityLog.created_at)).offset(offset).limit(limit).all()
        return entries, total

    @staticmethod
    def recent_by_actions(db: Session, actions: List[str], since: Optional[datetime] = None, limit: int = 200) -> List[ActivityLog]:
        query = db.query(ActivityLog).filter(
            or_(*[ActivityLog.action.like(a.replace("*", "%")) for a in actions])
        )
        if since:
            query = query.filter(ActivityLog.created_at >= since)
        return query.order_by(desc(ActivityLog.created_at)).limit(limit).all()

    @staticmethod
    def count_since(db: Session, since: Optional[datetime] = None, status: Optional[str] = None) -> int:
        query = db.query(func.count(ActivityLog.id))
        if since:
            query = query.filter(ActivityLog.created_at >= since)
        if status:
            query = query.filter(ActivityLog.status == status)
        return query.scalar() or 0

    @staticmethod
    def action_counts(db: Session, limit: int = 5) -> List[Tuple[str, int]]:
        return (
            db.query(ActivityLog.action, func.count(ActivityLog.id).label("count"))
            .group_by(ActivityLog.action)
            .order_by(desc("count"))
            .limit(limit)
            .all()
        )

    @staticmethod
    def user_counts(db: Session, limit: int = 5) -> List[Tuple[str, int]]:
        rows = (
            db.query(ActivityLog.username, func.count(ActivityLog.id).label("count"))
            .group_by(ActivityLog.username)
            .order_by(desc("count"))
            .limit(limit)
            .all()
        )
        return [(username or "system", count) for username, count in rows]

    @staticmethod
    def delete_older_than(db: Session, days: int) -> int:
        cutoff = days_ago(days)
        deleted = db.query(ActivityLog).filter(ActivityLog.created_at < cutoff).delete(synchronize_session=False)
        db.commit()
        logger.info(f"Deleted {deleted} activity entries older than {days} days")
        return deleted

    @staticmethod
    def inactive_users(db: Session, days: int = 90) -> List[User]:
        cutoff = days_ago(days)
        return (
            db.query(User)
            .filter(User.active == True)  # noqa: E712
            .filter(or_(User.last_login == None, User.last_login < cutoff))  # noqa: E711
            .filter(User.created_at < cutoff)
            .all()
        )
