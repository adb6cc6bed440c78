"""
Toast-style notices for the operator.

Failures never block or roll back a mutation; they are reported here as
dismissable messages.
"""

import itertools
from dataclasses import dataclass, field
from enum import Enum

from ledger_sync.timeutil import now_iso


class NoticeLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notice:
    id: int
    level: NoticeLevel
    message: str
    created_at: str = field(default_factory=now_iso)
    dismissed: bool = False


class NoticeBoard:
    """Bounded in-memory list of notices, newest last."""

    def __init__(self, limit: int = 50):
        self.limit = limit
        self._notices: list[Notice] = []
        self._ids = itertools.count(1)

    def post(self, message: str, level: NoticeLevel = NoticeLevel.INFO) -> Notice:
        notice = Notice(id=next(self._ids), level=level, message=message)
        self._notices.append(notice)
        if len(self._notices) > self.limit:
            self._notices = self._notices[-self.limit :]
        return notice

    def active(self) -> list[Notice]:
        return [n for n in self._notices if not n.dismissed]

    def dismiss(self, notice_id: int) -> bool:
        for notice in self._notices:
            if notice.id == notice_id and not notice.dismissed:
                notice.dismissed = True
                return True
        return False

    def clear(self) -> None:
        for notice in self._notices:
            notice.dismissed = True
