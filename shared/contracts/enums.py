from enum import Enum


class IntervalUnit(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class DoseStatus(str, Enum):
    DUE = "due"
    TAKEN = "taken"
    SKIPPED = "skipped"


class DoseAction(str, Enum):
    TAKE = "take"
    SKIP = "skip"
    SNOOZE = "snooze"


class NotificationKind(str, Enum):
    REMINDER = "reminder"
    OVERDUE = "overdue"


class ScheduleMode(str, Enum):
    FIXED_TIME = "fixed_time"
    INTERVAL = "interval"
