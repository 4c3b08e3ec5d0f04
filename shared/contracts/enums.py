from enum import Enum


class Platform(str, Enum):
    ANDROID = "android"
    IOS = "ios"


class NotificationEventType(str, Enum):
    DELIVERED = "delivered"
    ACTION_PRESS = "action-press"


class PressActionId(str, Enum):
    DEFAULT = "default"
    CONFIRM = "confirm"
    NOT_NOW = "not_now"


class ModalAction(str, Enum):
    CONFIRM = "confirm"
    TIMEOUT = "timeout"


class RepeatFrequency(str, Enum):
    DAILY = "daily"


class TriggerType(str, Enum):
    TIMESTAMP = "timestamp"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class RouteOutcome(str, Enum):
    IGNORED = "ignored"
    MODAL_SHOWN = "modal_shown"
    PENDING_RECORDED = "pending_recorded"
    CONFIRMED = "confirmed"
    MISSED = "missed"
