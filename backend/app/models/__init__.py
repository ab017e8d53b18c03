from .auth import User, SessionToken
from .security import SecurityEvent
from .requests import PurchaseRequest, RequestItem, RequestHistory, RequestSequence
from .automation import AutomationConfig

__all__ = [
    'User', 'SessionToken', 'SecurityEvent',
    'PurchaseRequest', 'RequestItem', 'RequestHistory', 'RequestSequence',
    'AutomationConfig',
]
