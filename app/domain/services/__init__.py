"""
Domain Services
"""
from app.domain.services.catalog import DefaultCatalog
from app.domain.services.closure_queue import RedisClosureQueue, RetryPolicy
from app.domain.services.closure_scheduler import ClosureScheduler
from app.domain.services.intent_classifier import IntentClassifier
from app.domain.services.tool_executor import ToolExecutor
from app.domain.services.user_service import UserService

__all__ = [
    "DefaultCatalog",
    "RedisClosureQueue",
    "RetryPolicy",
    "ClosureScheduler",
    "IntentClassifier",
    "ToolExecutor",
    "UserService",
]
