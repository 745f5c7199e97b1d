"""Optimistic synchronization of race and application collections.

Keeps local mirrors of the races and applications held by the race
services responsive under latency and partial failure:
- EntityStore: ordered, keyed local collections
- MutationController: optimistic writes with rollback
- ReconciliationScheduler: delayed authoritative refreshes
- AuthGate: credential handling with retried token requests
"""

from .auth import AuthGate
from .classifier import ClassificationRule, ErrorClassifier
from .config import Config, load_config
from .engine import SyncEngine
from .errors import ErrorCategory, SyncError
from .models import Application, Distance, Race, Role
from .mutations import MutationController, MutationOutcome, MutationStatus
from .reconcile import ReconciliationScheduler, ScheduledRefresh
from .retry import RetryPolicy
from .store import EntityStore

__all__ = [
    "Application",
    "AuthGate",
    "ClassificationRule",
    "Config",
    "Distance",
    "EntityStore",
    "ErrorCategory",
    "ErrorClassifier",
    "MutationController",
    "MutationOutcome",
    "MutationStatus",
    "Race",
    "ReconciliationScheduler",
    "RetryPolicy",
    "Role",
    "ScheduledRefresh",
    "SyncEngine",
    "SyncError",
    "load_config",
]
