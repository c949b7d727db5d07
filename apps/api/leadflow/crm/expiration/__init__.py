from leadflow.crm.expiration.backoff import BackoffController
from leadflow.crm.expiration.config import SweepConfig
from leadflow.crm.expiration.executor import SweepExecutor, SweepOutcome, SweepResult
from leadflow.crm.expiration.scheduler import LeadExpirationScheduler, SchedulerState

__all__ = [
    "BackoffController",
    "LeadExpirationScheduler",
    "SchedulerState",
    "SweepConfig",
    "SweepExecutor",
    "SweepOutcome",
    "SweepResult",
]
