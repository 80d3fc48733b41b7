"""Provisioning reconciliation: pollers, shared-parent locking and workflows."""

from .backoff import (
    DOWN_POLICY,
    JOB_COMPLETION_POLICY,
    READINESS_POLICY,
    BackoffBudget,
    BackoffDecision,
    BackoffPolicy,
    PollOutcome,
    PollResult,
    poll_until,
)
from .errors import (
    DeadlineExceeded,
    ErrorBudgetExceeded,
    ReconcileError,
    RemoteCallFailed,
    RemoteNotFound,
    RemoteTerminalFailure,
    TransientAPIError,
)
from .models import (
    AddNodeRecord,
    ApplianceRequest,
    Availability,
    ChildResource,
    HealthStatus,
    InstanceStatus,
    JobRecord,
    JobStatus,
    JobStatusFeed,
    RemoteApplianceState,
)
from .named_mutex import NamedMutex
from .orchestrator import ApplianceAPI, ApplianceOrchestrator
from .pollers import DownPoller, JobCompletionPoller, ReadinessPoller
from .shared_parent import SharedParentAPI, SharedParentOrchestrator
from .workflow import OperationTimeouts, StateStore

__all__ = [
    'AddNodeRecord',
    'ApplianceAPI',
    'ApplianceOrchestrator',
    'ApplianceRequest',
    'Availability',
    'BackoffBudget',
    'BackoffDecision',
    'BackoffPolicy',
    'ChildResource',
    'DOWN_POLICY',
    'DeadlineExceeded',
    'DownPoller',
    'ErrorBudgetExceeded',
    'HealthStatus',
    'InstanceStatus',
    'JOB_COMPLETION_POLICY',
    'JobCompletionPoller',
    'JobRecord',
    'JobStatus',
    'JobStatusFeed',
    'NamedMutex',
    'OperationTimeouts',
    'PollOutcome',
    'PollResult',
    'READINESS_POLICY',
    'ReadinessPoller',
    'ReconcileError',
    'RemoteApplianceState',
    'RemoteCallFailed',
    'RemoteNotFound',
    'RemoteTerminalFailure',
    'SharedParentAPI',
    'SharedParentOrchestrator',
    'StateStore',
    'TransientAPIError',
    'poll_until',
]
