"""scriptwatch - run Apps Script functions and wait for their logs.

Cloud Logging is eventually consistent: entries for an execution show up
seconds to minutes after it ends. scriptwatch runs a function through the
Execution API and polls with bounded exponential backoff until its entries
are visible.
"""

__version__ = "0.1.0"

from scriptwatch.auth_monitor import wait_for_token
from scriptwatch.client import (
    BenchmarkReport,
    CycleResult,
    ExecutionResult,
    LogCollection,
    ScriptError,
    ScriptOpsClient,
)
from scriptwatch.logs import LatestExecution, LogEntry, LogRetriever
from scriptwatch.poller import (
    EventuallyConsistentPoller,
    ErrorKind,
    Failed,
    Matched,
    NonRetryableError,
    ObservedEvent,
    PollOptions,
    PollOutcome,
    TimedOut,
    TriggerEvent,
    poll_until_match,
)
from scriptwatch.transport import (
    APIError,
    AuthenticationError,
    GoogleCloudTransport,
    LocalFileTransport,
    NotFoundError,
    Transport,
    TransportError,
)

__all__ = [
    "APIError",
    "AuthenticationError",
    "BenchmarkReport",
    "CycleResult",
    "ErrorKind",
    "EventuallyConsistentPoller",
    "ExecutionResult",
    "Failed",
    "GoogleCloudTransport",
    "LatestExecution",
    "LocalFileTransport",
    "LogCollection",
    "LogEntry",
    "LogRetriever",
    "Matched",
    "NonRetryableError",
    "NotFoundError",
    "ObservedEvent",
    "PollOptions",
    "PollOutcome",
    "ScriptError",
    "ScriptOpsClient",
    "TimedOut",
    "Transport",
    "TransportError",
    "TriggerEvent",
    "__version__",
    "poll_until_match",
    "wait_for_token",
]
