"""Dispatch and correlation engine.

Modules
-------
runner      Runner, ExecutionGuard, RunnerServer, RunnerClient
caller      DirectCaller, CallerHandle, reconnect hook plumbing
pool        PooledCaller, Worker, select_least_loaded
"""

from remote_promises.dispatch.caller import CallerHandle, DirectCaller, ReconnectHook
from remote_promises.dispatch.pool import PooledCaller, Worker, select_least_loaded
from remote_promises.dispatch.runner import (
    ExecutionGuard,
    Runner,
    RunnerClient,
    RunnerServer,
    WorkFunction,
)

__all__ = [
    "CallerHandle",
    "DirectCaller",
    "ExecutionGuard",
    "PooledCaller",
    "ReconnectHook",
    "Runner",
    "RunnerClient",
    "RunnerServer",
    "WorkFunction",
    "Worker",
    "select_least_loaded",
]
