"""
Backup Job Scheduler

Schedules, runs and tracks backup jobs for the labs of a multi-tenant
management system.

Core Concepts:

BackupJob:
    A durable description of what to back up (source databases and file
    paths), where to put it (destination plus retention policy), when
    (schedule) and under which ordering constraints (dependencies).
    A job also carries the state of its current or latest run.

Execution:
    A single run of a BackupJob. Runs are started by the scheduler tick or
    manually, report progress and logs while running, and end completed,
    failed or cancelled. Every run leaves an ExecutionRecord in the job's
    history.

Executor:
    The storage-backend collaborator that performs the transfer for a
    destination type. Executors are registered with a BackupExecutorFactory.

Relationships:
    - A BackupJob has many ExecutionRecords, at most one of them running.
    - Dependencies between jobs of one tenant form an acyclic graph.
"""

from .engine import ExecutionEngine, StartResult
from .executor_factory import BackupExecutorFactory
from .scheduler import Scheduler
from .service import BackupService
from .storages.sqlalchemy import SqlAlchemyJobStore

__all__ = [
    "BackupExecutorFactory",
    "BackupService",
    "ExecutionEngine",
    "Scheduler",
    "SqlAlchemyJobStore",
    "StartResult",
]
