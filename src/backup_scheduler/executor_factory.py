from typing import Dict, List, Type

from backup_scheduler.destination_check import destination_problems
from backup_scheduler.domain.job import Destination, DestinationType
from backup_scheduler.executors.protocol import BackupExecutor


class BackupExecutorFactory:
    """
    Factory class for creating backup executors per destination type.
    """
    def __init__(self):
        self._executors: Dict[DestinationType, Type[BackupExecutor]] = {}

    @property
    def supported_destinations(self) -> List[DestinationType]:
        return list(self._executors)

    def register(self, executor_class: Type[BackupExecutor]) -> None:
        """
        Register an executor class for every destination type it supports.

        Args:
            executor_class (Type[BackupExecutor]): The executor class to register.
        """
        destinations = [DestinationType(d) for d in executor_class.supported_destinations()]
        if not destinations:
            raise ValueError(f"Executor '{executor_class.__name__}' supports no destination types")
        for destination in destinations:
            if destination in self._executors:
                raise ValueError(f"An executor for destination '{destination.value}' is already registered")
        for destination in destinations:
            self._executors[destination] = executor_class

    def get_executor(self, destination: Destination) -> BackupExecutor:
        """
        Get an executor instance for a destination after validating its configuration.

        Args:
            destination (Destination): The job's destination.

        Returns:
            BackupExecutor: An instance of the appropriate executor.

        Raises:
            KeyError: If no executor is registered for the destination type.
            ValueError: If the destination configuration is invalid.
        """
        if destination.type not in self._executors:
            raise KeyError(f"No executor registered for destination '{destination.type.value}'")
        problems = destination_problems(destination)
        if problems:
            raise ValueError(f"Invalid destination configuration: {'; '.join(problems)}")
        return self._executors[destination.type]()
