from dataclasses import dataclass
from typing import Dict, List, Optional, Type

from ndaflow.core.config import settings


@dataclass(frozen=True)
class WorkflowMetadata:
    workflow_class: Type
    name: str
    # None means the configured analysis task queue
    task_queue: Optional[str] = None

    @property
    def resolved_task_queue(self) -> str:
        return self.task_queue or settings.temporal_task_queue


class WorkflowRegistry:
    """Workflows the worker hosts, grouped by the task queue they listen on."""

    _workflows: Dict[str, WorkflowMetadata] = {}

    @classmethod
    def register(cls, task_queue: Optional[str] = None):
        """Decorator to register a workflow class."""
        def decorator(workflow_class):
            cls._workflows[workflow_class.__name__] = WorkflowMetadata(
                workflow_class=workflow_class,
                name=workflow_class.__name__,
                task_queue=task_queue,
            )
            return workflow_class
        return decorator

    @classmethod
    def get_all_workflows(cls) -> Dict[str, WorkflowMetadata]:
        return dict(cls._workflows)

    @classmethod
    def by_task_queue(cls) -> Dict[str, List[Type]]:
        queues: Dict[str, List[Type]] = {}
        for metadata in cls._workflows.values():
            queues.setdefault(metadata.resolved_task_queue, []).append(metadata.workflow_class)
        return queues
