"""Task mutations that keep the tag cache in step with storage."""

import logging
from datetime import datetime
from typing import Optional

from .models import Task
from .stores import TaskStore
from .tags import TagResolver

logger = logging.getLogger(__name__)

GENERIC_CLIENT_NAME = "Internal"
GENERIC_PROJECT_NAME = "Uncategorized"


class TaskError(Exception):
    """Base exception for task management errors."""
    pass


class TaskNotFoundError(TaskError):
    pass


class ProjectNotFoundError(TaskError):
    pass


class TaskConflictError(TaskError):
    """Tag already used by another task, or protected generic task."""
    pass


class TaskService:
    """Creates, updates and deletes tasks, notifying the tag resolver."""

    def __init__(self, task_store: TaskStore, resolver: TagResolver):
        self.task_store = task_store
        self.resolver = resolver
        self.logger = logger.getChild('task_service')

    def _normalized_tag(self, tag: str) -> str:
        normalized = self.resolver.normalize(tag)
        if normalized is None or normalized == '#':
            raise ValueError("Task tag must not be empty")
        return normalized

    def create_task(
        self,
        name: str,
        tag: str,
        project_id: int,
        description: Optional[str] = None,
        starts_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None,
        active: bool = True,
    ) -> Task:
        """Create a task.

        Raises:
            TaskConflictError: If the tag is already taken
            ProjectNotFoundError: If the project does not exist
        """
        tag = self._normalized_tag(tag)
        if self.task_store.tag_exists(tag):
            raise TaskConflictError(f"A task with tag {tag} already exists")
        if not self.task_store.project_exists(project_id):
            raise ProjectNotFoundError(f"Project {project_id} not found")

        task = self.task_store.add(
            name=name,
            tag=tag,
            project_id=project_id,
            description=description,
            starts_at=starts_at,
            ends_at=ends_at,
            active=active,
        )
        self.resolver.on_task_saved(task)
        self.logger.info(f"Created task {task.id} with tag {task.tag}")
        return task

    def update_task(self, task_id: int, **changes) -> Task:
        """Update task fields (``name``, ``tag``, ``project_id``, ``description``,
        ``starts_at``, ``ends_at``, ``active``).

        Raises:
            TaskNotFoundError: If the task does not exist
            TaskConflictError: If the new tag is taken, or the generic task would be re-tagged
            ProjectNotFoundError: If the new project does not exist
        """
        existing = self.task_store.get(task_id)
        if existing is None:
            raise TaskNotFoundError(f"Task {task_id} not found")

        if 'tag' in changes:
            changes['tag'] = self._normalized_tag(changes['tag'])
            if changes['tag'] != existing.tag:
                if existing.tag == self.resolver.generic_tag:
                    raise TaskConflictError("The generic task's tag cannot be changed")
                if self.task_store.tag_exists(changes['tag'], exclude_task_id=task_id):
                    raise TaskConflictError(f"A task with tag {changes['tag']} already exists")
        if 'project_id' in changes and not self.task_store.project_exists(changes['project_id']):
            raise ProjectNotFoundError(f"Project {changes['project_id']} not found")

        task = self.task_store.update(task_id, **changes)
        self.resolver.on_task_saved(task)
        if task.tag != existing.tag:
            self.logger.info(f"Task {task_id} re-tagged {existing.tag} -> {task.tag}")
        return task

    def delete_task(self, task_id: int) -> None:
        """Delete a task.

        Raises:
            TaskNotFoundError: If the task does not exist
            TaskConflictError: If it is the generic task, or events still reference it
        """
        existing = self.task_store.get(task_id)
        if existing is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if existing.tag == self.resolver.generic_tag:
            raise TaskConflictError("The generic task cannot be deleted")
        referenced = self.task_store.event_count(task_id)
        if referenced:
            raise TaskConflictError(
                f"Task {existing.tag} is referenced by {referenced} events and cannot be deleted"
            )

        self.resolver.on_task_deleted(task_id)
        self.task_store.delete(task_id)
        self.logger.info(f"Deleted task {task_id} ({existing.tag})")

    def ensure_generic_task(self) -> Task:
        """Create the generic task (and its internal client/project) if it is missing."""
        existing = self.task_store.find_by_tag(self.resolver.generic_tag)
        if existing is not None:
            self.resolver.on_task_saved(existing)
            return existing

        project_id = self.task_store.ensure_project(GENERIC_PROJECT_NAME, GENERIC_CLIENT_NAME)
        return self.create_task(
            name="Generic",
            tag=self.resolver.generic_tag,
            project_id=project_id,
            description="Events without a recognised tag",
        )
