"""
Task admission. Turns a verified push event into a queued Task.

Only pushes to branches are valid; only pushes to the target branch do
work. Pushes to other branches and branch deletions are accepted and
ignored, so GitHub sees a 200 and does not retry them.
"""

import pydantic
from loguru import logger

from deployd.api_models import PushEvent
from deployd.errors import InvalidPayload, NotBranch
from deployd.models import Task
from deployd.task_queue import TaskQueue


BRANCH_PREFIX = "refs/heads/"


def parse_push_event(payload: bytes) -> PushEvent:
    """Deserialize a push event. Call only after the signature checked out."""
    try:
        return PushEvent.model_validate_json(payload)
    except pydantic.ValidationError as e:
        raise InvalidPayload(f"invalid push event: {e}") from e


def branch_of(reference: str) -> str:
    if not reference.startswith(BRANCH_PREFIX):
        raise NotBranch(f"ref {reference!r} is not refs/heads/<branch>")
    branch = reference[len(BRANCH_PREFIX):]
    if not branch:
        raise NotBranch(f"ref {reference!r} has an empty branch name")
    return branch


class TaskAdmission:
    """Validate push events and hand the resulting tasks to the queue."""

    def __init__(self, queue: TaskQueue, target_branch: str = "master"):
        self.queue = queue
        self.target_branch = target_branch

    def task_for(self, event: PushEvent) -> Task | None:
        """The Task for event, or None if the push is ignored."""
        branch = branch_of(event.reference)
        if branch != self.target_branch:
            logger.info("Ignoring push to {} (only {} is deployed)",
                        branch, self.target_branch)
            return None
        if event.deleted or event.after.strip("0") == "":
            logger.info("Ignoring deletion of branch {}", branch)
            return None
        return Task(
            owner=event.repository.owner.login,
            repository=event.repository.name,
            branch=branch,
            commit_hash=event.after,
            source_url=event.repository.url,
        )

    def admit(self, event: PushEvent) -> Task | None:
        """
        Queue the task for event. Returns the queued task, or None when the
        push was ignored. Raises NotBranch, QueueFull or QueueClosed.
        """
        task = self.task_for(event)
        if task is None:
            return None
        try:
            self.queue.submit(task)
        except Exception as e:
            logger.error("Failed to queue build task for {}: {}", task.key, e)
            raise
        logger.info("Queued build of {} at {}", task.key, task.commit_hash)
        return task
