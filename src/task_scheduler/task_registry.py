import inspect
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel

from task_scheduler.domain.task import TaskDefinition
from task_scheduler.errors import UnknownTaskError
from task_scheduler.executors.protocol import TaskHandler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredTask:
    definition: TaskDefinition
    handler: TaskHandler
    request_schema: Optional[Type[BaseModel]] = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler.execute)


class TaskRegistry:
    """
    Maps task names to their handlers.

    Everything about a task (name, description, tags, request schema) is
    resolved here, once, when the handler is registered.
    """
    def __init__(self):
        self._tasks: Dict[str, RegisteredTask] = {}

    def register(
        self,
        handler: Any,
        name: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> TaskDefinition:
        """
        Register a task handler.

        Args:
            handler: A handler instance, or a handler class with a no-argument constructor.
            name: Task name. Defaults to the handler's ``task_name`` attribute, then its type name.
            description: Defaults to the first line of the handler docstring, then its type name.
            tags: Defaults to the handler's ``tags`` attribute.

        Returns:
            TaskDefinition: The fully resolved definition.

        Raises:
            ValueError: If the handler has no ``execute`` method or the name is taken.
        """
        if inspect.isclass(handler):
            handler = handler()
        if not callable(getattr(handler, "execute", None)):
            raise ValueError(f"Handler {type(handler).__name__} does not implement execute()")

        type_name = type(handler).__name__
        name = name or getattr(handler, "task_name", None) or type_name
        if name in self._tasks:
            raise ValueError(f"A task named '{name}' is already registered")

        if description is None:
            description = getattr(handler, "description", None) or _first_doc_line(handler) or type_name
        if tags is None:
            tags = getattr(handler, "tags", None) or ()
        request_schema = getattr(handler, "request_schema", None)

        definition = TaskDefinition(
            name=name,
            description=description,
            tags=frozenset(tags),
            request_schema_name=request_schema.__name__ if request_schema else None,
        )
        self._tasks[name] = RegisteredTask(definition=definition, handler=handler, request_schema=request_schema)
        logger.debug("Registered task '%s' (%s)", name, type_name)
        return definition

    def get(self, name: str) -> RegisteredTask:
        """
        Raises:
            UnknownTaskError: If no task is registered under ``name``.
        """
        try:
            return self._tasks[name]
        except KeyError:
            raise UnknownTaskError(f"No task registered with name '{name}'") from None

    def validate_request(self, name: str, request: Any) -> None:
        """
        Check ``request`` against the task's request schema, if it declares one.

        Raises:
            UnknownTaskError: If the task is not registered.
            ValueError: If the request does not match the schema.
        """
        task = self.get(name)
        if task.request_schema is None:
            return
        try:
            task.request_schema.model_validate(request)
        except ValueError as e:
            raise ValueError(f"Invalid request for task '{name}': {str(e)}") from e

    def definitions(self) -> List[TaskDefinition]:
        return [task.definition for task in self._tasks.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)


def _first_doc_line(handler: Any) -> Optional[str]:
    doc = type(handler).__doc__
    if not doc or not doc.strip():
        return None
    return inspect.cleandoc(doc).splitlines()[0]
