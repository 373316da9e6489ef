from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._implementations


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background tasks."""

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        """
        Handle a background job.

        Args:
            payload: Job-specific parameters

        Returns:
            Optional result dictionary reported with the completion observation
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Closed table of job handlers for a single queue."""

    def __init__(self, queue_name: str):
        super().__init__("Job")
        self.queue_name = queue_name


# External collaborators consumed by the job handlers and bot middleware
class FollowUpOperations(Protocol):
    """Follow-up messaging operations. Both calls are safe to retry."""

    async def send_follow_up(self, follow_up_id: int) -> Any:
        ...

    async def process_pending_follow_ups(self) -> Any:
        ...


class ReportOperations(Protocol):
    """Analytics report generation."""

    async def generate_report(self, options: dict[str, Any]) -> Any:
        """Generate a report; ``options`` carries ``report_type`` and any extras."""
        ...


class BotTransport(Protocol):
    """Chat transport used to talk back to users."""

    async def send_message(self, chat_id: int | str, text: str) -> Any:
        ...

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        show_alert: bool = False,
    ) -> Any:
        ...
