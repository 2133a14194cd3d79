from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from jobqueue.jobs.schemas import JobContext

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
                "registry is frozen in production mode"
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


# Handler signature: async def handler(ctx: JobContext) -> Any
JobHandler = Callable[["JobContext"], Awaitable[Any] | Any]


@dataclass(frozen=True)
class HandlerOptions:
    """Per job type overrides applied by the queue."""

    max_retries: int | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True)
class HandlerRegistration:
    handler: JobHandler
    options: HandlerOptions = field(default_factory=HandlerOptions)


def job_type_name(job_type: str | Enum) -> str:
    """Normalise a job type (plain string or str-valued enum member) to its stored value."""
    if isinstance(job_type, Enum):
        return str(job_type.value)
    return job_type


class HandlerRegistry(Registry[HandlerRegistration]):
    """Registry mapping job types to their handlers and options."""

    def __init__(self):
        super().__init__("Handler")

    def register(  # type: ignore[override]
        self,
        job_type: str | Enum,
        handler: JobHandler,
        options: HandlerOptions | None = None,
    ) -> None:
        """Register a handler for a job type. Re-registration replaces the previous one."""
        super().register(
            job_type_name(job_type),
            HandlerRegistration(handler=handler, options=options or HandlerOptions()),
        )

    def lookup(self, job_type: str | Enum) -> HandlerRegistration | None:
        """Return the registration for a job type, or None when nothing is registered."""
        try:
            return self.get(job_type_name(job_type))
        except KeyError:
            return None

    def options_for(self, job_type: str | Enum) -> HandlerOptions:
        registration = self.lookup(job_type)
        return registration.options if registration else HandlerOptions()

    def handler(
        self, job_type: str | Enum, options: HandlerOptions | None = None
    ) -> Callable[[JobHandler], JobHandler]:
        """Decorator to register a handler."""

        def decorator(fn: JobHandler) -> JobHandler:
            self.register(job_type, fn, options)
            return fn

        return decorator
