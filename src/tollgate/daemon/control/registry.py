"""Operation registry and per-identity execution contexts."""

from __future__ import annotations

import asyncio
import importlib
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from ..errors import UnknownOperation
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

OperationFunc = Callable[[Any, "OperationContext"], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class OperationContext:
    """What an operation sees about the request it runs for."""

    identity_id: str
    action_id: str
    operation_name: str


@dataclass
class BoundOperation:
    name: str
    func: OperationFunc

    async def run(self, payload: Any, ctx: OperationContext) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(payload, ctx)
        # Blocking operations must not stall the event loop.
        result = await asyncio.to_thread(self.func, payload, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass
class ExecutionContext:
    """Stateless per-identity handle: the operation table bound for one identity.

    Holds no balances or records, so dropping it loses nothing.
    """

    identity_id: str
    operations: dict[str, BoundOperation]
    created_at: float = field(default_factory=time.monotonic)

    def get(self, name: str) -> BoundOperation:
        op = self.operations.get(name)
        if op is None:
            raise UnknownOperation(name)
        return op


class OperationRegistry:
    def __init__(self):
        self._operations: dict[str, OperationFunc] = {}

    def register(self, name: str, func: OperationFunc | None = None):
        """Register ``func`` under ``name``; usable as a decorator."""

        def _decorator(f: OperationFunc) -> OperationFunc:
            if name in self._operations:
                raise ValueError(f"Operation '{name}' already registered")
            self._operations[name] = f
            return f

        if func is not None:
            return _decorator(func)
        return _decorator

    def names(self) -> list[str]:
        return sorted(self._operations)

    def __contains__(self, name: object) -> bool:
        return name in self._operations

    def build_context(self, identity_id: str) -> ExecutionContext:
        return ExecutionContext(
            identity_id=identity_id,
            operations={name: BoundOperation(name, func) for name, func in self._operations.items()},
        )

    def load_module(self, dotted: str) -> None:
        """Import a module exposing ``register_operations(registry)``."""
        module = importlib.import_module(dotted)
        hook = getattr(module, "register_operations", None)
        if hook is None:
            raise ValueError(f"Module '{dotted}' has no register_operations(registry) hook")
        hook(self)
        logger.info("Operations module loaded", module=dotted, operations=self.names())


def _echo(payload: Any, ctx: OperationContext) -> Any:
    return payload


def default_registry() -> OperationRegistry:
    registry = OperationRegistry()
    registry.register("echo", _echo)
    return registry
