from .cache import InstanceCache, LRUCache, NullCache
from .dispatcher import ExecutionDispatcher, ExecutionOutcome, execute_with_idempotency
from .idempotency import IDEMPOTENCY_HEADER, new_action_id, resolve_action_id
from .registry import ExecutionContext, OperationContext, OperationRegistry, default_registry

__all__ = [
    "InstanceCache",
    "LRUCache",
    "NullCache",
    "ExecutionDispatcher",
    "ExecutionOutcome",
    "execute_with_idempotency",
    "IDEMPOTENCY_HEADER",
    "new_action_id",
    "resolve_action_id",
    "ExecutionContext",
    "OperationContext",
    "OperationRegistry",
    "default_registry",
]
