"""
Hook registry

Filters pass a value through every handler and return the result; actions just notify. Handlers run in the order
they were registered.
"""

import os
from functools import wraps
from typing import Dict, List, Callable, Any
import logging
import traceback

logger = logging.getLogger(__name__)


class HookRegistry:
    """An explicit, ordered set of handlers per hook name"""

    def __init__(self):
        self._hooks: Dict[str, List[Callable]] = {}

    def add(self, hook_name: str, func: Callable) -> Callable:
        handlers = self._hooks.setdefault(hook_name, [])
        if func not in handlers:
            handlers.append(func)
            if int(os.environ.get("FLASK_DEBUG", "0")):
                logger.info(f"Registered hook '{hook_name}' -> {func.__name__}")
        return func

    def remove(self, hook_name: str, func: Callable) -> bool:
        handlers = self._hooks.get(hook_name, [])
        if func in handlers:
            handlers.remove(func)
            return True
        return False

    def handlers(self, hook_name: str) -> List[Callable]:
        return list(self._hooks.get(hook_name, []))

    def has(self, hook_name: str) -> bool:
        return bool(self._hooks.get(hook_name))

    def filter(self, hook_name: str, data: Any = None, **kwargs) -> Any:
        """
        Fire a filter hook

        Args:
            hook_name: Name of the hook to fire
            data: Value passed to the first handler
            **kwargs: Additional keyword arguments for every handler

        Returns:
            The value returned by the last handler (data if nobody is registered)
        """
        handlers = self.handlers(hook_name)
        if not handlers:
            return data

        logger.debug(f"Firing hook '{hook_name}' with {len(handlers)} handlers")

        result = data
        for handler in handlers:
            try:
                result = handler(result, **kwargs)
            except Exception as e:
                logger.error(
                    f"Error in hook handler {handler.__name__}: {e}\n{traceback.format_exc()}"
                )
        return result

    def emit(self, hook_name: str, *args, **kwargs) -> int:
        """Fire an action hook. Returns how many handlers completed without raising."""
        completed = 0
        for handler in self.handlers(hook_name):
            try:
                handler(*args, **kwargs)
                completed += 1
            except Exception as e:
                logger.error(
                    f"Error in hook handler {handler.__name__}: {e}\n{traceback.format_exc()}"
                )
        return completed

    def registered(self) -> Dict[str, List[str]]:
        return {name: [handler.__name__ for handler in handlers] for name, handlers in self._hooks.items()}

    def clear(self):
        self._hooks.clear()


# Global hook registry
_registry = HookRegistry()


def hook(hook_name: str):
    """
    Decorator to register a function as a hook handler

    Usage:
        @hook("defer_signature_verification")
        def trust_everything(defer, request=None):
            return True
    """

    def decorator(func: Callable):
        _registry.add(hook_name, func)

        @wraps(func)
        def wrapper(*args, **kwargs):
            return func(*args, **kwargs)

        return wrapper

    return decorator


def add_hook(hook_name: str, func: Callable) -> Callable:
    return _registry.add(hook_name, func)


def remove_hook(hook_name: str, func: Callable) -> bool:
    return _registry.remove(hook_name, func)


def fire_hook(hook_name: str, data: Any = None, **kwargs) -> Any:
    return _registry.filter(hook_name, data, **kwargs)


def fire_action(hook_name: str, *args, **kwargs) -> int:
    return _registry.emit(hook_name, *args, **kwargs)


def get_registered_hooks() -> Dict[str, List[str]]:
    return _registry.registered()


def clear_hooks():
    """Clear all registered hooks (useful for testing)"""
    _registry.clear()
