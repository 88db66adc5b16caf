"""
Inbox dispatch.

An activity that made it past the signature gate is classified by type and handed to every listener registered for
it. The notifications go out in a fixed order:

    inbox                      any activity
    inbox_<type>               e.g. inbox_accept, inbox_quote_request
    handled_inbox              any activity, with the handled outcome set
    handled_inbox_<type>

Listeners for one event run in registration order. "Handled" comes from a structural predicate registered per
activity type. A type nobody registered a predicate for is simply not handled.

Each listener runs at most once per activity id, tracked through a claim callback (the InboxStore ledger in the app).
"""
from __future__ import annotations
import logging
import traceback
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from fedsync.activitypub.activity import Activity
from fedsync.federation.types import InboxEvent
from fedsync.hooks import HookRegistry
from fedsync.utils import camel_to_snake_case

logger = logging.getLogger(__name__)

Listener = Callable[[InboxEvent], Any]
Predicate = Callable[[Dict[str, Any]], bool]
Validator = Callable[[bool, Dict[str, Any]], bool]
ClaimFunc = Callable[[str, str], bool]


def listener_name(func: Callable) -> str:
    return f"{func.__module__}.{getattr(func, '__qualname__', func.__name__)}"


class InboxDispatcher:
    """Explicit registry of inbox listeners, handled-predicates and validators, keyed by activity type"""

    def __init__(self, object_types: Iterable[str] = ()):
        self._listeners = HookRegistry()
        self._validators = HookRegistry()
        self._predicates: Dict[str, Predicate] = {}
        self.object_types: Set[str] = set(object_types)
        self.claim: Optional[ClaimFunc] = None

    # registration

    def add_listener(self, event: str, func: Listener) -> Listener:
        """Register for 'inbox', 'inbox_<type>', 'handled_inbox' or 'handled_inbox_<type>'"""
        return self._listeners.add(event, func)

    def remove_listener(self, event: str, func: Listener) -> bool:
        return self._listeners.remove(event, func)

    def on(self, event: str):
        """Decorator form of add_listener"""
        def decorator(func: Listener) -> Listener:
            return self.add_listener(event, func)
        return decorator

    def register_predicate(self, activity_type: str, predicate: Predicate):
        self._predicates[activity_type] = predicate

    def register_object_type(self, object_type: str):
        self.object_types.add(object_type)

    def register_validator(self, func: Validator) -> Validator:
        return self._validators.add('validate_object', func)

    def listeners(self, event: str) -> List[str]:
        return [func.__name__ for func in self._listeners.handlers(event)]

    def reset(self):
        self._listeners.clear()
        self._validators.clear()
        self._predicates.clear()
        self.object_types.clear()
        self.claim = None

    # classification

    @staticmethod
    def activity_type(data: Dict[str, Any]) -> str:
        value = data.get('type')
        return camel_to_snake_case(value) if isinstance(value, str) else ''

    def validate_object(self, data: Dict[str, Any]) -> bool:
        """Run the validate_object chain. An activity without a type is never valid, nor is one a validator chokes on."""
        if not isinstance(data, dict) or not data.get('type'):
            return False
        valid = True
        for validator in self._validators.handlers('validate_object'):
            try:
                valid = validator(valid, data)
            except Exception as e:
                logger.error(f"Error in validator {validator.__name__} for {data.get('id')}: {e}\n"
                             f"{traceback.format_exc()}")
                return False
        return bool(valid)

    def is_handled(self, activity_type: str, data: Dict[str, Any]) -> bool:
        predicate = self._predicates.get(activity_type)
        if predicate is None:
            return False
        try:
            return bool(predicate(data))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.info(f"Predicate for {activity_type} rejected {data.get('id')}: {e}")
            return False

    # dispatch

    def dispatch(self, activity_data: Dict[str, Any], recipient_user_ids: Iterable[int], activity_type: str = '',
                 activity: Optional[Activity] = None, headers: Optional[Dict[str, str]] = None) -> bool:
        """Notify every interested listener about one activity and return whether it counts as handled"""
        if not activity_type:
            activity_type = self.activity_type(activity_data)
        if activity is None:
            try:
                activity = Activity.from_dict(activity_data)
            except TypeError:
                activity = None

        event = InboxEvent(data=activity_data, user_ids=list(recipient_user_ids), activity_type=activity_type,
                           activity=activity, headers=dict(headers or {}))

        self._notify('inbox', event)
        if activity_type:
            self._notify(f'inbox_{activity_type}', event)

        event.handled = self.is_handled(activity_type, activity_data)

        self._notify('handled_inbox', event)
        if activity_type:
            self._notify(f'handled_inbox_{activity_type}', event)

        logger.debug(f"Dispatched {activity_type or 'untyped'} activity {event.activity_id}, handled={event.handled}")
        return event.handled

    def _notify(self, event_name: str, event: InboxEvent):
        for func in self._listeners.handlers(event_name):
            if not self._claim(event, event_name, func):
                logger.debug(f"Skipping {func.__name__} for {event.activity_id}, already ran")
                continue
            try:
                func(event)
            except Exception as e:
                logger.error(f"Error in inbox listener {func.__name__} for {event_name}: {e}\n"
                             f"{traceback.format_exc()}")

    def _claim(self, event: InboxEvent, event_name: str, func: Callable) -> bool:
        if self.claim is None or event.activity_id is None:
            return True
        return self.claim(event.activity_id, f"{event_name}:{listener_name(func)}")
