"""ActivityStreams activity as a typed record"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Union

from fedsync.utils import object_to_uri

ObjectRef = Union[str, Dict[str, Any], List[Any]]

# attribute name -> JSON key, where they differ
_RENAMED = {
    'context': '@context',
    'attributed_to': 'attributedTo',
    'in_reply_to': 'inReplyTo',
}

_ADDRESSING = ('to', 'cc', 'bto', 'bcc', 'audience')


@dataclass(frozen=True, slots=True)
class Activity:
    """
    An inbound or outbound activity with the properties we care about pulled out.

    Anything else ends up in `extra` and is written back by `to_dict`, so a document survives a
    from_dict/to_dict round trip with its unknown extension properties intact.
    """
    type: Optional[str] = None
    id: Optional[str] = None
    actor: Optional[ObjectRef] = None
    object: Optional[ObjectRef] = None
    target: Optional[ObjectRef] = None
    instrument: Optional[ObjectRef] = None
    to: Optional[ObjectRef] = None
    cc: Optional[ObjectRef] = None
    bto: Optional[ObjectRef] = None
    bcc: Optional[ObjectRef] = None
    audience: Optional[ObjectRef] = None
    attributed_to: Optional[ObjectRef] = None
    in_reply_to: Optional[ObjectRef] = None
    published: Optional[str] = None
    context: Optional[Any] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Activity':
        if not isinstance(data, dict):
            raise TypeError('activity must be a JSON object')
        kwargs: Dict[str, Any] = {}
        consumed = set()
        for f in fields(cls):
            if f.name == 'extra':
                continue
            key = _RENAMED.get(f.name, f.name)
            if data.get(key) is not None:
                kwargs[f.name] = data[key]
                consumed.add(key)
        kwargs['extra'] = {key: value for key, value in data.items() if key not in consumed}
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for f in fields(self):
            if f.name == 'extra':
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            result[_RENAMED.get(f.name, f.name)] = value
        result.update(self.extra)
        return result

    @property
    def actor_id(self) -> Optional[str]:
        return object_to_uri(self.actor)

    @property
    def object_id(self) -> Optional[str]:
        return object_to_uri(self.object)

    @property
    def object_type(self) -> Optional[str]:
        if isinstance(self.object, dict):
            object_type = self.object.get('type')
            return object_type if isinstance(object_type, str) else None
        return None

    def addressed_to(self) -> List[str]:
        """Every URI in the addressing fields, without duplicates, in order"""
        seen: List[str] = []
        for name in _ADDRESSING:
            value = getattr(self, name)
            if value is None:
                continue
            items = value if isinstance(value, list) else [value]
            for item in items:
                uri = object_to_uri(item)
                if uri and uri not in seen:
                    seen.append(uri)
        return seen
