"""
Bounded JSON parsing for inbox payloads
"""
import json
from typing import Any, Dict

from flask import current_app


class SafeJSONParser:
    """
    JSON parser that refuses payloads which are too large, too deeply nested, have too many keys or have
    oversized arrays. Limits come from the app config.
    """

    DEFAULT_MAX_SIZE = 1_000_000  # 1MB
    DEFAULT_MAX_DEPTH = 50
    DEFAULT_MAX_KEYS = 1000
    DEFAULT_MAX_ARRAY_LENGTH = 10000

    def __init__(self):
        self.max_size = current_app.config.get('MAX_JSON_SIZE', self.DEFAULT_MAX_SIZE)
        self.max_depth = current_app.config.get('MAX_JSON_DEPTH', self.DEFAULT_MAX_DEPTH)
        self.max_keys = current_app.config.get('MAX_JSON_KEYS', self.DEFAULT_MAX_KEYS)
        self.max_array_length = current_app.config.get('MAX_JSON_ARRAY_LENGTH', self.DEFAULT_MAX_ARRAY_LENGTH)

    def parse(self, data: bytes) -> Dict[str, Any]:
        """
        Parse an activity document

        Raises:
            ValueError: If the JSON is malformed, exceeds a limit, or is not an object
        """
        if not data:
            raise ValueError("Empty JSON data")
        if len(data) > self.max_size:
            raise ValueError(f"JSON too large: {len(data)} bytes exceeds maximum of {self.max_size}")

        try:
            result = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}")
        except UnicodeDecodeError as e:
            raise ValueError(f"JSON is not valid UTF-8: {e}")
        except RecursionError:
            raise ValueError(f"JSON nested too deeply (max depth: {self.max_depth})")

        if not isinstance(result, dict):
            raise ValueError("Activity must be a JSON object")

        self._check_limits(result)
        return result

    def _check_limits(self, root: Any):
        total_keys = 0
        stack = [(root, 1)]
        while stack:
            value, depth = stack.pop()
            if depth > self.max_depth:
                raise ValueError(f"JSON too deeply nested: depth {depth} exceeds maximum of {self.max_depth}")
            if isinstance(value, dict):
                total_keys += len(value)
                if total_keys > self.max_keys:
                    raise ValueError(f"Too many total keys: {total_keys} exceeds maximum of {self.max_keys}")
                stack.extend((child, depth + 1) for child in value.values())
            elif isinstance(value, list):
                if len(value) > self.max_array_length:
                    raise ValueError(f"Array too large: {len(value)} items exceeds maximum of {self.max_array_length}")
                stack.extend((child, depth + 1) for child in value)
