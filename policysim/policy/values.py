"""Generic navigation over loosely-typed JSON property bags.

Resource payloads returned by the management API are plain JSON trees. This
module provides the single path-navigation function used by the property
accessor, plus tolerant JSON decoding for response bodies that may be
string-encoded or carry case-variant duplicate keys.
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple, Union


# One path token: a plain key, or a bracketed index / wildcard / quoted key
_TOKEN_RE = re.compile(r"""
    \[\s*(?P<quoted>'[^']*'|"[^"]*")\s*\]   # ['key'] or ["key"]
  | \[\s*(?P<index>\*|\d+)\s*\]             # [*] or [n]
  | (?P<key>[^.\[\]]+)                      # bare key
""", re.VERBOSE)


class PathSyntaxError(ValueError):
    """Raised when a property path cannot be tokenized."""
    pass


Token = Tuple[str, Union[str, int, None]]


def tokenize_path(path: str) -> List[Token]:
    """Split a dotted/indexed path into ('key', name), ('index', n) and ('all', None) tokens."""
    tokens: List[Token] = []
    position = 0
    path = path.strip()

    while position < len(path):
        if path[position] == '.':
            position += 1
            continue

        match = _TOKEN_RE.match(path, position)
        if not match:
            raise PathSyntaxError(f"Invalid property path '{path}' at position {position}")

        if match.group('quoted') is not None:
            tokens.append(('key', match.group('quoted')[1:-1]))
        elif match.group('index') is not None:
            index = match.group('index')
            tokens.append(('all', None) if index == '*' else ('index', int(index)))
        else:
            tokens.append(('key', match.group('key').strip()))

        position = match.end()

    return tokens


def lookup_key(node: Dict[str, Any], key: str) -> Tuple[bool, Any]:
    """Case-insensitive dictionary lookup.

    Returns a (found, value) pair. An exact match wins over a case-variant
    match so payloads with duplicate case-variant keys stay deterministic.
    """
    if key in node:
        return True, node[key]

    lowered = key.lower()
    for candidate, value in node.items():
        if isinstance(candidate, str) and candidate.lower() == lowered:
            return True, value

    return False, None


def _descend(node: Any, key: str) -> Tuple[bool, Any]:
    """Resolve one key, looking through a nested 'properties' object when needed."""
    if not isinstance(node, dict):
        return False, None

    found, value = lookup_key(node, key)
    if found:
        return True, value

    # Aliases flatten the ARM 'properties' envelope at every level
    found, nested = lookup_key(node, 'properties')
    if found and isinstance(nested, dict):
        return lookup_key(nested, key)

    return False, None


def _flatten(items: List[Any]) -> List[Any]:
    flat: List[Any] = []
    for item in items:
        if isinstance(item, list):
            flat.extend(_flatten(item))
        else:
            flat.append(item)
    return flat


def _walk(node: Any, tokens: List[Token]) -> Tuple[bool, Any]:
    for position, (kind, argument) in enumerate(tokens):
        if kind == 'key':
            found, node = _descend(node, argument)
            if not found:
                return False, None

        elif kind == 'index':
            if not isinstance(node, list) or argument >= len(node):
                return False, None
            node = node[argument]

        else:
            if not isinstance(node, list):
                return False, None

            remainder = tokens[position + 1:]
            if not remainder:
                return True, list(node)

            # Elements missing the remainder stay as None so callers see the gap
            collected = []
            for element in node:
                found, value = _walk(element, remainder)
                collected.append(value if found else None)
            return True, _flatten(collected)

    return True, node


def navigate(bag: Any, path: str) -> Optional[Any]:
    """Navigate a property bag along a dotted/indexed path.

    `[*]` returns the whole array (or, followed by more segments, the values
    collected from every element, with None where an element lacks the
    rest of the path); `[n]` indexes it. A missing segment at
    any level yields None rather than an error.
    """
    if bag is None or not path:
        return None

    try:
        tokens = tokenize_path(path)
    except PathSyntaxError:
        return None

    found, value = _walk(bag, tokens)
    return value if found else None


def path_enumerates_array(path: str) -> bool:
    """Check whether a path contains a `[*]` wildcard segment."""
    return '[*]' in path.replace(' ', '')


def _merge_duplicate_pairs(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    """object_pairs_hook that keeps the first non-empty value per case-insensitive key."""
    result: Dict[str, Any] = {}
    seen: Dict[str, str] = {}

    for key, value in pairs:
        lowered = key.lower() if isinstance(key, str) else key
        if lowered not in seen:
            seen[lowered] = key
            result[key] = value
            continue

        original_key = seen[lowered]
        if result[original_key] in (None, '', [], {}) and value not in (None, '', [], {}):
            result[original_key] = value

    return result


def parse_json_payload(payload: Union[str, bytes, Dict[str, Any], List[Any], None]) -> Any:
    """Decode an API payload defensively.

    Accepts an already-decoded object, a JSON string, or a JSON string that
    itself encodes a JSON string. Duplicate keys (including case variants)
    are merged instead of raising.
    """
    if payload is None:
        return None

    if isinstance(payload, bytes):
        payload = payload.decode('utf-8-sig')

    decoded: Any = payload
    # A body can be double-encoded: '"{\"id\": ...}"'
    for _ in range(2):
        if not isinstance(decoded, str):
            break
        text = decoded.strip()
        if not text:
            return None
        if text[0] not in '{["':
            break
        decoded = json.loads(text, object_pairs_hook=_merge_duplicate_pairs)

    return decoded
