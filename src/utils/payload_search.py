"""
Bounded-depth search over arbitrarily shaped JSON payloads.

Providers change their payload layout between API versions, so besides the
known field paths (get_path) we walk the whole tree looking for keys that
match a set of aliases. Matches are returned in document order: objects are
walked depth-first, keys in their original order.

Shared by the payload adapters and the diagnostics search.
"""
import re
from typing import Any, Callable, Iterator, Optional

MAX_SEARCH_DEPTH = 6

EMAIL_ALIASES = ("email",)
TRANSACTION_ALIASES = ("transaction", "order", "pedido")
# Trailing key tokens that mark a timestamp, e.g. order_date, orderCreatedAt
TIMESTAMP_KEY_SUFFIXES = ("date", "at", "time", "timestamp", "ts", "dt")
# Keys holding the identifier when an alias points at an object, e.g. transaction: {code: ...}
NESTED_ID_KEYS = ("code", "id", "transaction", "number")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CAMEL_RE = re.compile(r"([a-z0-9])([A-Z])")
_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")

# Epoch seconds between 2000-01-01 and 2100-01-01, also accepted in milliseconds
_EPOCH_SECONDS = (946684800, 4102444800)


def looks_like_email(value: Any) -> bool:
    return isinstance(value, str) and bool(_EMAIL_RE.match(value.strip()))


def get_path(payload: Any, path: str) -> Any:
    """
    Resolve a dotted path ("data.buyer.email", "items.0.offer") or return None.
    Never raises on missing keys, wrong types or short lists.
    """
    node = payload
    for part in path.split("."):
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit():
            idx = int(part)
            node = node[idx] if idx < len(node) else None
        else:
            return None
        if node is None:
            return None
    return node


def first_present(payload: Any, paths: tuple[str, ...] | list[str]) -> Any:
    """Return the first non-empty value among the given paths."""
    for path in paths:
        value = get_path(payload, path)
        if value not in (None, "", [], {}):
            return value
    return None


def _join(parent: str, key: str | int) -> str:
    if isinstance(key, int):
        return f"{parent}[{key}]"
    return f"{parent}.{key}" if parent else key


def walk(payload: Any, max_depth: int = MAX_SEARCH_DEPTH) -> Iterator[tuple[str, Any, Any]]:
    """
    Yield (path, key, value) for every member of every object/array, in
    document order, down to max_depth levels of nesting. Array items are
    yielded with their integer index as key.
    """
    def _walk(node: Any, path: str, depth: int):
        if depth > max_depth:
            return
        if isinstance(node, dict):
            for key, value in node.items():
                child_path = _join(path, str(key))
                yield child_path, key, value
                if isinstance(value, (dict, list)):
                    yield from _walk(value, child_path, depth + 1)
        elif isinstance(node, list):
            for idx, value in enumerate(node):
                child_path = _join(path, idx)
                yield child_path, idx, value
                if isinstance(value, (dict, list)):
                    yield from _walk(value, child_path, depth + 1)

    yield from _walk(payload, "", 0)


def _key_matches(key: Any, aliases: tuple[str, ...]) -> bool:
    if not isinstance(key, str):
        return False
    lowered = key.lower()
    return any(alias in lowered for alias in aliases)


def find_by_key_alias(
    payload: Any,
    aliases: tuple[str, ...],
    accept: Callable[[Any], bool],
    max_depth: int = MAX_SEARCH_DEPTH,
) -> Optional[tuple[str, Any]]:
    """
    First (path, value) whose key contains one of the aliases (case-insensitive)
    and whose value passes `accept`. Returns None when nothing matches.
    """
    for path, key, value in walk(payload, max_depth):
        if _key_matches(key, aliases) and accept(value):
            return path, value
    return None


def find_email(payload: Any, max_depth: int = MAX_SEARCH_DEPTH) -> Optional[tuple[str, str]]:
    """
    Locate a subscriber email anywhere in the payload.
    Keys named like "email" win; otherwise the first string value shaped like an email.
    """
    hit = find_by_key_alias(payload, EMAIL_ALIASES, looks_like_email, max_depth)
    if hit:
        return hit[0], hit[1].strip()
    for path, _key, value in walk(payload, max_depth):
        if looks_like_email(value):
            return path, value.strip()
    return None


def key_tokens(key: Any) -> list[str]:
    """Lowercase words of a key: "orderId" -> ["order", "id"], "numero_pedido" -> ["numero", "pedido"]."""
    if not isinstance(key, str):
        return []
    spaced = _CAMEL_RE.sub(r"\1 \2", key).lower()
    return [token for token in _TOKEN_SPLIT_RE.split(spaced) if token]


def _is_transaction_key(key: Any) -> bool:
    tokens = key_tokens(key)
    if not tokens or tokens[-1] in TIMESTAMP_KEY_SUFFIXES:
        return False
    return any(token in TRANSACTION_ALIASES for token in tokens)


def looks_like_epoch(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        return False
    low, high = _EPOCH_SECONDS
    return low <= value <= high or low * 1000 <= value <= high * 1000


def _scalar_id(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, str)):
        text = str(value).strip()
        return text or None
    return None


def _transaction_scalar(value: Any) -> Optional[str]:
    if looks_like_epoch(value):
        return None
    return _scalar_id(value)


def find_transaction_id(payload: Any, max_depth: int = MAX_SEARCH_DEPTH) -> Optional[tuple[str, str]]:
    """
    Locate a transaction identifier under a transaction/order/pedido-like key.

    Keys are matched on whole words, so order_id and orderCode qualify while
    order_date, orderCreatedAt and recorder do not. Values shaped like epoch
    timestamps are never taken as identifiers. When the alias key holds an
    object, its code/id member is used.
    """
    for path, key, value in walk(payload, max_depth):
        if not _is_transaction_key(key):
            continue
        scalar = _transaction_scalar(value)
        if scalar:
            return path, scalar
        if isinstance(value, dict):
            for nested_key in NESTED_ID_KEYS:
                scalar = _transaction_scalar(value.get(nested_key))
                if scalar:
                    return _join(path, nested_key), scalar
    return None


def find_term(
    payload: Any,
    term: str,
    max_depth: int = MAX_SEARCH_DEPTH,
) -> Optional[str]:
    """
    Path of the first scalar value containing `term` (case-insensitive),
    or None. Used by the diagnostics search.
    """
    needle = (term or "").strip().lower()
    if not needle:
        return None
    for path, _key, value in walk(payload, max_depth):
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            if needle in str(value).lower():
                return path
    return None
