"""
Serialization of arbitrary Python values for log shipping.

Turns any value (cyclic object graphs, exceptions, httpx requests and
responses, collections, byte buffers, temporal values) into a bounded,
acyclic tree of JSON-safe values. Recognized built-ins become typed wrappers
tagged with ``__type``; everything else becomes a plain record.

Usage:
    from applogs.serialize import serialize, deserialize

    node = serialize({"user": user, "error": exc}, max_depth=5)
    json.dumps(node)  # always succeeds

    restored = deserialize(node)

The serializer never raises for values reachable through their own
structure. Failures degrade to marker nodes scoped to the offending key or
value:

    {"__circular": True, "__ref": "ref-1"}
    {"__type": "MaxDepthExceeded", "constructor": "dict"}
    {"__type": "PropertyAccessError", "error": "...", "key": "name"}
    {"__type": "SerializationError", "error": "..."}
"""

import array
import base64
import builtins
import dataclasses
import datetime as dt
import enum
import functools
import inspect
import json
import logging
import math
import pathlib
import re
import traceback
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx

logger = logging.getLogger(__name__)

TYPE_KEY = "__type"
CIRCULAR_KEY = "__circular"
REF_KEY = "__ref"

# Keys a str-keyed mapping or record cannot carry as plain members
RESERVED_KEYS = frozenset((TYPE_KEY, CIRCULAR_KEY, REF_KEY))

# Largest integer a JSON consumer can represent exactly
MAX_SAFE_INTEGER = 2**53 - 1


class TypeTag(str, enum.Enum):
    """Tags carried by typed wrapper nodes."""

    BIG_INT = "BigInt"
    FLOAT = "Float"  # Non-finite floats only
    ENUM = "Enum"
    FUNCTION = "Function"
    CLASS = "Class"
    MAX_DEPTH = "MaxDepthExceeded"
    PROPERTY_ACCESS_ERROR = "PropertyAccessError"
    SERIALIZATION_ERROR = "SerializationError"
    BODY_ERROR = "BodySerializationError"
    DATETIME = "DateTime"
    DATE = "Date"
    TIME = "Time"
    TIMEDELTA = "TimeDelta"
    REGEXP = "RegExp"
    ERROR = "Error"
    REQUEST = "Request"
    RESPONSE = "Response"
    HEADERS = "Headers"
    URL = "URL"
    QUERY_PARAMS = "URLSearchParams"
    MAP = "Map"
    SET = "Set"
    BYTES = "Bytes"
    BYTEARRAY = "ByteArray"
    MEMORYVIEW = "MemoryView"
    TYPED_ARRAY = "TypedArray"
    DECIMAL = "Decimal"
    UUID = "UUID"
    PATH = "Path"


@dataclass(frozen=True)
class SerializationOptions:
    """Options for a single serialize() call."""

    max_depth: int = 10
    include_non_enumerable: bool = True  # Include underscore-prefixed attributes
    include_function_bodies: bool = False  # Source text may leak closures/secrets
    custom_type_handlers: Mapping[str, Callable[[Any], Any]] = field(default_factory=dict)


def _wrap(tag: TypeTag, **fields) -> dict:
    return {TYPE_KEY: tag.value, **fields}


def _safe_str(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return f"<unprintable {type(value).__name__}>"


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _is_dunder(name: str) -> bool:
    return name.startswith("__") and name.endswith("__")


def _slot_names(cls: type) -> list[str]:
    slots = cls.__dict__.get("__slots__", ())
    if isinstance(slots, str):
        slots = (slots,)
    names = []
    for name in slots:
        if name.startswith("__") and not name.endswith("__"):
            name = f"_{cls.__name__.lstrip('_')}{name}"  # Private name mangling
        names.append(name)
    return names


def _callable_arity(func: Callable) -> int | None:
    try:
        return len(inspect.signature(func).parameters)
    except (TypeError, ValueError):
        return None


def _headers_dict(headers: httpx.Headers) -> dict[str, str]:
    """Flatten headers the way fetch() does: repeated keys joined by ', '."""
    flat: dict[str, str] = {}
    for key, value in headers.multi_items():
        flat[key] = f"{flat[key]}, {value}" if key in flat else value
    return flat


class _AccessFailure:
    """Placeholder for an attribute whose read raised."""

    def __init__(self, error: Exception):
        self.error = error


class _Serializer:
    """
    State for one top-level serialize() call.

    ``_on_path`` holds the ids of containers on the active recursion path;
    revisiting one of them is a cycle. ``_refs`` gives each cycle target a
    stable reference id. Both are discarded with the instance.
    """

    def __init__(self, options: SerializationOptions):
        self.options = options
        self._on_path: set[int] = set()
        self._refs: dict[int, str] = {}
        self._pinned: list[Any] = []  # Keeps ids in _refs from being reused

        # Ordered predicate chain, first match wins
        self._converters: list[tuple[Callable[[Any], bool], Callable[[Any, int], Any]]] = [
            (lambda v: isinstance(v, dt.datetime), self._datetime),
            (lambda v: isinstance(v, dt.date), self._date),
            (lambda v: isinstance(v, dt.time), self._time),
            (lambda v: isinstance(v, dt.timedelta), self._timedelta),
            (lambda v: isinstance(v, re.Pattern), self._pattern),
            (lambda v: isinstance(v, BaseException), self._error),
            (lambda v: isinstance(v, httpx.Request), self._request),
            (lambda v: isinstance(v, httpx.Response), self._response),
            (lambda v: isinstance(v, httpx.Headers), self._headers),
            (lambda v: isinstance(v, httpx.URL), self._url),
            (lambda v: isinstance(v, httpx.QueryParams), self._query_params),
            (lambda v: isinstance(v, Mapping), self._mapping),
            (lambda v: isinstance(v, (set, frozenset)), self._set),
            (lambda v: isinstance(v, tuple) and hasattr(v, "_fields"), self._named_tuple),
            (lambda v: isinstance(v, (list, tuple)), self._sequence),
            (lambda v: isinstance(v, (bytes, bytearray)), self._bytes),
            (lambda v: isinstance(v, memoryview), self._memoryview),
            (lambda v: isinstance(v, array.array), self._typed_array),
            (lambda v: isinstance(v, Decimal), self._decimal),
            (lambda v: isinstance(v, uuid.UUID), self._uuid),
            (lambda v: isinstance(v, pathlib.PurePath), self._path),
        ]

    def walk(self, value: Any, depth: int = 0) -> Any:
        try:
            return self._walk(value, depth)
        except Exception as e:
            return _wrap(TypeTag.SERIALIZATION_ERROR, error=_safe_str(e))

    def _walk(self, value: Any, depth: int) -> Any:
        # Primitives
        if value is None:
            return None
        if isinstance(value, enum.Enum):
            return _wrap(
                TypeTag.ENUM,
                enum=type(value).__name__,
                name=value.name,
                value=self.walk(value.value, depth + 1),
            )
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value if type(value) is str else str.__str__(value)
        if isinstance(value, int):
            if abs(value) > MAX_SAFE_INTEGER:
                return _wrap(TypeTag.BIG_INT, value=str(int(value)))
            return int(value)
        if isinstance(value, float):
            if not math.isfinite(value):
                return _wrap(TypeTag.FLOAT, value=repr(float(value)))
            return float(value)

        if inspect.isroutine(value) or isinstance(value, functools.partial):
            return self._function(value)
        if isinstance(value, type):
            return _wrap(TypeTag.CLASS, name=value.__qualname__, module=value.__module__)

        key = id(value)
        if key in self._on_path:
            ref = self._refs.get(key)
            if ref is None:
                ref = f"ref-{len(self._refs) + 1}"
                self._refs[key] = ref
                self._pinned.append(value)
            return {CIRCULAR_KEY: True, REF_KEY: ref}

        if depth >= self.options.max_depth:
            return _wrap(TypeTag.MAX_DEPTH, constructor=type(value).__name__)

        self._on_path.add(key)
        try:
            return self._convert(value, depth)
        finally:
            self._on_path.discard(key)

    def _convert(self, value: Any, depth: int) -> Any:
        for matches, converter in self._converters:
            if matches(value):
                return converter(value, depth)

        type_name = type(value).__name__
        handler = self.options.custom_type_handlers.get(type_name)
        if handler is not None:
            converted = handler(value)
            if type(converted) is type(value):
                raise TypeError(f"custom handler for {type_name} returned a {type_name}")
            return self.walk(converted, depth)

        # deque, range and other sequences without a converter of their own
        if isinstance(value, Sequence):
            return self._sequence(value, depth)
        return self._record(value, depth)

    # Callables

    def _function(self, func: Callable) -> dict:
        target = func.func if isinstance(func, functools.partial) else func
        name = getattr(target, "__qualname__", None) or getattr(target, "__name__", None)
        node = _wrap(TypeTag.FUNCTION, name=name, length=_callable_arity(func))
        if self.options.include_function_bodies:
            try:
                node["source"] = inspect.getsource(target)
            except (OSError, TypeError):
                node["source"] = None
        return node

    # Temporal values and patterns

    def _datetime(self, value: dt.datetime, _depth: int) -> dict:
        try:
            timestamp = round(value.timestamp() * 1000)
        except (OverflowError, OSError, ValueError):
            timestamp = None  # Outside the platform's epoch range
        return _wrap(TypeTag.DATETIME, value=value.isoformat(), timestamp=timestamp)

    def _date(self, value: dt.date, _depth: int) -> dict:
        return _wrap(TypeTag.DATE, value=value.isoformat())

    def _time(self, value: dt.time, _depth: int) -> dict:
        return _wrap(TypeTag.TIME, value=value.isoformat())

    def _timedelta(self, value: dt.timedelta, _depth: int) -> dict:
        return _wrap(TypeTag.TIMEDELTA, seconds=value.total_seconds())

    def _pattern(self, value: re.Pattern, _depth: int) -> dict:
        if isinstance(value.pattern, bytes):
            return _wrap(
                TypeTag.REGEXP,
                source=value.pattern.decode("latin-1"),
                flags=value.flags,
                binary=True,
            )
        return _wrap(TypeTag.REGEXP, source=value.pattern, flags=value.flags)

    # Errors

    def _error(self, exc: BaseException, depth: int) -> dict:
        stack = None
        if exc.__traceback__ is not None:
            stack = "".join(traceback.format_exception(exc, chain=False))
        node = _wrap(
            TypeTag.ERROR,
            name=type(exc).__name__,
            message=_safe_str(exc),
            stack=stack,
        )

        for key, item in self._own_attributes(exc).items():
            if key not in node:
                node[key] = self._child(key, item, depth)

        notes = getattr(exc, "__notes__", None)
        if notes:
            node["notes"] = self.walk(notes, depth + 1)

        cause = exc.__cause__
        if cause is None and not exc.__suppress_context__:
            cause = exc.__context__
        if cause is not None and "cause" not in node:
            node["cause"] = self.walk(cause, depth + 1)
        return node

    # Network descriptors

    def _request(self, request: httpx.Request, depth: int) -> dict:
        node = _wrap(
            TypeTag.REQUEST,
            url=str(request.url),
            method=request.method,
            headers=_headers_dict(request.headers),
        )
        self._attach_body(node, request, depth)
        return node

    def _response(self, response: httpx.Response, depth: int) -> dict:
        try:
            url = str(response.url)
        except RuntimeError:
            url = None  # Response built without a request
        node = _wrap(
            TypeTag.RESPONSE,
            url=url,
            status=response.status_code,
            statusText=response.reason_phrase,
            ok=response.is_success,
            redirected=bool(response.history),
            httpVersion=response.http_version,
            headers=_headers_dict(response.headers),
        )
        self._attach_body(node, response, depth)
        return node

    def _attach_body(self, node: dict, message: httpx.Request | httpx.Response, depth: int):
        """Snapshot a body unless its stream was already consumed elsewhere."""
        try:
            raw = self._read_body(message)
            if not raw:
                return
            content_type = message.headers.get("content-type", "")
            if "application/json" in content_type:
                node["body"] = self.walk(json.loads(raw), depth + 1)
                node["bodyType"] = "json"
            elif "text/" in content_type:
                encoding = getattr(message, "encoding", None) or "utf-8"
                node["body"] = raw.decode(encoding, errors="replace")
                node["bodyType"] = "text"
            else:
                node["body"] = _b64(raw)
                node["bodyType"] = "bytes"
        except Exception as e:
            node["body"] = _wrap(TypeTag.BODY_ERROR, error=_safe_str(e))

    @staticmethod
    def _read_body(message: httpx.Request | httpx.Response) -> bytes | None:
        try:
            return message.content
        except (httpx.RequestNotRead, httpx.ResponseNotRead):
            pass
        if isinstance(message, httpx.Response) and message.is_stream_consumed:
            return None
        return message.read()

    def _headers(self, headers: httpx.Headers, _depth: int) -> dict:
        return _wrap(TypeTag.HEADERS, headers=_headers_dict(headers))

    def _url(self, url: httpx.URL, _depth: int) -> dict:
        return _wrap(
            TypeTag.URL,
            href=str(url),
            scheme=url.scheme,
            host=url.host,
            port=url.port,
            path=url.path,
            query=url.query.decode("ascii"),
            fragment=url.fragment,
        )

    def _query_params(self, params: httpx.QueryParams, _depth: int) -> dict:
        return _wrap(
            TypeTag.QUERY_PARAMS,
            params={key: params.get_list(key) for key in params.keys()},
        )

    # Collections

    def _mapping(self, value: Mapping, depth: int) -> dict:
        items = list(value.items())
        if all(isinstance(key, str) and key not in RESERVED_KEYS for key, _ in items):
            node = {}
            if type(value) is not dict:
                node[TYPE_KEY] = type(value).__name__
            for key, item in items:
                node[key] = self.walk(item, depth + 1)
            return node
        return self._entries(value, items, depth)

    def _entries(self, value: Any, items: list[tuple[Any, Any]], depth: int) -> dict:
        """Map wrapper, for keys that are not strings or that collide with wrapper keys."""
        node = _wrap(
            TypeTag.MAP,
            entries=[[self.walk(key, depth + 1), self.walk(item, depth + 1)] for key, item in items],
        )
        if type(value) is not dict:
            node["constructor"] = type(value).__name__
        return node

    def _set(self, value: set | frozenset, depth: int) -> dict:
        return _wrap(
            TypeTag.SET,
            values=[self.walk(item, depth + 1) for item in value],
            frozen=isinstance(value, frozenset),
        )

    def _named_tuple(self, value: tuple, depth: int) -> dict:
        node = {TYPE_KEY: type(value).__name__}
        for name, item in zip(value._fields, value, strict=False):
            node[name] = self.walk(item, depth + 1)
        return node

    def _sequence(self, value: Sequence, depth: int) -> list:
        return [self.walk(item, depth + 1) for item in value]

    # Byte buffers

    def _bytes(self, value: bytes | bytearray, _depth: int) -> dict:
        tag = TypeTag.BYTEARRAY if isinstance(value, bytearray) else TypeTag.BYTES
        return _wrap(tag, byteLength=len(value), data=_b64(bytes(value)))

    def _memoryview(self, value: memoryview, _depth: int) -> dict:
        return _wrap(
            TypeTag.MEMORYVIEW,
            format=value.format,
            itemsize=value.itemsize,
            shape=list(value.shape or ()),
            byteLength=value.nbytes,
            data=_b64(value.tobytes()),
        )

    def _typed_array(self, value: array.array, depth: int) -> dict:
        return _wrap(
            TypeTag.TYPED_ARRAY,
            typecode=value.typecode,
            byteLength=len(value) * value.itemsize,
            data=[self.walk(item, depth + 1) for item in value],
        )

    # Scalars with a canonical string form

    def _decimal(self, value: Decimal, _depth: int) -> dict:
        return _wrap(TypeTag.DECIMAL, value=str(value))

    def _uuid(self, value: uuid.UUID, _depth: int) -> dict:
        return _wrap(TypeTag.UUID, value=str(value))

    def _path(self, value: pathlib.PurePath, _depth: int) -> dict:
        return _wrap(TypeTag.PATH, value=str(value), flavour=type(value).__name__)

    # Plain records

    def _record(self, value: Any, depth: int) -> dict:
        attrs = self._own_attributes(value)
        if RESERVED_KEYS.intersection(attrs):
            return _wrap(
                TypeTag.MAP,
                entries=[[key, self._child(key, item, depth)] for key, item in attrs.items()],
                constructor=type(value).__name__,
            )
        node = {TYPE_KEY: type(value).__name__}
        for key, item in attrs.items():
            node[key] = self._child(key, item, depth)
        return node

    def _child(self, key: str, item: Any, depth: int) -> Any:
        if isinstance(item, _AccessFailure):
            return _wrap(TypeTag.PROPERTY_ACCESS_ERROR, error=_safe_str(item.error), key=key)
        return self.walk(item, depth + 1)

    def _own_attributes(self, value: Any) -> dict[str, Any]:
        """
        Instance attributes of ``value``: its ``__dict__`` plus populated slots.

        Class-level descriptors (properties) are never evaluated. Unset slots
        are skipped; a slot whose read raises is kept as an _AccessFailure.
        """
        try:
            attrs = dict(vars(value))
        except TypeError:
            attrs = {}

        for cls in type(value).__mro__:
            for name in _slot_names(cls):
                if name in attrs or name in ("__dict__", "__weakref__"):
                    continue
                try:
                    attrs[name] = getattr(value, name)
                except AttributeError:
                    continue
                except Exception as e:
                    attrs[name] = _AccessFailure(e)

        return {
            key: item
            for key, item in attrs.items()
            if isinstance(key, str)
            and not _is_dunder(key)
            and (self.options.include_non_enumerable or not key.startswith("_"))
        }


def serialize(value: Any, options: SerializationOptions | None = None, **overrides) -> Any:
    """
    Serialize ``value`` into a bounded, acyclic, JSON-safe tree.

    Args:
        value: Anything
        options: SerializationOptions (defaults used when omitted)
        **overrides: Individual option fields, e.g. ``max_depth=5``

    Returns:
        A tree of dicts, lists, str, int, float, bool and None.
    """
    if options is None:
        options = SerializationOptions(**overrides)
    elif overrides:
        options = dataclasses.replace(options, **overrides)
    return _Serializer(options).walk(value)


def _hashable(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_hashable(item) for item in value)
    return value


def _restore_error(node: dict) -> BaseException:
    cls = getattr(builtins, node.get("name") or "", None)
    if not (isinstance(cls, type) and issubclass(cls, BaseException)):
        cls = Exception
    message = node.get("message", "")
    try:
        error = cls(message)
    except TypeError:
        error = Exception(message)

    for key, item in node.items():
        if key in (TYPE_KEY, "name", "message"):
            continue
        restored = deserialize(item)
        if key == "cause" and isinstance(restored, BaseException):
            error.__cause__ = restored
        elif key == "notes" and isinstance(restored, list):
            error.__notes__ = restored
        else:
            setattr(error, key, restored)
    return error


def _restore_map(node: dict) -> dict | list:
    entries = [(_hashable(deserialize(key)), deserialize(item)) for key, item in node["entries"]]
    try:
        return dict(entries)
    except TypeError:
        return [list(entry) for entry in entries]  # Unhashable keys


def _restore_set(node: dict) -> set | frozenset | list:
    values = [_hashable(deserialize(item)) for item in node["values"]]
    try:
        return frozenset(values) if node.get("frozen") else set(values)
    except TypeError:
        return values


def _restore_pattern(node: dict) -> re.Pattern:
    source = node["source"]
    if node.get("binary"):
        return re.compile(source.encode("latin-1"), node.get("flags", 0))
    return re.compile(source, node.get("flags", 0))


def _restore_memoryview(node: dict) -> memoryview:
    view = memoryview(base64.b64decode(node["data"]))
    fmt = node.get("format", "B")
    shape = node.get("shape") or None
    if fmt == "B" and (shape is None or len(shape) <= 1):
        return view
    try:
        return view.cast(fmt, shape) if shape else view.cast(fmt)
    except (TypeError, ValueError):
        return view


def _restore_path(node: dict) -> pathlib.PurePath:
    if node.get("flavour") in ("PurePosixPath", "PureWindowsPath"):
        return getattr(pathlib, node["flavour"])(node["value"])
    return pathlib.Path(node["value"])


_RESTORERS: dict[str, Callable[[dict], Any]] = {
    TypeTag.DATETIME.value: lambda n: dt.datetime.fromisoformat(n["value"]),
    TypeTag.DATE.value: lambda n: dt.date.fromisoformat(n["value"]),
    TypeTag.TIME.value: lambda n: dt.time.fromisoformat(n["value"]),
    TypeTag.TIMEDELTA.value: lambda n: dt.timedelta(seconds=n["seconds"]),
    TypeTag.REGEXP.value: _restore_pattern,
    TypeTag.BIG_INT.value: lambda n: int(n["value"]),
    TypeTag.FLOAT.value: lambda n: float(n["value"]),
    TypeTag.ENUM.value: lambda n: n["name"],
    TypeTag.ERROR.value: _restore_error,
    TypeTag.MAP.value: _restore_map,
    TypeTag.SET.value: _restore_set,
    TypeTag.BYTES.value: lambda n: base64.b64decode(n["data"]),
    TypeTag.BYTEARRAY.value: lambda n: bytearray(base64.b64decode(n["data"])),
    TypeTag.MEMORYVIEW.value: _restore_memoryview,
    TypeTag.TYPED_ARRAY.value: lambda n: array.array(
        n["typecode"], [deserialize(item) for item in n["data"]]
    ),
    TypeTag.URL.value: lambda n: httpx.URL(n["href"]),
    TypeTag.QUERY_PARAMS.value: lambda n: httpx.QueryParams(
        [(key, value) for key, values in n["params"].items() for value in values]
    ),
    TypeTag.HEADERS.value: lambda n: httpx.Headers(n["headers"]),
    TypeTag.DECIMAL.value: lambda n: Decimal(n["value"]),
    TypeTag.UUID.value: lambda n: uuid.UUID(n["value"]),
    TypeTag.PATH.value: _restore_path,
}


def deserialize(node: Any) -> Any:
    """
    Rebuild values from a serialized tree where feasible.

    Typed wrappers for temporal values, patterns, collections, byte buffers
    and the like come back as their Python types. Plain records come back as
    dicts and circular markers as ``{"__circular_ref": ref}``; the original
    object graph is not reconstructed.
    """
    if isinstance(node, list):
        return [deserialize(item) for item in node]
    if not isinstance(node, dict):
        return node

    if node.get(CIRCULAR_KEY):
        return {"__circular_ref": node.get(REF_KEY)}

    restore = _RESTORERS.get(node.get(TYPE_KEY))
    if restore is not None:
        try:
            return restore(node)
        except Exception as e:
            logger.debug(f"Could not restore {node.get(TYPE_KEY)} node, keeping record: {e}")

    return {key: deserialize(item) for key, item in node.items() if key != TYPE_KEY}


def serialize_for_logging(value: Any) -> str:
    """Pretty JSON for human-readable output. Never raises."""
    try:
        node = serialize(value, max_depth=5, include_non_enumerable=True)
        return json.dumps(node, indent=2)
    except Exception as e:
        return f"Serialization failed: {e}"


def serialize_for_transport(value: Any) -> str:
    """Compact JSON suitable for a request body."""
    node = serialize(value, max_depth=10, include_non_enumerable=False)
    return json.dumps(node, allow_nan=False)
