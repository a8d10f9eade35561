"""
Header tunnel codec
-------------------
The preview host only passes through headers it recognizes, so every request
header is sent as `cf-ew-raw-<name>` and every response header the worker set
comes back the same way. Anything in a response WITHOUT the prefix belongs to
the tunnel itself and never reaches the local caller.
"""

import re
from typing import Callable, Iterable, List, Optional, Tuple, Union

from dev_errors import HeaderDecodingError, HeaderEncodingError

HEADER_PREFIX = b"cf-ew-raw-"

# RFC 7230 token
_TOKEN_RE = re.compile(rb"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")

RawHeader = Tuple[bytes, bytes]
HeaderInput = Iterable[Tuple[Union[str, bytes], Union[str, bytes]]]


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("latin-1")


def is_valid_name(name: bytes) -> bool:
    return _TOKEN_RE.fullmatch(name) is not None


def _warn(err: HeaderDecodingError):
    print(f"⚠️ Dropping response header: {err}")


def encode_outbound(headers: HeaderInput) -> List[RawHeader]:
    """Prefix every header name. Raises HeaderEncodingError on the first bad name."""
    encoded = []
    for name, value in headers:
        try:
            name, value = _as_bytes(name), _as_bytes(value)
        except UnicodeEncodeError as e:
            raise HeaderEncodingError(repr(name).encode(), "not latin-1 encodable") from e
        forward_name = HEADER_PREFIX + name
        if not is_valid_name(forward_name):
            raise HeaderEncodingError(name)
        encoded.append((forward_name, value))
    return encoded


def decode_inbound(
    headers: HeaderInput,
    on_error: Optional[Callable[[HeaderDecodingError], None]] = None,
) -> List[RawHeader]:
    """Strip the prefix from tunneled headers and drop everything else.

    A header whose stripped name is unusable is reported through `on_error`
    (a printed warning by default) and left out; the rest still decode.
    """
    report = on_error or _warn
    decoded = []
    for name, value in headers:
        name = _as_bytes(name)
        if not name.lower().startswith(HEADER_PREFIX):
            continue
        header_name = name[len(HEADER_PREFIX):]
        if not header_name:
            report(HeaderDecodingError(name, "empty name after prefix"))
            continue
        if not is_valid_name(header_name):
            report(HeaderDecodingError(name))
            continue
        decoded.append((header_name, _as_bytes(value)))
    return decoded
