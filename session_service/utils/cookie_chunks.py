"""
Cookie chunk codec for oversized session values.

Browsers drop any cookie larger than ~4 KB (RFC 6265), and an encrypted session
carrying an upstream refresh token routinely exceeds that. The codec splits an
opaque value across sequentially named cookies and joins them back together.

Naming
------
- value fits in one cookie  → ``<name>`` only (indistinguishable from an
  unchunked cookie, so small sessions stay backward compatible)
- value needs n > 1 cookies → ``<name>.0`` … ``<name>.<n-1>``; the unsuffixed
  name is not emitted

Every function here is pure. Names chunked on a previous request are passed in
explicitly as ``previous_names`` so that stale fragments can be cleared when a
session crosses the single/multi chunk boundary; otherwise an old ``<name>.2``
would be glued onto the next reassembly and corrupt it.

Integrity is not the codec's concern: a missing or reordered fragment yields a
wrong string, and the token cipher's authentication tag rejects it.
"""

import dataclasses
import math
import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from session_service.config import logger
from session_service.exceptions import SessionTooLargeError

ALLOWED_COOKIE_SIZE = 4096
# Name, attributes and separators of an otherwise empty Set-Cookie header.
ESTIMATED_EMPTY_COOKIE_SIZE = 163
CHUNK_SIZE = ALLOWED_COOKIE_SIZE - ESTIMATED_EMPTY_COOKIE_SIZE
MAX_CHUNKS = 64

_SUFFIX_PATTERN = re.compile(r"0|[1-9][0-9]{0,5}")
_INVALID_SUFFIX_INDEX = -1


@dataclasses.dataclass(frozen=True)
class CookieOptions:
    """
    Cookie attributes shared by every chunk of one logical cookie.

    Attributes:
        path: Cookie path.
        domain: Cookie domain, or None for a host-only cookie.
        secure: Whether the cookie is only sent over HTTPS.
        http_only: Whether the cookie is hidden from client-side scripts.
        same_site: SameSite policy ("Lax", "Strict" or "None").
        max_age: Max-Age in seconds, or None to rely on ``expires``.
        expires: Absolute expiry, or None for a browser-session cookie.
    """

    path: str = "/"
    domain: str | None = None
    secure: bool = True
    http_only: bool = True
    same_site: str | None = "Lax"
    max_age: int | None = None
    expires: datetime | None = None

    def replace(self, **changes: Any) -> "CookieOptions":
        return dataclasses.replace(self, **changes)


@dataclasses.dataclass(frozen=True)
class Cookie:
    """A single outgoing cookie."""

    name: str
    value: str
    options: CookieOptions

    @property
    def is_clear(self) -> bool:
        return self.options.max_age == 0 and not self.value


def chunk_name(name: str, index: int) -> str:
    """
    Return the cookie name for the chunk at ``index``.

    Args:
        name: Base cookie name.
        index: Zero-based chunk index.

    Returns:
        ``<name>.<index>``.
    """
    return f"{name}.{index}"


def split_value(value: str, chunk_size: int = CHUNK_SIZE) -> list[str]:
    """
    Split a value into ordered ``chunk_size`` slices.

    The empty string still produces one (empty) slice so that callers always
    have a base cookie to write.

    Args:
        value: Value to split.
        chunk_size: Max characters per slice.

    Returns:
        Ordered slice list.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be greater than zero.")
    chunk_count = max(1, math.ceil(len(value) / chunk_size))
    return [value[index * chunk_size : (index + 1) * chunk_size] for index in range(chunk_count)]


def chunk(value: str, name: str, options: CookieOptions, previous_names: Iterable[str] = (), chunk_size: int = CHUNK_SIZE, max_chunks: int = MAX_CHUNKS) -> list[Cookie]:
    """
    Split a value into cookies and clear stale fragments of earlier requests.

    Args:
        value: Opaque value to store (ASCII, so characters equal bytes).
        name: Base cookie name.
        options: Attributes applied to every emitted chunk.
        previous_names: Cookie names chunked on a previous request.
        chunk_size: Max value characters per cookie.
        max_chunks: Upper bound on the number of chunks.

    Returns:
        Clearing cookies for stale names, followed by the new chunks in order.

    Raises:
        SessionTooLargeError: When the value needs more than ``max_chunks`` cookies.
    """
    slices = split_value(value, chunk_size)
    chunk_count = len(slices)
    if chunk_count > max_chunks:
        raise SessionTooLargeError(chunk_count, max_chunks)

    if chunk_count == 1:
        new_cookies = [Cookie(name=name, value=slices[0], options=options)]
    else:
        new_cookies = [Cookie(name=chunk_name(name, index), value=slice_, options=options) for index, slice_ in enumerate(slices)]
        logger.debug(
            "Session cookie exceeds allowed size; chunking",
            cookie_name=name,
            allowed_cookie_size=ALLOWED_COOKIE_SIZE,
            value_size=len(value),
            chunk_sizes=[len(slice_) + ESTIMATED_EMPTY_COOKIE_SIZE for slice_ in slices],
        )

    emitted_names = {cookie.name for cookie in new_cookies}
    stale_names = [previous_name for previous_name in dict.fromkeys(previous_names) if previous_name not in emitted_names]
    return clear(stale_names, options) + new_cookies


def clear(names: Iterable[str], options: CookieOptions) -> list[Cookie]:
    """
    Build clearing cookies (empty value, ``max_age=0``) for the given names.

    Args:
        names: Cookie names to expire.
        options: Attributes of the logical cookie; path and domain must match the originals.

    Returns:
        One clearing cookie per distinct name.
    """
    clear_options = options.replace(max_age=0, expires=None)
    return [Cookie(name=cookie_name, value="", options=clear_options) for cookie_name in dict.fromkeys(names)]


def _suffix_index(name: str, cookie_name: str) -> int | None:
    """
    Return the sort index of a cookie belonging to the family, or None.

    The base name maps to ``-2`` so it always sorts first. Suffixes that are
    not canonical base-10 integers map to a low sentinel instead of raising.
    """
    if cookie_name == name:
        return -2
    prefix = f"{name}."
    if not cookie_name.startswith(prefix):
        return None
    suffix = cookie_name[len(prefix) :]
    if _SUFFIX_PATTERN.fullmatch(suffix):
        return int(suffix)
    return _INVALID_SUFFIX_INDEX


def _ordered_family(cookies: Mapping[str, str], name: str, max_chunks: int) -> list[tuple[str, str]]:
    keyed: list[tuple[int, str, str]] = []
    for cookie_name, value in cookies.items():
        index = _suffix_index(name, cookie_name)
        if index is None or not isinstance(value, str) or not value:
            continue
        keyed.append((index, cookie_name, value))
    keyed.sort(key=lambda entry: (entry[0], entry[1]))
    return [(cookie_name, value) for _, cookie_name, value in keyed[:max_chunks]]


def family_names(cookies: Mapping[str, str], name: str, max_chunks: int = MAX_CHUNKS) -> list[str]:
    """
    Return the names of the non-empty cookies that belong to ``name``, in reassembly order.

    Args:
        cookies: Incoming cookie snapshot (name → value).
        name: Base cookie name.
        max_chunks: Upper bound on the number of names considered.

    Returns:
        Ordered cookie names.
    """
    return [cookie_name for cookie_name, _ in _ordered_family(cookies, name, max_chunks)]


def reassemble(cookies: Mapping[str, str], name: str, max_chunks: int = MAX_CHUNKS) -> str:
    """
    Join chunk cookies back into the original value.

    Args:
        cookies: Incoming cookie snapshot (name → value).
        name: Base cookie name.
        max_chunks: Upper bound on the number of fragments considered.

    Returns:
        Concatenated value, or an empty string when no fragment is present.
    """
    return "".join(value for _, value in _ordered_family(cookies, name, max_chunks))
