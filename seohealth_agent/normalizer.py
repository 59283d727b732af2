from __future__ import annotations

import re

from .errors import InvalidDomainError


_SCHEME_RE = re.compile(r"^https?://")
_HOSTNAME_RE = re.compile(r"^(?:[a-z0-9][a-z0-9-]{0,62}\.)+[a-z]{2,63}$")


def normalize(raw: str) -> str:
    """Reduce user input to a bare lowercase hostname.

    ``"https://WWW.Example.com/page?x=1"`` becomes ``"example.com"``. Raises
    InvalidDomainError when nothing usable is left or the result is not a
    syntactically valid domain name. Never touches the network.
    """
    value = (raw or "").strip().lower()
    value = _SCHEME_RE.sub("", value)
    value = value.split("/", 1)[0]
    if value.startswith("www."):
        value = value[len("www."):]

    if not value:
        raise InvalidDomainError("Please enter a domain name.")
    if not _HOSTNAME_RE.match(value):
        raise InvalidDomainError(f"'{raw.strip()}' is not a valid domain name.")
    return value


def label_count(hostname: str) -> int:
    return len([p for p in hostname.split(".") if p])
