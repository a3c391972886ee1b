"""Scan job naming."""

import random
import re
from typing import Protocol

MAX_NAME_LENGTH = 63

# same alphabet as the API server's generateName: no vowels, no look-alikes
_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
_INVALID = re.compile(r"[^a-z0-9-]+")


class NameGenerator(Protocol):
    def suffix(self) -> str:
        ...


class RandomNameGenerator:
    """Random suffixes; pass a seed for reproducible names in tests."""

    def __init__(self, length: int = 5, seed: int | None = None):
        self.length = length
        self._random = random.Random(seed)

    def suffix(self) -> str:
        return "".join(self._random.choice(_ALPHABET) for _ in range(self.length))


def dns_label(value: str) -> str:
    """Lowercase ``value`` and squash anything not allowed in a DNS-1123 label."""
    return _INVALID.sub("-", value.lower()).strip("-")


def job_name(workload_name: str, container_name: str, suffix: str) -> str:
    """
    ``scan-<workload>-<container>-<suffix>``, at most 63 characters.

    The suffix is always kept whole; the readable prefix is truncated.
    """
    suffix = dns_label(suffix)
    prefix = dns_label(f"scan-{workload_name}-{container_name}")
    budget = MAX_NAME_LENGTH - len(suffix) - 1
    prefix = prefix[:budget].rstrip("-")
    return f"{prefix}-{suffix}"
