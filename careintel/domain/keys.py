"""Stable keys and ids for derived records, so reruns land on the same rows."""

import hashlib
import uuid

_NAMESPACE = uuid.UUID("6f1c1f6e-2b7e-4f0a-9a53-5d0c7f3f2a11")


def fingerprint(*parts: object) -> str:
    """sha256 over the string form of ``parts``, joined with ``|``."""
    joined = "|".join(str(part) for part in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def stable_id(*parts: object) -> str:
    """uuid5 derived from ``parts``."""
    return str(uuid.uuid5(_NAMESPACE, "|".join(str(part) for part in parts)))
