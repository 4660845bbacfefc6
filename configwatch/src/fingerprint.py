from __future__ import annotations

from collections.abc import Iterable
from hashlib import sha256


def compute_fingerprint(mounts: Iterable[tuple[str, str]]) -> str:
    """Return the configuration fingerprint for ordered ``(volume, resourceVersion)`` pairs.

    The canonical payload is ``name=version;`` for each entry in the order
    given, hashed with SHA-256 and rendered as lowercase hex.  An empty input
    yields ``""`` so "no dynamic dependency" is distinguishable from a real
    digest.

    The digest is order-sensitive: callers pass volumes in the order the pod
    template declares them, so reordering a Deployment's volume list changes
    the fingerprint and rolls the pods once.
    """
    payload = "".join(f"{name}={version};" for name, version in mounts)
    if not payload:
        return ""
    return sha256(payload.encode("utf-8")).hexdigest()
