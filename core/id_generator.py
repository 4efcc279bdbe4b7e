"""
Stable identifiers for entities the model returned without an id.
"""

import hashlib
import itertools
import threading

from core.entity_models import EntityKind, normalize_name


class IdGenerator:
    """Generate ``PREFIX-`` ids from the entity kind and name.

    Named entities get a content hash, so the same name yields the same id in
    every chunk and every run. Nameless entities fall back to a counter that
    is scoped to this generator (one per job).
    """

    HASH_LENGTH = 10

    def __init__(self, scope: str = ""):
        self.scope = scope
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def generate(self, kind: EntityKind, name: str = "") -> str:
        normalized = normalize_name(name)
        if normalized:
            digest = hashlib.sha1(f"{kind.value}|{normalized}".encode("utf-8")).hexdigest()
            return f"{kind.id_prefix}-{digest[: self.HASH_LENGTH]}"
        with self._lock:
            number = next(self._counter)
        suffix = f"{self.scope}-" if self.scope else ""
        return f"{kind.id_prefix}-{suffix}{number:04d}"
