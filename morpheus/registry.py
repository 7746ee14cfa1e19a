"""
Morpheus Registry
=================

Catalog of named morphs and pipelines with documentation metadata, used for
discovery (by category, tag or declared input/output type labels).

The registry is pure bookkeeping: it never wraps, mutates or intercepts the
registered targets, and removing it changes nothing about how they transform
values. Registries are plain instances; create one at start-up and pass it
where it is needed (one per test keeps tests isolated).

Usage:
    registry = MorpheusRegistry()
    registry.define(trim, {"category": "text", "tags": ["cleanup"]})
    registry.get("Trim").target is trim
    [r.name for r in registry.find(category="text")]  # ["Trim"]
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set

from .errors import ConfigurationError
from .metadata import BuildMetadata, RecordMetadata, coerce_record_metadata
from .morph import ComposedMorph, Morph

EXPORT_VERSION = "1.0"


@dataclass(frozen=True)
class RegistryRecord:
    """
    One catalog entry.

    Attributes:
        name: Registered name
        target: The registered Morph or Pipeline, untouched
        metadata: Documentation labels
        registered_at: Wall-clock registration time (seconds since epoch)
    """

    name: str
    target: Morph
    metadata: RecordMetadata
    registered_at: float = field(default_factory=time.time)

    @property
    def kind(self) -> str:
        return type(self.target).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "registered_at": datetime.fromtimestamp(
                self.registered_at, tz=timezone.utc
            ).isoformat(),
            "morph": self.target.metadata.to_dict(),
            **self.metadata.to_dict(),
        }


def _default_metadata(target: Morph) -> RecordMetadata:
    # Pipelines carry their own build metadata; composites list their parts
    build_metadata = getattr(target, "build_metadata", None)
    if isinstance(build_metadata, BuildMetadata):
        return coerce_record_metadata(
            build_metadata,
            composition=[stage.label for stage in target.declared_stages],
        )
    if isinstance(target, ComposedMorph):
        return RecordMetadata(
            description=f"Composite: {target.name}",
            composition=tuple(step.name for step in target.steps),
        )
    return RecordMetadata(description=f"Morph: {target.name}")


class MorpheusRegistry:
    """
    Registry of morphs and pipelines.

    Features:
    - O(1) define, get and remove
    - Category and tag indexes for discovery
    - Collision detection with an explicit overwrite switch
    - Thread-safe operations
    """

    def __init__(self):
        self._records: Dict[str, RegistryRecord] = {}
        self._categories: Dict[str, Set[str]] = defaultdict(set)
        self._tags: Dict[str, Set[str]] = defaultdict(set)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def define(
        self,
        target: Morph,
        metadata: Any = None,
        overwrite: bool = False,
        name: Optional[str] = None,
    ) -> RegistryRecord:
        """
        Register ``target`` under its name (or ``name`` when given).

        Args:
            target: A Morph or Pipeline
            metadata: RecordMetadata, BuildMetadata or mapping (``description``,
                ``category``, ``tags``, ``inputType``, ``outputType``,
                ``composition``); merged over the target's own defaults
            overwrite: Replace an existing record with the same name
            name: Register under this name instead of ``target.name``

        Returns:
            The new RegistryRecord

        Raises:
            ConfigurationError: On name collision without ``overwrite``, for
                non-morph targets or malformed metadata
        """
        if not isinstance(target, Morph):
            raise ConfigurationError(f"Only morphs and pipelines can be registered, got {target!r}")
        name = name or target.name

        defaults = _default_metadata(target)
        if metadata is None:
            record_metadata = defaults
        elif isinstance(metadata, BuildMetadata):
            record_metadata = coerce_record_metadata(metadata)
            if not record_metadata.composition and defaults.composition:
                record_metadata = coerce_record_metadata(
                    record_metadata, composition=defaults.composition
                )
        elif isinstance(metadata, Mapping):
            record_metadata = coerce_record_metadata(defaults, **dict(metadata))
        else:
            raise ConfigurationError(f"Cannot use {metadata!r} as registry metadata")

        with self._lock:
            if name in self._records:
                if not overwrite:
                    raise ConfigurationError(
                        f"'{name}' is already registered; pass overwrite=True to replace it"
                    )
                self._unindex(self._records.pop(name))

            record = RegistryRecord(name, target, record_metadata)
            self._records[name] = record
            self._categories[record_metadata.category].add(name)
            for tag in record_metadata.tags:
                self._tags[tag].add(name)
            return record

    def remove(self, name: str) -> bool:
        """
        Remove the record registered under ``name``.

        Returns:
            True if a record was removed, False if there was none
        """
        with self._lock:
            record = self._records.pop(name, None)
            if record is None:
                return False
            self._unindex(record)
            return True

    def _unindex(self, record: RegistryRecord) -> None:
        category = record.metadata.category
        self._categories[category].discard(record.name)
        if not self._categories[category]:
            del self._categories[category]
        for tag in record.metadata.tags:
            self._tags[tag].discard(record.name)
            if not self._tags[tag]:
                del self._tags[tag]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._categories.clear()
            self._tags.clear()

    # ------------------------------------------------------------------
    # Lookup & discovery
    # ------------------------------------------------------------------

    def get(self, name: str) -> Optional[RegistryRecord]:
        """Get the record registered under ``name``, or None."""
        with self._lock:
            return self._records.get(name)

    def find(
        self,
        category: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        input_type: Optional[str] = None,
        output_type: Optional[str] = None,
    ) -> List[RegistryRecord]:
        """
        Records matching every given criterion, in registration order.

        Args:
            category: Exact category
            tags: Tag or tags the record must all carry
            input_type: Declared input type label
            output_type: Declared output type label
        """
        if isinstance(tags, str):
            tags = {tags}
        wanted_tags = frozenset(tags or ())

        with self._lock:
            records = list(self._records.values())

        matches = []
        for record in records:
            meta = record.metadata
            if category is not None and meta.category != category:
                continue
            if not wanted_tags <= meta.tags:
                continue
            if input_type is not None and meta.input_type != input_type:
                continue
            if output_type is not None and meta.output_type != output_type:
                continue
            matches.append(record)
        return matches

    def find_by_types(self, input_type: str, output_type: str) -> List[str]:
        """Names of the targets converting ``input_type`` into ``output_type``."""
        return [
            record.name
            for record in self.find(input_type=input_type, output_type=output_type)
        ]

    def list_by_category(self, category: str) -> List[str]:
        with self._lock:
            names = self._categories.get(category, set())
            return [name for name in self._records if name in names]

    def names(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def categories(self) -> List[str]:
        with self._lock:
            return sorted(self._categories)

    def tags(self) -> List[str]:
        with self._lock:
            return sorted(self._tags)

    def apply(self, name: str, input: Any, context: Any = None) -> Any:
        """
        Look up ``name`` and apply its target to ``input``.

        The target is called exactly as if it had been used directly.

        Raises:
            KeyError: If nothing is registered under ``name``
        """
        record = self.get(name)
        if record is None:
            raise KeyError(f"Morph not registered: {name}")
        return record.target.apply(input, context)

    def export(self) -> Dict[str, Any]:
        """
        JSON-ready snapshot of the catalog (metadata only, never the functions).
        """
        with self._lock:
            records = list(self._records.values())
        return {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "morphs": {record.name: record.to_dict() for record in records},
        }

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __iter__(self) -> Iterator[RegistryRecord]:
        with self._lock:
            return iter(list(self._records.values()))

    def __repr__(self) -> str:
        return f"MorpheusRegistry({len(self)} records)"
