"""Example sources: in-memory collections and versioned remote datasets.

An ExampleSource is finite and restartable: iterating it twice yields the
same examples with the same ids, so runs from separate experiments can be
correlated by example id.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)

from genai_eval_sdk.errors import NotFoundError, SourceError
from genai_eval_sdk.schemas import Example

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
LATEST = "latest"

_EXAMPLE_NAMESPACE = uuid.UUID("6f1c3c1e-3d2b-4b7a-9a53-6a3f0f6b9b41")

Version = Union[str, datetime, None]


@runtime_checkable
class DatasetClient(Protocol):
    """Remote dataset store consumed by ExampleSource.from_dataset()."""

    def list_examples(
        self,
        dataset: str,
        version: Version = None,
        *,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Sequence[Example]:
        """Return one page of examples; raise NotFoundError if absent."""
        ...

    def resolve_version(self, dataset: str, version: Version = None) -> str:
        """Return the concrete version tag ``version`` refers to."""
        ...


def example_from_dict(data: Mapping[str, Any], index: int = 0) -> Example:
    """Build an Example from a dict.

    Accepts ``{"inputs": ..., "outputs": ..., "metadata": ..., "id": ...}``
    or the ``{"input": ..., "expected": ...}`` shorthand. Non-mapping
    inputs/expected values are wrapped as ``{"input": v}`` /
    ``{"output": v}``. Without an id, one is derived from position and
    content, so the same list always yields the same ids.
    """
    if "inputs" in data:
        inputs = data["inputs"]
        reference = data.get("outputs", data.get("reference_outputs"))
    elif "input" in data:
        inputs = data["input"]
        reference = data.get("expected")
    else:
        raise SourceError(f"Example {index} has neither 'inputs' nor 'input': {data!r}")

    if not isinstance(inputs, Mapping):
        inputs = {"input": inputs}
    if reference is not None and not isinstance(reference, Mapping):
        reference = {"output": reference}

    example_id = data.get("id")
    if example_id is None:
        payload = json.dumps([index, inputs, reference], sort_keys=True, default=str)
        example_id = str(uuid.uuid5(_EXAMPLE_NAMESPACE, payload))

    return Example(
        id=str(example_id),
        inputs=dict(inputs),
        reference_outputs=dict(reference) if reference is not None else None,
        metadata=dict(data.get("metadata") or {}),
    )


class ExampleSource:
    """A finite, restartable sequence of examples.

    Build one with ``from_examples()`` for materialised data or
    ``from_dataset()`` for a remote dataset pinned to a version.
    """

    def __init__(
        self,
        loader: Callable[[], Iterable[Example]],
        *,
        dataset_name: Optional[str] = None,
        version: Optional[str] = None,
    ) -> None:
        self._loader = loader
        self.dataset_name = dataset_name
        self.version = version

    @classmethod
    def from_examples(
        cls,
        data: Union[Iterable[Any], Callable[[], Iterable[Any]]],
        *,
        dataset_name: Optional[str] = None,
        version: Optional[str] = None,
    ) -> "ExampleSource":
        """Wrap a list of Examples/dicts, or a callable returning one."""

        def load() -> Iterator[Example]:
            items = data() if callable(data) else data
            for index, item in enumerate(items):
                if isinstance(item, Example):
                    yield item
                elif isinstance(item, Mapping):
                    yield example_from_dict(item, index)
                else:
                    raise SourceError(
                        f"Unsupported example type at index {index}: {type(item).__name__}"
                    )

        return cls(load, dataset_name=dataset_name, version=version)

    @classmethod
    def from_dataset(
        cls,
        client: DatasetClient,
        dataset: str,
        version: Version = None,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "ExampleSource":
        """Stream a remote dataset page by page, pinned to one version.

        The version (tag, timestamp, or None for latest) is resolved once,
        so every pass over the source reads the same snapshot.
        """
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        try:
            pinned = client.resolve_version(dataset, version)
        except SourceError:
            raise
        except Exception as exc:
            raise SourceError(f"Could not resolve dataset {dataset!r}: {exc}") from exc

        def load() -> Iterator[Example]:
            offset = 0
            while True:
                page = client.list_examples(dataset, pinned, offset=offset, limit=page_size)
                yield from page
                if len(page) < page_size:
                    return
                offset += page_size

        return cls(load, dataset_name=dataset, version=pinned)

    def __iter__(self) -> Iterator[Example]:
        return iter(self._loader())

    def load(self) -> List[Example]:
        """Materialise every example, checking id uniqueness.

        Raises:
            SourceError: The source failed or produced duplicate ids.
        """
        try:
            examples = list(self)
        except SourceError:
            raise
        except Exception as exc:
            raise SourceError(f"Failed to load examples: {exc}") from exc

        seen = set()
        for example in examples:
            if example.id in seen:
                raise SourceError(f"Duplicate example id: {example.id}")
            seen.add(example.id)

        logger.debug(
            "Loaded %d examples (dataset=%s version=%s)",
            len(examples),
            self.dataset_name,
            self.version,
        )
        return examples


@dataclass
class _DatasetVersion:
    tag: str
    created_at: datetime
    examples: List[Example] = field(default_factory=list)


class InMemoryDatasetClient:
    """A DatasetClient holding versioned datasets in memory.

    Every ``create_version`` call snapshots the given examples under a new
    tag. Versions can be looked up by tag, by timestamp (the newest version
    created at or before it), or as None/"latest".

    Example:
        client = InMemoryDatasetClient()
        client.create_version("toxicity", examples, tag="v1")
        source = ExampleSource.from_dataset(client, "toxicity", "v1")
    """

    def __init__(self) -> None:
        self._datasets: Dict[str, List[_DatasetVersion]] = {}

    def create_version(
        self,
        dataset: str,
        examples: Iterable[Union[Example, Mapping[str, Any]]],
        *,
        tag: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        versions = self._datasets.setdefault(dataset, [])
        tag = tag or f"v{len(versions) + 1}"
        if tag == LATEST or any(v.tag == tag for v in versions):
            raise ValueError(f"Version tag {tag!r} already used for dataset {dataset!r}")
        snapshot = [
            item if isinstance(item, Example) else example_from_dict(item, index)
            for index, item in enumerate(examples)
        ]
        versions.append(
            _DatasetVersion(
                tag=tag,
                created_at=created_at or datetime.now(timezone.utc),
                examples=snapshot,
            )
        )
        return tag

    def resolve_version(self, dataset: str, version: Version = None) -> str:
        return self._find(dataset, version).tag

    def list_examples(
        self,
        dataset: str,
        version: Version = None,
        *,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Sequence[Example]:
        found = self._find(dataset, version)
        return found.examples[offset : offset + limit]

    def _find(self, dataset: str, version: Version) -> _DatasetVersion:
        versions = self._datasets.get(dataset)
        if not versions:
            raise NotFoundError(dataset)
        if version is None or version == LATEST:
            return versions[-1]
        if isinstance(version, datetime):
            eligible = [v for v in versions if v.created_at <= version]
            if not eligible:
                raise NotFoundError(dataset, version.isoformat())
            return max(eligible, key=lambda v: v.created_at)
        for candidate in versions:
            if candidate.tag == version:
                return candidate
        raise NotFoundError(dataset, version)
