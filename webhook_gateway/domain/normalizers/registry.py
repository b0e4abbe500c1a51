"""
Dispatch tables for payload normalization.

Each provider registers one envelope function (fields every delivery of that
provider carries) and an activity namer, plus one pure extractor per known
event shape. Unknown shapes simply have no extractor.
"""
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from webhook_gateway.domain.events import Source

Extractor = Callable[[Mapping[str, Any]], dict[str, Any]]
EnvelopeFn = Callable[[str | None, Mapping[str, Any], Mapping[str, str]], dict[str, Any]]
ActivityFn = Callable[[str, str | None], str]


@dataclass(frozen=True)
class ProviderAdapter:
    envelope: EnvelopeFn
    activity: ActivityFn


_EXTRACTORS: dict[tuple[Source, str], Extractor] = {}
_PROVIDERS: dict[Source, ProviderAdapter] = {}


def register(source: Source, *event_types: str) -> Callable[[Extractor], Extractor]:
    def decorator(func: Extractor) -> Extractor:
        for event_type in event_types:
            key = (source, event_type)
            if key in _EXTRACTORS:
                raise ValueError(f"Extractor already registered for {source.value}:{event_type}")
            _EXTRACTORS[key] = func
        return func
    return decorator


def register_provider(source: Source, *, envelope: EnvelopeFn, activity: ActivityFn) -> None:
    _PROVIDERS[source] = ProviderAdapter(envelope=envelope, activity=activity)


def get_extractor(source: Source, event_type: str) -> Extractor | None:
    return _EXTRACTORS.get((source, event_type))


def get_provider(source: Source) -> ProviderAdapter:
    return _PROVIDERS[source]


def registered_event_types(source: Source) -> list[str]:
    return sorted(event_type for (src, event_type) in _EXTRACTORS if src is source)
