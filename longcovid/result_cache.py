"""
Caching of aggregate results.

A batch of replicates at one configuration can take hours with a real MCMC
engine, so finished batches may be stored and looked up by a key derived from
everything that determines the result (metric, N, replicate count, threshold,
rule, seed, effects, settings, engine configuration). The callers do not care whether a result came
from the cache or from a fresh run.

Keys look like ``power_n240_<sha1 prefix>``.
"""

from __future__ import annotations

import hashlib
import json
import numbers
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

import numpy as np

from longcovid.replicates import AggregateResult


class ResultCache(Protocol):
    def get(self, key: str) -> Optional[AggregateResult]:
        ...

    def put(self, key: str, result: AggregateResult) -> None:
        ...


def _canonical(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return _canonical(asdict(value))
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in sorted(value.items())}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, np.ndarray):
        return _canonical(value.tolist())
    if isinstance(value, float):
        return round(value, 12)
    if value is None or isinstance(value, (str, bool)):
        return value
    if isinstance(value, numbers.Integral):
        return int(value)
    return _object_identity(value)


def _object_identity(value: Any) -> Any:
    """Class name plus configuration of an engine or other non-dataclass object.

    An object may supply its own ``cache_id``; otherwise its public instance
    attributes are used, so engines that differ only in configuration get
    different keys.
    """
    name = f"{type(value).__module__}.{type(value).__qualname__}"
    cache_id = getattr(value, "cache_id", None)
    if cache_id is not None:
        return {"type": name, "cache_id": _canonical(cache_id)}
    try:
        fields = {k: v for k, v in vars(value).items() if not k.startswith("_")}
    except TypeError:
        # No instance __dict__ (builtins, slotted classes)
        return {"type": name, "repr": repr(value)}
    return {"type": name, "config": _canonical(fields)}


def cache_key(metric: str, n: int, **config: Any) -> str:
    """Stable key for a batch configuration."""
    payload = json.dumps(_canonical(config), sort_keys=True, default=str)
    digest = hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]
    return f"{metric}_n{int(n)}_{digest}"


class MemoryResultCache:
    def __init__(self):
        self._store: Dict[str, AggregateResult] = {}

    def get(self, key: str) -> Optional[AggregateResult]:
        return self._store.get(key)

    def put(self, key: str, result: AggregateResult) -> None:
        self._store[key] = result

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return key in self._store


class JsonFileResultCache:
    """One JSON file per key under ``directory``."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[AggregateResult]:
        path = self.path_for(key)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as fh:
            return AggregateResult.from_dict(json.load(fh))

    def put(self, key: str, result: AggregateResult) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = self.path_for(key).with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(result.to_dict(), fh, indent=2)
        tmp.replace(self.path_for(key))

    def invalidate(self, key: str) -> bool:
        path = self.path_for(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def clear(self) -> int:
        if not self.directory.exists():
            return 0
        count = 0
        for path in self.directory.glob("*.json"):
            path.unlink()
            count += 1
        return count
