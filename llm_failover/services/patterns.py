"""
Usage pattern learning.

Keeps a decaying histogram of which provider served which kind of request
and turns it into an advisory score. The selector only uses the score to
break ties between otherwise equal candidates.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from llm_failover.core.config import settings
from llm_failover.core.errors import ConfigurationInvalid
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)

HOUR_BUCKET_SIZE = 4

# (dimension, value), e.g. ("hour", "2"), ("model", "llama3.2"), ("workload", "chat")
PatternKey = Tuple[str, str]


@dataclass(frozen=True)
class PatternEntry:
    """Decayed selection weight of one provider under one key."""
    weight: float
    updated_at: float


@dataclass(frozen=True)
class PatternInsight:
    """The provider that most often served one model or workload."""
    dimension: str
    value: str
    provider_id: str
    share: float
    weight: float


def hour_bucket(at: float) -> str:
    """Time-of-day bucket (UTC) for a timestamp."""
    hour = datetime.fromtimestamp(at, tz=timezone.utc).hour
    return str(hour // HOUR_BUCKET_SIZE)


class UsagePatternLearner:
    """
    Learns provider preference per time-of-day, model and workload.

    Weights halve every ``window_days``; a disabled learner scores every
    provider zero so ranking falls through to the next tie-break.
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        window_days: Optional[float] = None,
        clock: Callable[[], float] = time.time
    ):
        self.enabled = settings.pattern_learning_enabled if enabled is None else enabled
        window_days = settings.pattern_window_days if window_days is None else window_days
        if window_days <= 0:
            raise ConfigurationInvalid("window_days must be positive")
        self.half_life = window_days * 86400.0
        self._clock = clock
        self._histogram: Mapping[PatternKey, Mapping[str, PatternEntry]] = MappingProxyType({})

    def _keys(self, model: Optional[str], workload: Optional[str], at: float) -> Tuple[PatternKey, ...]:
        keys = [("hour", hour_bucket(at))]
        if model:
            keys.append(("model", model))
        if workload:
            keys.append(("workload", workload))
        return tuple(keys)

    def _decayed(self, entry: PatternEntry, at: float) -> float:
        elapsed = max(0.0, at - entry.updated_at)
        return entry.weight * 0.5 ** (elapsed / self.half_life)

    def observe(
        self,
        provider_id: str,
        model: Optional[str] = None,
        workload: Optional[str] = None,
        at: Optional[float] = None
    ) -> None:
        """
        Record that ``provider_id`` served a request.

        Args:
            provider_id: Provider that served the request
            model: Requested model
            workload: Workload tag
            at: Timestamp, defaults to now
        """
        if not self.enabled:
            return

        at = self._clock() if at is None else at
        histogram: Dict[PatternKey, Mapping[str, PatternEntry]] = dict(self._histogram)
        for key in self._keys(model, workload, at):
            bucket = dict(histogram.get(key, {}))
            previous = bucket.get(provider_id)
            weight = (self._decayed(previous, at) if previous else 0.0) + 1.0
            bucket[provider_id] = PatternEntry(weight=weight, updated_at=at)
            histogram[key] = MappingProxyType(bucket)
        self._histogram = MappingProxyType(histogram)

    def score(
        self,
        provider_id: str,
        model: Optional[str] = None,
        workload: Optional[str] = None,
        at: Optional[float] = None
    ) -> float:
        """
        Preference score in [0, 1].

        The provider's share of decayed weight is computed for every key
        that has data and the shares are averaged.
        """
        if not self.enabled:
            return 0.0

        at = self._clock() if at is None else at
        shares = []
        for key in self._keys(model, workload, at):
            bucket = self._histogram.get(key)
            if not bucket:
                continue
            weights = {pid: self._decayed(entry, at) for pid, entry in bucket.items()}
            total = sum(weights.values())
            if total > 0:
                shares.append(weights.get(provider_id, 0.0) / total)

        if not shares:
            return 0.0
        return sum(shares) / len(shares)

    def snapshot(self) -> Mapping[PatternKey, Mapping[str, PatternEntry]]:
        return self._histogram

    def clear(self) -> None:
        self._histogram = MappingProxyType({})

    def insights(self, at: Optional[float] = None) -> List[PatternInsight]:
        """
        Leading provider per model and per workload.

        Time-of-day buckets are left out; they say when traffic arrives
        rather than who served it.
        """
        at = self._clock() if at is None else at
        found = []
        for (dimension, value), bucket in self._histogram.items():
            if dimension == "hour":
                continue
            weights = {pid: self._decayed(entry, at) for pid, entry in bucket.items()}
            total = sum(weights.values())
            if total <= 0:
                continue
            leader = min(weights, key=lambda pid: (-weights[pid], pid))
            found.append(PatternInsight(
                dimension=dimension,
                value=value,
                provider_id=leader,
                share=weights[leader] / total,
                weight=total,
            ))
        found.sort(key=lambda i: (i.dimension, i.value))
        return found
