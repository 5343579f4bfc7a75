"""Shard planning policies.

A planner walks the tensor descriptors of an archive in their original order
and decides where shard boundaries fall. Two policies share one contract:

* :class:`MaxTensorsPlanner` caps the number of tensors per shard.
* :class:`MaxSizePlanner` caps the pre-padding payload bytes per shard. The
  cap is soft in the sense that a shard may end well below it, but a single
  tensor is never split, so a tensor larger than the cap is fatal.

Planning always runs to completion before any file is written. The split
count stored in every shard header is therefore exact, and size-limit errors
surface before any output exists.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Union

from ..codec import TensorDescriptor
from ..common import (
    ConfigurationError,
    DEFAULT_MAX_TENSORS,
    MAX_SPLIT_COUNT,
    SizeLimitError,
    parse_split_size,
)

logger = logging.getLogger(__name__)


@dataclass
class ShardPlanState:
    """Mutable cursor shared between the planner and its policy hooks."""

    n_tensors: int
    n_total_bytes: int
    tensor_index: int = 0
    shard_index: int = 0
    data_shard_index: int = 0
    # bytes of tensors committed to the open shard
    bytes_written: int = 0
    # running sum while probing which tensors the open shard accepts
    candidate_bytes: int = 0


@dataclass(frozen=True)
class ShardDescriptor:
    """One planned output shard."""

    index: int
    count: int
    first_tensor: int
    end_tensor: int
    carries_data: bool
    data_shard_index: int
    tensor_bytes: int = 0

    @property
    def tensor_count(self) -> int:
        return self.end_tensor - self.first_tensor

    @property
    def tensor_range(self) -> range:
        return range(self.first_tensor, self.end_tensor)


class ShardPlanner:
    """Common planning loop; subclasses provide the boundary policy."""

    name = "base"

    def __init__(self, *, no_tensor_in_metadata: bool = False) -> None:
        self.no_tensor_in_metadata = no_tensor_in_metadata

    # -- policy hooks -----------------------------------------------------

    def start_shard(self, state: ShardPlanState) -> None:
        state.bytes_written = 0
        state.candidate_bytes = 0

    def include_in_shard(self, state: ShardPlanState, idx: int, descriptor: TensorDescriptor) -> bool:
        raise NotImplementedError

    def should_start_new_shard(self, state: ShardPlanState) -> bool:
        raise NotImplementedError

    def compute_shard_count(self, descriptors: Sequence[TensorDescriptor]) -> int:
        return len(self.plan(descriptors))

    def estimate_shard_count(self, descriptors: Sequence[TensorDescriptor]) -> int:
        """Shard count reported alongside the plan; exact unless overridden."""

        return self.compute_shard_count(descriptors)

    # -- planning loop ----------------------------------------------------

    def plan(self, descriptors: Sequence[TensorDescriptor]) -> List[ShardDescriptor]:
        state = ShardPlanState(
            n_tensors=len(descriptors),
            n_total_bytes=sum(d.n_bytes for d in descriptors),
        )
        shards: List[ShardDescriptor] = []

        if self.no_tensor_in_metadata:
            shards.append(
                ShardDescriptor(
                    index=0,
                    count=0,
                    first_tensor=0,
                    end_tensor=0,
                    carries_data=False,
                    data_shard_index=-1,
                )
            )
            state.shard_index = 1

        while state.tensor_index < state.n_tensors or not shards:
            shards.append(self._plan_shard(state, descriptors))
            state.shard_index += 1

        count = len(shards)
        if count > MAX_SPLIT_COUNT:
            raise ConfigurationError(
                f"{count} shards requested but the split count is limited to {MAX_SPLIT_COUNT}"
            )
        planned = [replace(shard, count=count) for shard in shards]
        for shard in planned:
            logger.debug(
                "%s plan: shard %d/%d tensors [%d, %d) %d bytes",
                self.name,
                shard.index + 1,
                count,
                shard.first_tensor,
                shard.end_tensor,
                shard.tensor_bytes,
            )
        return planned

    def _plan_shard(self, state: ShardPlanState, descriptors: Sequence[TensorDescriptor]) -> ShardDescriptor:
        state.data_shard_index = state.shard_index - 1 if self.no_tensor_in_metadata else state.shard_index
        self.start_shard(state)

        first = state.tensor_index
        end = first
        for idx in range(first, state.n_tensors):
            if not self.include_in_shard(state, idx, descriptors[idx]):
                break
            end = idx + 1

        tensor_bytes = 0
        for idx in range(first, end):
            n_bytes = descriptors[idx].n_bytes
            state.tensor_index += 1
            state.bytes_written += n_bytes
            tensor_bytes += n_bytes
            if state.tensor_index < end and self.should_start_new_shard(state):
                break

        return ShardDescriptor(
            index=state.shard_index,
            count=0,
            first_tensor=first,
            end_tensor=state.tensor_index,
            carries_data=True,
            data_shard_index=state.data_shard_index,
            tensor_bytes=tensor_bytes,
        )


class MaxTensorsPlanner(ShardPlanner):
    """Start a new shard every ``max_tensors`` tensors.

    Inside :meth:`plan` the inclusion test already stops a shard at the next
    multiple of ``max_tensors``, so the modulus check agrees with it rather
    than adding boundaries of its own.
    """

    name = "max-tensors"

    def __init__(self, max_tensors: int, *, no_tensor_in_metadata: bool = False) -> None:
        if max_tensors <= 0:
            raise ConfigurationError(f"--split-max-tensors must be positive, got {max_tensors}")
        super().__init__(no_tensor_in_metadata=no_tensor_in_metadata)
        self.max_tensors = max_tensors

    def include_in_shard(self, state: ShardPlanState, idx: int, descriptor: TensorDescriptor) -> bool:
        return idx < (state.data_shard_index + 1) * self.max_tensors

    def should_start_new_shard(self, state: ShardPlanState) -> bool:
        return state.tensor_index % self.max_tensors == 0

    def compute_shard_count(self, descriptors: Sequence[TensorDescriptor]) -> int:
        n_split = math.ceil(len(descriptors) / self.max_tensors)
        if self.no_tensor_in_metadata:
            return n_split + 1
        return max(n_split, 1)


class MaxSizePlanner(ShardPlanner):
    """Fill each shard with at most ``max_bytes`` of tensor payload.

    Inclusion is decided against the candidate sum of the shard being
    opened; the decision to close a shard after a tensor is committed looks
    at bytes already committed. The two accumulators are reset together when
    a shard opens but advance at different points of the walk.

    Because both are per shard and a shard only commits tensors that passed
    inclusion, committed bytes never exceed the cap inside :meth:`plan`, so
    the close check never ends a shard early there. It stays as the answer
    to "does a new shard start here" for callers that drive the hooks
    themselves.
    """

    name = "max-size"

    def __init__(self, max_bytes: int, *, no_tensor_in_metadata: bool = False) -> None:
        if max_bytes <= 0:
            raise ConfigurationError(f"--split-max-size must be positive, got {max_bytes}")
        super().__init__(no_tensor_in_metadata=no_tensor_in_metadata)
        self.max_bytes = max_bytes

    def include_in_shard(self, state: ShardPlanState, idx: int, descriptor: TensorDescriptor) -> bool:
        n_bytes = descriptor.n_bytes
        include = state.candidate_bytes + n_bytes <= self.max_bytes
        if not include and idx == state.tensor_index:
            logger.error(
                "--split-max-size too small for tensor %d (%s): %d > %d",
                idx,
                descriptor.name,
                state.candidate_bytes + n_bytes,
                self.max_bytes,
            )
            raise SizeLimitError(idx, state.candidate_bytes + n_bytes, self.max_bytes)
        state.candidate_bytes += n_bytes
        return include

    def should_start_new_shard(self, state: ShardPlanState) -> bool:
        return state.bytes_written > self.max_bytes

    def estimate_shard_count(self, descriptors: Sequence[TensorDescriptor]) -> int:
        """Lower bound on the shard count from ``ceil(bytes / cap)``."""

        total = sum(d.n_bytes for d in descriptors)
        n_split = min(math.ceil(total / self.max_bytes), len(descriptors))
        if self.no_tensor_in_metadata:
            return n_split + 1
        return max(n_split, 1)


def select_planner(
    *,
    max_tensors: Optional[int] = DEFAULT_MAX_TENSORS,
    max_size: Union[int, str, None] = None,
    no_tensor_in_metadata: bool = False,
) -> ShardPlanner:
    """Pick the planner for the given limits.

    A size cap wins over a tensor cap. ``max_size`` may be a byte count or an
    ``N[M|G]`` string.
    """

    if max_size is not None and max_size != "":
        max_bytes = parse_split_size(max_size) if isinstance(max_size, str) else int(max_size)
        return MaxSizePlanner(max_bytes, no_tensor_in_metadata=no_tensor_in_metadata)
    if max_tensors is not None and max_tensors > 0:
        return MaxTensorsPlanner(max_tensors, no_tensor_in_metadata=no_tensor_in_metadata)
    raise ConfigurationError("either --split-max-tensors or --split-max-size must be positive")


__all__ = [
    "MaxSizePlanner",
    "MaxTensorsPlanner",
    "ShardDescriptor",
    "ShardPlanState",
    "ShardPlanner",
    "select_planner",
]
