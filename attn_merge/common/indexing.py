# Copyright (c) 2025-2026 SandAI. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from typing import Iterator, TypeVar

import torch

from .enum import StorageFormat
from .errors import ConfigurationError

IndexT = TypeVar("IndexT", int, torch.Tensor)


def calc_pack_width(storage_format: StorageFormat) -> int:
    return storage_format.pack_width


def calc_num_packs(head_size: int, pack_width: int) -> int:
    """Number of packs tiling one head vector

    Raises:
        ConfigurationError: if the head vector can not be tiled by whole packs
    """
    if head_size % pack_width != 0:
        raise ConfigurationError(
            f"{head_size=} must be divisible by the pack width {pack_width}."
        )
    return head_size // pack_width


def calc_total_units(num_tokens: int, num_heads: int, num_packs: int) -> int:
    return num_tokens * num_heads * num_packs


def decompose_linear_index(
    linear_idx: IndexT,
    num_heads: int,
    num_packs: int,
) -> tuple[IndexT, IndexT, IndexT]:
    """Decompose the linear unit index into (token_idx, head_idx, pack_idx),
    w.r.t. the row-major layout: linear_idx = (token_idx * num_heads + head_idx) * num_packs + pack_idx

    NOTE: this works on both python ints and integer tensors
    """
    pack_idx = linear_idx % num_packs
    head_idx = (linear_idx // num_packs) % num_heads
    token_idx = linear_idx // (num_packs * num_heads)

    return token_idx, head_idx, pack_idx


def compose_linear_index(
    token_idx: int,
    head_idx: int,
    pack_idx: int,
    num_heads: int,
    num_packs: int,
) -> int:
    return (token_idx * num_heads + head_idx) * num_packs + pack_idx


def calc_num_blocks(total_units: int, units_per_block: int) -> int:
    return (total_units + units_per_block - 1) // units_per_block


def iter_unit_blocks(
    total_units: int,
    units_per_block: int,
) -> Iterator[tuple[int, int]]:
    """Yield the half-open [start, end) unit ranges of each block,
    which tile [0, total_units) without overlap or gap
    """
    assert units_per_block > 0, f"{units_per_block=} must be positive"

    for block_idx in range(calc_num_blocks(total_units, units_per_block)):
        start = block_idx * units_per_block
        end = min(start + units_per_block, total_units)
        yield start, end
