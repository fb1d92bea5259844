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

import torch

from attn_merge.common.enum import StorageFormat
from attn_merge.common.indexing import (
    calc_num_packs,
    calc_pack_width,
    calc_total_units,
    decompose_linear_index,
    iter_unit_blocks,
)

from .utils import safe_subtract, sanitize_lse

__all__ = ["merge_attn_states_torch", "TORCH_UNITS_PER_BLOCK"]

# heuristic: large blocks to amortize the per-block python overhead
TORCH_UNITS_PER_BLOCK = 65536


@torch.no_grad
def merge_attn_states_torch(
    output: torch.Tensor,
    output_lse: torch.Tensor | None,
    prefix_output: torch.Tensor,
    prefix_lse: torch.Tensor,
    suffix_output: torch.Tensor,
    suffix_lse: torch.Tensor,
    storage_format: StorageFormat,
    units_per_block: int = TORCH_UNITS_PER_BLOCK,
) -> None:
    """Walk the flattened (token, head, pack) unit space block by block with torch ops,
    which runs on any device
    """
    num_tokens, num_heads, head_size = output.shape
    pack_width = calc_pack_width(storage_format)
    num_packs = calc_num_packs(head_size, pack_width)
    total_units = calc_total_units(num_tokens, num_heads, num_packs)

    # ---   pre-process input/output   --- #

    # [num_tokens, num_heads, head_size] -> [total_units, pack_width]
    prefix_packs = prefix_output.contiguous().view(total_units, pack_width)
    suffix_packs = suffix_output.contiguous().view(total_units, pack_width)

    need_to_copy = not output.is_contiguous()
    # output is write-only, thus the staging buffer is left uninitialized
    output_ = (
        torch.empty_like(output, memory_format=torch.contiguous_format)
        if need_to_copy
        else output
    )
    output_packs = output_.view(total_units, pack_width)

    # ---   merge lse   --- #

    # NOTE: the per-(head, token) lse math is done once over the whole lse
    # to make the result independent of the block partition
    # shape: [num_heads, num_tokens]
    p_lse = sanitize_lse(prefix_lse.contiguous())
    s_lse = sanitize_lse(suffix_lse.contiguous())

    max_lse = torch.maximum(p_lse, s_lse)
    p_se = safe_subtract(p_lse, max_lse).exp()
    s_se = safe_subtract(s_lse, max_lse).exp()
    out_se = p_se + s_se

    # both partitions being empty yields zero scales
    safe_out_se = torch.where(out_se == 0, torch.ones_like(out_se), out_se)
    p_scale = p_se / safe_out_se
    s_scale = s_se / safe_out_se
    out_lse = out_se.log() + max_lse if output_lse is not None else None

    # ---   merge out block by block   --- #

    for start, end in iter_unit_blocks(total_units, units_per_block):
        unit_idx = torch.arange(start, end, device=output.device)
        token_idx, head_idx, pack_idx = decompose_linear_index(
            unit_idx, num_heads, num_packs
        )

        out = (
            storage_format.promote(prefix_packs[start:end])
            * p_scale[head_idx, token_idx].unsqueeze(-1)
            + storage_format.promote(suffix_packs[start:end])
            * s_scale[head_idx, token_idx].unsqueeze(-1)
        )
        output_packs[start:end] = storage_format.demote(out)

        if out_lse is not None:
            # only the unit of the first pack writes the lse of its (token, head)
            is_leader = pack_idx == 0
            leader_idx = (head_idx[is_leader], token_idx[is_leader])
            output_lse[leader_idx] = out_lse[leader_idx]  # type: ignore[index]

    # ---   post-process output   --- #

    if need_to_copy:
        output.copy_(output_)
