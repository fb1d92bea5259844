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
import triton
import triton.language as tl

from attn_merge.common.enum import StorageFormat
from attn_merge.common.indexing import (
    calc_num_packs,
    calc_pack_width,
    calc_total_units,
)

__all__ = ["merge_attn_states_triton", "TRITON_UNITS_PER_BLOCK"]

# heuristic: 128 units per program, i.e. 2KB of fp32 / 1KB of fp16 per operand tile
TRITON_UNITS_PER_BLOCK = 128


@triton.jit
def _decompose_linear_index(linear_idx, num_heads, num_packs):
    # NOTE: keep in sync with `attn_merge.common.indexing.decompose_linear_index`
    pack_idx = linear_idx % num_packs
    head_idx = (linear_idx // num_packs) % num_heads
    token_idx = linear_idx // (num_packs * num_heads)
    return token_idx, head_idx, pack_idx


@triton.jit
def merge_attn_states_kernel(
    output_ptr,  # [num_tokens, num_heads, head_size]
    output_lse_ptr,  # [num_heads, num_tokens]
    prefix_output_ptr,  # [num_tokens, num_heads, head_size]
    prefix_lse_ptr,  # [num_heads, num_tokens]
    suffix_output_ptr,  # [num_tokens, num_heads, head_size]
    suffix_lse_ptr,  # [num_heads, num_tokens]
    prefix_lse_stride_h,
    prefix_lse_stride_t,
    suffix_lse_stride_h,
    suffix_lse_stride_t,
    output_lse_stride_h,
    output_lse_stride_t,
    num_heads,
    num_packs,
    total_units,
    PACK_WIDTH: tl.constexpr,
    UNITS_PER_BLOCK: tl.constexpr,
    OUTPUT_LSE: tl.constexpr,
):
    block_idx = tl.program_id(0)

    unit_idx = block_idx.to(tl.int64) * UNITS_PER_BLOCK + tl.arange(
        0, UNITS_PER_BLOCK
    )
    unit_mask = unit_idx < total_units
    token_idx, head_idx, pack_idx = _decompose_linear_index(
        unit_idx, num_heads, num_packs
    )

    # ---   merge lse   --- #

    p_lse = tl.load(
        prefix_lse_ptr
        + head_idx * prefix_lse_stride_h
        + token_idx * prefix_lse_stride_t,
        mask=unit_mask,
        other=float("-inf"),
    )
    s_lse = tl.load(
        suffix_lse_ptr
        + head_idx * suffix_lse_stride_h
        + token_idx * suffix_lse_stride_t,
        mask=unit_mask,
        other=float("-inf"),
    )
    # any infinite lse marks an empty partition
    p_lse = tl.where(p_lse == float("inf"), float("-inf"), p_lse)
    s_lse = tl.where(s_lse == float("inf"), float("-inf"), s_lse)

    max_lse = tl.maximum(p_lse, s_lse)
    is_empty = max_lse == float("-inf")
    p_se = tl.where(is_empty, 0.0, tl.exp(p_lse - max_lse))
    s_se = tl.where(is_empty, 0.0, tl.exp(s_lse - max_lse))
    out_se = p_se + s_se

    safe_out_se = tl.where(is_empty, 1.0, out_se)
    p_scale = p_se / safe_out_se
    s_scale = s_se / safe_out_se

    if OUTPUT_LSE:
        out_lse = tl.log(out_se) + max_lse
        # only the unit of the first pack writes the lse of its (token, head)
        tl.store(
            output_lse_ptr
            + head_idx * output_lse_stride_h
            + token_idx * output_lse_stride_t,
            out_lse,
            mask=unit_mask & (pack_idx == 0),
        )

    # ---   merge out   --- #

    # contiguous layout: element offset = unit_idx * PACK_WIDTH + col
    cols = tl.arange(0, PACK_WIDTH)
    offs = unit_idx[:, None] * PACK_WIDTH + cols[None, :]
    tile_mask = unit_mask[:, None]

    p_out = tl.load(prefix_output_ptr + offs, mask=tile_mask, other=0.0)
    s_out = tl.load(suffix_output_ptr + offs, mask=tile_mask, other=0.0)
    p_out = p_out.to(tl.float32)
    s_out = s_out.to(tl.float32)
    out = p_out * p_scale[:, None] + s_out * s_scale[:, None]

    tl.store(
        output_ptr + offs,
        out.to(output_ptr.dtype.element_ty),
        mask=tile_mask,
    )


def merge_attn_states_triton(
    output: torch.Tensor,
    output_lse: torch.Tensor | None,
    prefix_output: torch.Tensor,
    prefix_lse: torch.Tensor,
    suffix_output: torch.Tensor,
    suffix_lse: torch.Tensor,
    storage_format: StorageFormat,
    units_per_block: int = TRITON_UNITS_PER_BLOCK,
) -> None:
    """Launch one triton program per block of (token, head, pack) units"""
    num_tokens, num_heads, head_size = output.shape
    pack_width = calc_pack_width(storage_format)
    num_packs = calc_num_packs(head_size, pack_width)
    total_units = calc_total_units(num_tokens, num_heads, num_packs)

    # Return directly if empty tensor
    if total_units == 0:
        return

    # ---   pre-process input/output   --- #

    prefix_output = prefix_output.contiguous()
    suffix_output = suffix_output.contiguous()

    need_to_copy = not output.is_contiguous()
    # output is write-only, thus the staging buffer is left uninitialized
    output_ = (
        torch.empty_like(output, memory_format=torch.contiguous_format)
        if need_to_copy
        else output
    )

    has_output_lse = output_lse is not None
    # NOTE: a dummy pointer when not outputting lse, which is never dereferenced
    output_lse_ = output_lse if has_output_lse else prefix_lse

    # ---   calculate grid size   --- #

    grid = (triton.cdiv(total_units, units_per_block),)

    # ---   launch kernel   --- #

    merge_attn_states_kernel[grid](
        output_,
        output_lse_,
        prefix_output,
        prefix_lse,
        suffix_output,
        suffix_lse,
        prefix_lse.stride(0),
        prefix_lse.stride(1),
        suffix_lse.stride(0),
        suffix_lse.stride(1),
        output_lse_.stride(0),
        output_lse_.stride(1),
        num_heads,
        num_packs,
        total_units,
        pack_width,
        units_per_block,
        has_output_lse,
    )

    # ---   post-process output   --- #

    if need_to_copy:
        output.copy_(output_)
