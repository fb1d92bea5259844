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

from typing import Callable

import torch

import attn_merge
from attn_merge.common.enum import StorageFormat
from attn_merge.common.errors import ConfigurationError
from attn_merge.common.indexing import calc_num_packs, calc_pack_width
from attn_merge.config import MergeConfig
from attn_merge.utils import logger, nvtx

from ._merge_kernel_torch import TORCH_UNITS_PER_BLOCK, merge_attn_states_torch
from ._merge_kernel_triton import TRITON_UNITS_PER_BLOCK, merge_attn_states_triton
from .utils import sanitize_lse

__all__ = [
    "merge_attn_states",
    "merge_attn_states_out",
    "merge_attn_states_list",
]


_MERGE_KERNEL_TABLE: dict[str, Callable[..., None]] = {
    "triton": merge_attn_states_triton,
    "torch": merge_attn_states_torch,
}

_DEFAULT_UNITS_PER_BLOCK: dict[str, int] = {
    "triton": TRITON_UNITS_PER_BLOCK,
    "torch": TORCH_UNITS_PER_BLOCK,
}


def _check_merge_args(
    output: torch.Tensor,
    prefix_output: torch.Tensor,
    prefix_lse: torch.Tensor,
    suffix_output: torch.Tensor,
    suffix_lse: torch.Tensor,
    output_lse: torch.Tensor | None,
) -> StorageFormat:
    """Check the preconditions of the merge and return the storage format of the outputs

    Raises:
        ConfigurationError: if any precondition is violated
    """
    storage_format = StorageFormat.from_dtype(output.dtype)

    for name, out in (
        ("prefix_output", prefix_output),
        ("suffix_output", suffix_output),
    ):
        if out.dtype != output.dtype:
            raise ConfigurationError(
                f"The dtype of {name} ({out.dtype}) must match "
                f"the dtype of output ({output.dtype})."
            )

    lse_dict = {"prefix_lse": prefix_lse, "suffix_lse": suffix_lse}
    if output_lse is not None:
        lse_dict["output_lse"] = output_lse
    for name, lse in lse_dict.items():
        if lse.dtype != torch.float32:
            raise ConfigurationError(
                f"The dtype of {name} must be torch.float32, but got {lse.dtype=}."
            )
        if lse.ndim != 2:
            raise ConfigurationError(
                f"{name} must be 2D with shape [num_heads, num_tokens], "
                f"but got {lse.shape=}."
            )

    if output.ndim != 3:
        raise ConfigurationError(
            "output must be 3D with shape [num_tokens, num_heads, head_size], "
            f"but got {output.shape=}."
        )

    # raises if the head size can not be tiled by whole packs
    calc_num_packs(output.shape[-1], calc_pack_width(storage_format))

    num_tokens, num_heads, _ = output.shape
    for name, out in (
        ("prefix_output", prefix_output),
        ("suffix_output", suffix_output),
    ):
        if out.shape != output.shape:
            raise ConfigurationError(
                f"The shape of {name} ({tuple(out.shape)}) must match "
                f"the shape of output ({tuple(output.shape)})."
            )
    for name, lse in lse_dict.items():
        if tuple(lse.shape) != (num_heads, num_tokens):
            raise ConfigurationError(
                f"The shape of {name} ({tuple(lse.shape)}) must be "
                f"[num_heads, num_tokens] = {[num_heads, num_tokens]}."
            )

    if attn_merge.is_sanity_check_enable():
        devices = {
            t.device
            for t in (output, prefix_output, suffix_output, *lse_dict.values())
        }
        if len(devices) > 1:
            raise ConfigurationError(
                f"All tensors must be on the same device, but got {devices=}."
            )

    return storage_format


@nvtx.instrument_nvtx
def merge_attn_states(
    output: torch.Tensor,
    prefix_output: torch.Tensor,
    prefix_lse: torch.Tensor,
    suffix_output: torch.Tensor,
    suffix_lse: torch.Tensor,
    output_lse: torch.Tensor | None = None,
    config: MergeConfig | None = None,
) -> None:
    """
    Merge the partial attention results of two disjoint key/value ranges
    into the attention result of their union, writing into the given buffers.

    For each (token, head), with p = prefix_lse, s = suffix_lse
    and any infinite lse treated as -inf:
        m = max(p, s)
        output = (exp(p - m) * prefix_output + exp(s - m) * suffix_output) / (exp(p - m) + exp(s - m))
        output_lse = log(exp(p - m) + exp(s - m)) + m
    where the merge math is always done in fp32,
    and both ranges being empty yields a zero output and -inf output_lse.

    Args:
        output (torch.Tensor): output buffer, with shape: [num_tokens, num_heads, head_size]
        prefix_output (torch.Tensor): prefix partial output, with shape: [num_tokens, num_heads, head_size]
        prefix_lse (torch.Tensor): prefix partial lse in fp32, with shape: [num_heads, num_tokens]
        suffix_output (torch.Tensor): suffix partial output, with shape: [num_tokens, num_heads, head_size]
        suffix_lse (torch.Tensor): suffix partial lse in fp32, with shape: [num_heads, num_tokens]
        output_lse (torch.Tensor, optional): output lse buffer in fp32, with shape: [num_heads, num_tokens].
            Defaults to None to not output lse.
        config (MergeConfig, optional): the merge config. Defaults to None to build it from env variables.

    Raises:
        ConfigurationError: if the storage dtype is not one of fp32/fp16/bf16,
            or the head size is not divisible by the pack width of the storage dtype,
            or the shapes of the outputs and lses do not match, before any output is written
    """
    storage_format = _check_merge_args(
        output=output,
        prefix_output=prefix_output,
        prefix_lse=prefix_lse,
        suffix_output=suffix_output,
        suffix_lse=suffix_lse,
        output_lse=output_lse,
    )

    if config is None:
        config = MergeConfig()
    backend = config.resolve_backend(output.device)
    units_per_block = config.units_per_block or _DEFAULT_UNITS_PER_BLOCK[backend]

    logger.debug(
        f"merging {tuple(output.shape)} with {backend=}, "
        f"{storage_format=}, {units_per_block=}"
    )

    _MERGE_KERNEL_TABLE[backend](
        output,
        output_lse,
        prefix_output,
        prefix_lse,
        suffix_output,
        suffix_lse,
        storage_format=storage_format,
        units_per_block=units_per_block,
    )


def merge_attn_states_out(
    prefix_output: torch.Tensor,
    prefix_lse: torch.Tensor,
    suffix_output: torch.Tensor,
    suffix_lse: torch.Tensor,
    return_lse: bool = True,
    config: MergeConfig | None = None,
) -> tuple[torch.Tensor, torch.Tensor | None]:
    """Out-of-place version of ``merge_attn_states``

    Returns:
        tuple[torch.Tensor, torch.Tensor | None]: the merged output,
            and the merged lse if ``return_lse`` else None
    """
    output = torch.empty_like(prefix_output, memory_format=torch.contiguous_format)
    output_lse = (
        torch.empty_like(prefix_lse, memory_format=torch.contiguous_format)
        if return_lse
        else None
    )

    merge_attn_states(
        output=output,
        prefix_output=prefix_output,
        prefix_lse=prefix_lse,
        suffix_output=suffix_output,
        suffix_lse=suffix_lse,
        output_lse=output_lse,
        config=config,
    )

    return output, output_lse


def merge_attn_states_list(
    out_list: list[torch.Tensor],
    lse_list: list[torch.Tensor],
    config: MergeConfig | None = None,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Merge the partial attention results of any number of disjoint key/value ranges
    by folding them from left to right

    Args:
        out_list (list[torch.Tensor]): the list of partial out tensors
        lse_list (list[torch.Tensor]): the list of partial lse tensors
        config (MergeConfig, optional): the merge config. Defaults to None.

    Returns:
        tuple[torch.Tensor, torch.Tensor]: the merged out and lse

    Shape:
        out: [num_tokens, num_heads, head_size]
        lse: [num_heads, num_tokens]
    """
    if len(out_list) != len(lse_list) or len(out_list) == 0:
        raise ConfigurationError(
            "out_list and lse_list must be non-empty with the same length, "
            f"but got {len(out_list)=} and {len(lse_list)=}."
        )
    if out_list[0].ndim != 3 or tuple(lse_list[0].shape) != tuple(
        out_list[0].shape[1::-1]
    ):
        raise ConfigurationError(
            f"The shape of the lse ({tuple(lse_list[0].shape)}) must be "
            "[num_heads, num_tokens] w.r.t. the shape of the out "
            f"({tuple(out_list[0].shape)})."
        )

    # a single partial still follows the merge conventions:
    # infinite lse is treated as -inf, whose output is zero
    merged_lse = sanitize_lse(lse_list[0])
    merged_out = torch.where(
        # shape: [h, t] -> [t, h, 1]
        (merged_lse == float("-inf")).transpose(0, 1).unsqueeze(-1),
        torch.zeros_like(out_list[0]),
        out_list[0],
    )
    for out, lse in zip(out_list[1:], lse_list[1:]):
        merged_out, merged_lse = merge_attn_states_out(  # type: ignore[assignment]
            prefix_output=merged_out,
            prefix_lse=merged_lse,
            suffix_output=out,
            suffix_lse=lse,
            return_lse=True,
            config=config,
        )

    return merged_out, merged_lse
