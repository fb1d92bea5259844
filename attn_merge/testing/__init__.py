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

import functools
import itertools
import os
from typing import Any, Callable

from . import precision, ref_attn
from .precision import assert_close, calc_inf_norm, get_tolerance
from .ref_attn import merge_attn_states_ref, ref_attn_with_lse

__all__ = [
    "precision",
    "ref_attn",
    "assert_close",
    "calc_inf_norm",
    "get_tolerance",
    "merge_attn_states_ref",
    "ref_attn_with_lse",
    "parameterize",
]


# HACK: enable sanity check in every unitest by default
os.environ["ATTN_MERGE_SANITY_CHECK"] = "1"


def parameterize(argument: str, values: list[Any]) -> Callable:
    """
    This function simulates pytest.mark.parameterize inside a unittest method,
    running every combination of the stacked parameters in one call.

    This version implements "fail-fast": the run stops on the first failure.

    Args:
        argument (str): The name of the argument to parameterize.
        values (list[Any]): A list of values for this argument.
    """

    def _wrapper(func: Callable):
        # Decorators are applied from the inside out (bottom-up). We check if the
        # wrapped function (func) already has an _param_info attribute. If so, it
        # means it has been processed by an inner parameterize decorator.
        inner_params = getattr(func, "_param_info", [])
        all_params = [(argument, values)] + inner_params

        # Trace back to find the original, unwrapped test function.
        original_func = getattr(func, "_original_func", func)

        @functools.wraps(func)
        def _parameterized_func(*args, **kwargs):
            arg_names = [name for name, _ in all_params]
            value_lists = [vals for _, vals in all_params]

            for combination in itertools.product(*value_lists):
                current_params_kwargs = dict(zip(arg_names, combination))
                final_kwargs = {**kwargs, **current_params_kwargs}

                try:
                    original_func(*args, **final_kwargs)
                except Exception as e:
                    param_str_list = []
                    for name, value_list in all_params:
                        current_val = current_params_kwargs[name]
                        try:
                            val_idx = value_list.index(current_val)
                            param_str_list.append(f"{name}[{val_idx}]")
                        except ValueError:
                            param_str_list.append(f"{name}={current_val}")

                    error_header = " x ".join(param_str_list)
                    error_msg = (
                        f"\n--> Test case failed with parameters: {error_header}\n"
                        f"    {type(e).__name__}: {e}"
                    )

                    # 'from e' preserves the original traceback for better debugging.
                    raise type(e)(error_msg) from e

        # Attach metadata to the newly created wrapper function for outer decorators to use.
        _parameterized_func._param_info = all_params  # type: ignore[attr-defined]
        _parameterized_func._original_func = original_func  # type: ignore[attr-defined]

        return _parameterized_func

    return _wrapper
