# Copyright (c) 2025 SandAI. All Rights Reserved.
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

import os

from setuptools import find_namespace_packages, setup

with open("./README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

project_root = os.path.dirname(os.path.abspath(__file__))
PACKAGE_NAME = "attn_merge"


def get_version() -> str:
    version_path = os.path.join(project_root, PACKAGE_NAME, "_version.py")
    with open(version_path, "r", encoding="utf-8") as f:
        for line in f:
            if line.startswith("__version__"):
                return line.split("=")[1].strip().strip('"')
    raise RuntimeError(f"Unable to find __version__ in {version_path}")


# setup
setup(
    name=PACKAGE_NAME,
    version=get_version(),
    description="Merge the partial attention results of split key/value ranges via log-sum-exp",
    packages=find_namespace_packages(
        include=(PACKAGE_NAME, f"{PACKAGE_NAME}.*"),
        exclude=(
            "build",
            "tests",
            "dist",
            "docs",
        ),
    ),
    long_description=long_description,
    long_description_content_type="text/markdown",
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1",
        "triton",
        "einops",
        "numpy",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
