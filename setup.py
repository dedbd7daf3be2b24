#!/usr/bin/env python3
import os
import site
import sys

import setuptools
from setuptools import setup

# Editable install in user site directory can be allowed with this hack:
# https://github.com/pypa/pip/issues/7953.
site.ENABLE_USER_SITE = "--user" in sys.argv[1:]

with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

with open(os.path.join("traingraphs", "version.txt"), encoding="utf-8") as f:
    version = f.read().strip()

setup(
    name="traingraphs",
    version=version,
    description="Per-utterance training graph compilation for HMM acoustic "
    "models with k2",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
    ],
    # we don't want to ship the tests package. for future proofing, also
    # exclude any tests subpackage (if we ever define __init__.py there)
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    package_data={"traingraphs": ["version.txt", "log-config.yaml"]},
    install_requires=[
        "hyperpyyaml",
        "k2",
        "pyyaml",
        "torch>=1.9",
        "tqdm",
    ],
    extras_require={"tests": ["pytest"]},
    entry_points={
        "console_scripts": [
            "compile-train-graphs-fsts="
            "traingraphs.bin.compile_train_graphs_fsts:main",
        ]
    },
    python_requires=">=3.9",
)
