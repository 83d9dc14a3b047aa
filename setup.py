# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT

from setuptools import find_namespace_packages, setup

extras_require = {
    # The BLE transport is only needed to stream from a sensor; pairing and
    # decoding work without it.
    "ble": ["bleak>=0.19"],
    "dev": [
        "absl-py",
        "bleak>=0.19",
        "mypy",
        "pytest-mypy",
        "pytest-timeout>=1.3.0",
        "pytest>=3.6.0",
    ],
}

all_require = []
for extra_require in extras_require.values():
    all_require.extend(extra_require)

extras_require["all"] = all_require


setup(
    name="libredirect",
    version="1.0.0",
    description="Pairing and BLE streaming for FreeStyle Libre 2 sensors",
    license="MIT",
    python_requires=">=3.9",
    packages=find_namespace_packages(include=["libredirect", "libredirect.*"]),
    install_requires=[
        "attrs",
        "construct>=2.9",
        "crcmod",
    ],
    extras_require=extras_require,
    entry_points={
        "console_scripts": [
            "libredirect = libredirect.libredirect:main",
        ],
    },
)
