#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# vim: ai ts=4 sts=4 et sw=4 nu

import pathlib
import re

from setuptools import find_packages, setup

root_dir = pathlib.Path(__file__).parent


def read(*names, **kwargs):
    with open(root_dir.joinpath(*names), "r") as fh:
        return fh.read()


def get_version():
    return re.search(
        r'^__version__ = "([^"]+)"',
        read("src", "image_save", "__init__.py"),
        re.MULTILINE,
    ).group(1)


setup(
    name="image_save",
    version=get_version(),
    description="Save a registry image as a docker-loadable archive without docker",
    long_description=read("README.md"),
    long_description_content_type="text/markdown",
    keywords="docker oci registry image save",
    license="GPLv3+",
    packages=find_packages("src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        line.strip()
        for line in read("requirements.txt").splitlines()
        if line.strip() and not line.strip().startswith("#")
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    zip_safe=True,
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "imsave=image_save:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
    ],
)
