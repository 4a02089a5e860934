#!/usr/bin/env python
# -*- encoding: utf-8 -*-
import io
import re
from glob import glob
from os.path import basename, dirname, join, splitext

from setuptools import find_packages, setup


def read(*names, **kwargs):
    return io.open(
        join(dirname(__file__), *names), encoding=kwargs.get("encoding", "utf8")
    ).read()


def find_version(*file_paths):
    contents = read(*file_paths)
    match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]", contents, re.M)
    if match:
        return match.group(1)
    raise RuntimeError("Unable to find version string.")


setup(
    name="opsconductor",
    python_requires=">=3.7",
    version=find_version("src", "opsconductor", "__init__.py"),
    license="MIT",
    description="Fan tagged AWS resources out to SSM automations with admission control",
    long_description="""`opsconductor` selects the AWS resources carrying a tag across
accounts and regions, queues one work item per resource, and starts an SSM
automation for each item at a rate the automation runner can absorb.""",
    long_description_content_type="text/markdown",
    author="Pete Kazmier",
    author_email="opensource@fidelity.com",
    packages=find_packages("src"),
    package_dir={"": "src"},
    py_modules=[splitext(basename(path))[0] for path in glob("src/*.py")],
    include_package_data=True,
    zip_safe=False,
    classifiers=[
        # complete classifier list: http://pypi.python.org/pypi?%3Aaction=list_classifiers
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: System :: Systems Administration",
    ],
    keywords=["opsconductor", "aws", "ssm", "automation"],
    install_requires=[
        "boto3>=1.12.39",
        "requests",
        "PyYAML>=3.10",
    ],
    tests_require=["pytest", "pytest-mock", "freezegun"],
    extras_require={"test": ["pytest", "pytest-mock", "freezegun"]},
    entry_points={
        "console_scripts": [
            "opsconductor = opsconductor.cli:main",
        ]
    },
)
