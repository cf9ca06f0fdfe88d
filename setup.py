#!/usr/bin/python

from setuptools import setup, find_packages
from docker_imgutil.version import version

import codecs

with open('requirements.txt') as f:
    requirements = f.read().splitlines()

setup(
    name = "docker-imgutil",
    version = version,
    packages = find_packages(exclude=["tests", "tests.*"]),
    author = 'docker-imgutil developers',
    description = 'Read and modify container images stored in a registry, the Docker daemon or an OCI layout',
    license='MIT',
    keywords = 'docker oci image registry',
    long_description = codecs.open('README.rst', encoding="utf8").read(),
    tests_require = ['mock', 'pytest'],
    extras_require = {
        'test': ['mock', 'pytest'],
    },
    install_requires=requirements
)
