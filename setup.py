#!/usr/bin/env python3
"""
Setup script for the Population Structure Clustering Pipeline.
"""

import os

from setuptools import find_packages, setup

HERE = os.path.dirname(os.path.abspath(__file__))


def read_requirements():
    """Read runtime dependencies from requirements.txt."""
    with open(os.path.join(HERE, 'requirements.txt')) as f:
        return [line.strip() for line in f
                if line.strip() and not line.startswith('#')]


setup(
    name='popstruct-pipeline',
    version='1.0.0',
    description='Population structure clustering pipeline: ADMIXTURE, STRUCTURE and CLUMPAK orchestration',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.8',
    install_requires=read_requirements(),
    extras_require={
        'test': ['pytest>=7.0'],
    },
    entry_points={
        'console_scripts': [
            'popstruct-pipeline=popstruct_pipeline.cli:main',
        ],
    },
)
