#!/usr/bin/env python3
"""
Main pipeline script for population structure clustering.

Equivalent to the ``popstruct-pipeline`` console script, for use from a
source checkout:

    python run_pipeline.py data/sample 2 10 --clumpak-dir /opt/CLUMPAK
"""

from popstruct_pipeline.cli import main


if __name__ == '__main__':
    main()
