"""
refconsense: Per-reference consensus calling from read alignments.

Builds a cleaned, quality-annotated consensus for every reference of a
sorted alignment file and flags candidate chimeric breakpoints in it.
"""

__version__ = "0.1.0"

from .core import main as refconsense_main

__all__ = ["refconsense_main", "__version__"]
