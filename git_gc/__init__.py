"""Run git gc on every git repository under a directory, in parallel."""

__version__ = "0.1.0"
