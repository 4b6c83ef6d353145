"""Temporally coherent video restyling through remote generation backends."""

__version__ = "0.1.0"
