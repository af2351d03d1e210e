"""Pipeline Engine: validates and executes node-based media generation workflows."""

__version__ = "0.1.0"
