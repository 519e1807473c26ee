"""Configuration handling for virtual machine instances and their host networks."""

__version__ = "0.1.0"