"""MySQL backup, restore and collation tooling."""

__version__ = "0.1.0"
