"""wattkeeper: audit power settings and apply them with a full undo log."""

__version__ = "0.3.0"
