"""Content tree, tabbed navigation and layout engine for a personal dashboard."""

__version__ = "0.1.0"
