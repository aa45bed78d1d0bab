"""restack - plan and run interactive git rebases."""

__version__ = "0.1.0"
