"""Command-line interface (``autorun``)."""
