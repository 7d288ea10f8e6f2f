"""Command-line interface (``shiftwork``)."""
