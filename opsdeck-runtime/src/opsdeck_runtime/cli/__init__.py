"""Command-line entry points for the OpsDeck runtime."""
