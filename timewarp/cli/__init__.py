"""timewarp command-line interface."""
