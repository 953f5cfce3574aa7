"""Command-line tools built on the peimage loader."""
