"""Command line interface for natfwd."""
