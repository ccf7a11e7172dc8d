"""Candidate selection, oracle interpretation and sizing for the trading cycle."""
