"""Unit tests: no Azure, no SSH."""
