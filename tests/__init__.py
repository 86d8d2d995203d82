"""azfleet test suite."""
