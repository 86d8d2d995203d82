"""In-memory test doubles for azfleet's cloud and SSH seams."""
