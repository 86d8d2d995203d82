"""Self-contained helper modules for azfleet."""
