"""Package specs, npm version constraints and manifest parsing."""
