"""HTTP routes. All application routes are in v1/."""
