"""Read-side query objects."""
