"""HTTP route factories."""
