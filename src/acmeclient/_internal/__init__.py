"""Internal implementation details. Not part of the public API."""
