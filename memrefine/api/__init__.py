"""REST API for memrefine."""
