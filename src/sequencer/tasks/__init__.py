"""Task discovery, loading, and dependency ordering."""
