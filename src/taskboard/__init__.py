"""Task/worker dashboard client with a degraded (demo) mode."""
