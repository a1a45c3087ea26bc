"""Load generation and breakpoint benchmarking for blob publishers."""
