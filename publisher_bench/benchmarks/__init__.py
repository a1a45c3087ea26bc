"""
Benchmarking harness for blob publishers.

This package drives randomized-size blob stores against a publisher under
closed-loop (fixed iterations) or open-loop (ramping arrival rate) load,
stops ramping runs at the breakpoint, and renders the collected latencies as
CSV files and charts.
"""
