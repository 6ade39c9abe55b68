"""Code generation and project tooling.

Renders model, data series, endpoint and controller classes from the data
model, initialises new projects and provides the dx command line.
"""
