"""
Utilities: synthetic datasets, iteration callbacks and report I/O
"""
