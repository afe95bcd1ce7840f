"""
cli - Command line interface.
"""
