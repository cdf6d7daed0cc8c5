"""
Core infrastructure: configuration, errors, token codec and connection routing.
"""
